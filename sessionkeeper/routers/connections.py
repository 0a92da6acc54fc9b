from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field

from sessionkeeper.core.container import get_container, get_store, platform_path
from sessionkeeper.security.internal import require_internal
from sessionkeeper.services.collaborators import ConnectorLoginError, LoginErrorCode
from sessionkeeper.services.connections import (
    ConnectionStatus,
    ConnectionStatusReport,
    ConnectionStore,
    Platform,
)

router = APIRouter(
    prefix="/connections",
    tags=["connections"],
    dependencies=[Depends(require_internal)],
)

class ConnectReq(BaseModel):
    access_token: str = Field(..., min_length=1)
    id_token: Optional[str] = None
    expires_at: datetime
    metadata: Dict[str, Any] = {}

class ConnectResp(BaseModel):
    connected: bool
    status: ConnectionStatus
    expires_at: Optional[datetime] = None

class LoginFailureReq(BaseModel):
    code: LoginErrorCode = LoginErrorCode.UNKNOWN
    message: str = ""

class TokensResp(BaseModel):
    access_token: str
    id_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = {}

class RefreshResp(BaseModel):
    success: bool
    outcome: str
    message: str
    expires_at: Optional[datetime] = None

@router.put("/{platform}/{user_id}", response_model=ConnectResp, summary="Store freshly obtained tokens")
def connect(
    payload: ConnectReq,
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    store: ConnectionStore = Depends(get_store),
):
    try:
        record = store.connect(
            user_id,
            platform,
            access_token=payload.access_token,
            id_token=payload.id_token,
            expires_at=payload.expires_at,
            metadata_patch=payload.metadata or None,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ConnectResp(connected=True, status=record.status, expires_at=record.token_expires_at)

@router.post("/{platform}/{user_id}/error", response_model=ConnectionStatusReport,
             summary="Connector reports a failed login")
def report_login_failure(
    payload: LoginFailureReq,
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    store: ConnectionStore = Depends(get_store),
):
    err = ConnectorLoginError(payload.code, payload.message)
    # a first-time login failure has no row to flag
    store.mark_error(user_id, platform, str(err))
    return store.status(user_id, platform)

@router.get("/{platform}/{user_id}/status", response_model=ConnectionStatusReport, summary="Connection status")
def status(
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    store: ConnectionStore = Depends(get_store),
):
    return store.status(user_id, platform)

@router.get("/{platform}/{user_id}/tokens", response_model=TokensResp,
            summary="Decrypted tokens for downstream API calls")
def tokens(
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    store: ConnectionStore = Depends(get_store),
):
    toks = store.get_decrypted(user_id, platform)
    if toks is not None:
        return TokensResp(**toks.model_dump())
    report = store.status(user_id, platform)
    if report.status is ConnectionStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"no {platform.value} connection for user")
    # 409: action required on the client side (reconnect)
    raise HTTPException(status_code=409, detail=f"{platform.value} not connected; user must reconnect")

@router.post("/{platform}/{user_id}/refresh", response_model=RefreshResp,
             summary="Check stored tokens now and extend or fail the connection")
async def refresh(
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    container=Depends(get_container),
):
    result = await container.monitor.check_connection(user_id, platform)
    messages = {
        "renewed": "tokens are valid and expiration has been extended",
        "invalidated": "tokens have expired - please reconnect",
    }
    return RefreshResp(
        success=result.ok,
        outcome=result.outcome.value,
        message=messages.get(result.outcome.value, result.error or ""),
        expires_at=result.new_expires_at,
    )

@router.delete("/{platform}/{user_id}", response_model=ConnectionStatusReport, summary="Disconnect (keeps history)")
def disconnect(
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    store: ConnectionStore = Depends(get_store),
):
    if not store.disconnect(user_id, platform):
        raise HTTPException(status_code=404, detail=f"no {platform.value} connection for user")
    return store.status(user_id, platform)
