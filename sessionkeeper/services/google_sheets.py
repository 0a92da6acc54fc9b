from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import quote

import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from sessionkeeper.services.collaborators import Row, SinkResult

log = logging.getLogger(__name__)

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_SHEET_NAME = "Analytics Data"

TokenProvider = Callable[[], Awaitable[str]]

class SinkError(RuntimeError):
    pass

class ServiceAccountTokenProvider:
    """
    Access tokens for a Google service account. google-auth refreshes
    synchronously, so the refresh runs in a worker thread.
    """

    def __init__(self, client_email: str, private_key: str):
        if not client_email or not private_key:
            raise SinkError("Google service account credentials not configured")
        self._creds = service_account.Credentials.from_service_account_info(
            {"client_email": client_email, "private_key": private_key, "token_uri": GOOGLE_TOKEN_URI},
            scopes=[SHEETS_SCOPE],
        )
        self._lock = asyncio.Lock()

    async def __call__(self) -> str:
        async with self._lock:
            if not self._creds.valid:
                await asyncio.to_thread(self._creds.refresh, GoogleAuthRequest())
            return self._creds.token

def _a1(sheet_name: str, cells: str) -> str:
    escaped = sheet_name.replace("'", "''")
    return quote(f"'{escaped}'!{cells}", safe="")

def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        return value
    return str(value)

class GoogleSheetsSink:
    """
    Appends rows to a tab of a spreadsheet. Creates the tab when missing and
    writes a header row (sorted union of row keys) when the tab is empty;
    otherwise rows follow the existing header.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token_provider = token_provider
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "GoogleSheetsSink":
        provider = ServiceAccountTokenProvider(settings.GOOGLE_SERVICE_ACCOUNT_EMAIL,
                                               settings.GOOGLE_SERVICE_ACCOUNT_KEY)
        return cls(provider, timeout=settings.COLLABORATOR_TIMEOUT_SECONDS)

    async def write(self, rows: List[Row], destination_id: str,
                    destination_label: Optional[str] = None) -> SinkResult:
        if not rows:
            return SinkResult(appended_rows=0)
        sheet_name = destination_label or DEFAULT_SHEET_NAME
        token = await self._token_provider()
        headers = {"Authorization": f"Bearer {token}"}

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport,
                                     headers=headers) as client:
            columns = await self._ensure_header(client, destination_id, sheet_name, rows)
            values = [[_cell(row.get(col)) for col in columns] for row in rows]
            r = await client.post(
                f"{SHEETS_API}/{destination_id}/values/{_a1(sheet_name, 'A:A')}:append",
                params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                json={"values": values},
            )
            _raise_for(r, "append rows")

        log.info("appended %d rows to %s", len(values), sheet_name,
                 extra={"destination_id": destination_id})
        return SinkResult(appended_rows=len(values))

    async def _ensure_header(self, client: httpx.AsyncClient, spreadsheet_id: str,
                             sheet_name: str, rows: List[Row]) -> List[str]:
        wanted = sorted({key for row in rows for key in row})

        r = await client.get(f"{SHEETS_API}/{spreadsheet_id}", params={"fields": "sheets.properties.title"})
        _raise_for(r, "read spreadsheet")
        titles = [s.get("properties", {}).get("title") for s in r.json().get("sheets", [])]

        if sheet_name not in titles:
            r = await client.post(
                f"{SHEETS_API}/{spreadsheet_id}:batchUpdate",
                json={"requests": [{"addSheet": {"properties": {"title": sheet_name}}}]},
            )
            _raise_for(r, "create sheet")
            existing: List[str] = []
        else:
            r = await client.get(f"{SHEETS_API}/{spreadsheet_id}/values/{_a1(sheet_name, '1:1')}")
            _raise_for(r, "read header")
            existing = [str(v) for v in (r.json().get("values") or [[]])[0]]

        if existing:
            missing = [k for k in wanted if k not in existing]
            if missing:
                log.warning("dropping columns not in %s header: %s", sheet_name, ", ".join(missing))
            return existing

        r = await client.post(
            f"{SHEETS_API}/{spreadsheet_id}/values/{_a1(sheet_name, 'A1')}:append",
            params={"valueInputOption": "RAW"},
            json={"values": [wanted]},
        )
        _raise_for(r, "write header")
        return wanted

def _raise_for(r: httpx.Response, action: str) -> None:
    if r.status_code >= 400:
        raise SinkError(f"sheets {action} failed: {r.status_code} {r.text[:200]}")
