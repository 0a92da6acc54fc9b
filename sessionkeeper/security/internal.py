from __future__ import annotations
import hmac
import ipaddress
from typing import Iterable, Optional

from fastapi import Header, HTTPException, Request

def ip_allowed(client_ip: str, allowed: Iterable[str]) -> bool:
    """
    True if client_ip equals an allowed host or falls in an allowed CIDR.
    An empty allow-list disables the check.
    """
    entries = [_normalize_host(e) for e in allowed if e and e.strip()]
    if not entries:
        return True
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return client_ip in entries

    for entry in entries:
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            if client_ip == entry:
                return True
    return False

def _normalize_host(s: str) -> str:
    s = s.strip()
    return "127.0.0.1" if s.lower() == "localhost" else s

def client_ip(request: Request) -> str:
    # first hop when behind a proxy
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""

async def require_internal(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
):
    settings = request.app.state.container.settings
    expected = settings.API_INTERNAL_KEY
    # no key configured means nobody gets in
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="missing or invalid X-API-Key")

    if not ip_allowed(client_ip(request), settings.INTERNAL_ALLOWED_IPS or []):
        raise HTTPException(status_code=403, detail="ip_not_allowed")
