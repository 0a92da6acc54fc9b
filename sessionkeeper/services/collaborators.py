"""
Interfaces of the platform-specific pieces the sweeps call into, plus the
generic implementations that ship with the service.

* ``Validator``  -- cheap authenticated request: are these tokens still good?
* ``Extractor``  -- pull a day's worth of rows for one connection.
* ``Sink``       -- append rows to a destination (e.g. a spreadsheet tab).

Login/page automation that produces the tokens lives in connector services;
they report failures with the ``LoginErrorCode`` vocabulary below.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import httpx

from sessionkeeper.services.connections import ConnectionRecord, Platform, PlatformTokens

Row = Dict[str, Any]

class LoginErrorCode(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    TIMEOUT = "TIMEOUT"
    BLOCKED = "BLOCKED"
    UNKNOWN = "UNKNOWN"

class ConnectorLoginError(RuntimeError):
    def __init__(self, code: LoginErrorCode, message: str = ""):
        self.code = LoginErrorCode(code)
        self.message = message or self.code.value.replace("_", " ").lower()
        super().__init__(f"{self.code.value}: {self.message}")

@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    @classmethod
    def yesterday(cls, now: Optional[datetime] = None) -> "DateRange":
        now = now or datetime.now(timezone.utc)
        day = (now.astimezone(timezone.utc) - timedelta(days=1)).date()
        return cls(start=day, end=day)

    def as_strings(self) -> tuple[str, str]:
        return self.start.isoformat(), self.end.isoformat()

@dataclass(frozen=True)
class AuthenticatedConnection:
    """What an extractor gets: the record plus its decrypted tokens."""
    record: ConnectionRecord
    tokens: PlatformTokens

    @property
    def user_id(self) -> str:
        return self.record.user_id

    @property
    def platform(self) -> Platform:
        return self.record.platform

@dataclass(frozen=True)
class SinkResult:
    appended_rows: int

@runtime_checkable
class Validator(Protocol):
    async def check(self, tokens: PlatformTokens) -> bool: ...

@runtime_checkable
class Extractor(Protocol):
    async def extract(self, connection: AuthenticatedConnection, date_range: DateRange) -> List[Row]: ...

@runtime_checkable
class Sink(Protocol):
    async def write(self, rows: List[Row], destination_id: str,
                    destination_label: Optional[str] = None) -> SinkResult: ...

def bearer_headers(tokens: PlatformTokens) -> Dict[str, str]:
    headers = {"Authorization": f"Bearer {tokens.access_token}"}
    if tokens.id_token:
        headers["x-id-token"] = tokens.id_token
    return headers

class HttpCheckValidator:
    """
    Valid iff an authenticated GET to ``url`` answers 2xx. Transport errors
    count as "not valid"; the caller decides what that means for the record.
    """

    def __init__(
        self,
        url: str,
        *,
        headers_builder: Callable[[PlatformTokens], Mapping[str, str]] = bearer_headers,
        static_headers: Optional[Mapping[str, str]] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._headers_builder = headers_builder
        self._static_headers = dict(static_headers or {})
        self._timeout = timeout
        self._transport = transport

    async def check(self, tokens: PlatformTokens) -> bool:
        headers = {**self._static_headers, **self._headers_builder(tokens)}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.get(self.url, headers=headers)
        except httpx.HTTPError:
            return False
        return r.is_success

def default_validators() -> Dict[Platform, Validator]:
    # LTK's creator gateway answers 401 once the Cognito session is gone
    return {
        Platform.LTK: HttpCheckValidator(
            "https://api-gateway.rewardstyle.com/api/co-api/v1/get_user_info",
            static_headers={
                "Origin": "https://creator.shopltk.com",
                "Referer": "https://creator.shopltk.com/",
            },
        ),
    }
