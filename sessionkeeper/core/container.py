from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from fastapi import HTTPException, Path, Request
from sqlalchemy.engine import Engine

from sessionkeeper.core.config import Settings
from sessionkeeper.db.session import build_engine, build_session_factory, create_schema
from sessionkeeper.services.background import BackgroundRunner
from sessionkeeper.services.collaborators import Extractor, Sink, Validator, default_validators
from sessionkeeper.services.connections import ConnectionStore, Platform, as_platform
from sessionkeeper.services.crypto import SecretCodec
from sessionkeeper.services.expiry import ExpiryMonitor
from sessionkeeper.services.extraction import ExtractionScheduler
from sessionkeeper.services.google_sheets import GoogleSheetsSink, SinkError

log = logging.getLogger(__name__)

@dataclass
class Container:
    settings: Settings
    engine: Engine
    codec: SecretCodec
    store: ConnectionStore
    monitor: ExpiryMonitor
    scheduler: ExtractionScheduler
    runner: BackgroundRunner

async def _missing_sheets_credentials() -> str:
    raise SinkError("Google service account credentials not configured")

def _default_sink(settings: Settings) -> Sink:
    try:
        return GoogleSheetsSink.from_settings(settings)
    except SinkError:
        log.warning("GOOGLE_SERVICE_ACCOUNT_* not set; scheduled jobs will fail at the sink")
        return GoogleSheetsSink(_missing_sheets_credentials, timeout=settings.COLLABORATOR_TIMEOUT_SECONDS)

def build_container(
    settings: Settings,
    *,
    validators: Optional[Mapping[Platform, Validator]] = None,
    extractors: Optional[Mapping[Platform, Extractor]] = None,
    sink: Optional[Sink] = None,
) -> Container:
    """
    Wire everything once. A bad ENCRYPTION_KEY raises CryptoConfigError here,
    before the app accepts traffic.
    """
    codec = SecretCodec.from_settings(settings)

    engine = build_engine(settings.DATABASE_URL)
    create_schema(engine)
    store = ConnectionStore(build_session_factory(engine), codec, strict=settings.STRICT_TRANSITIONS)

    monitor = ExpiryMonitor(
        store,
        validators if validators is not None else default_validators(),
        renewal_window=timedelta(seconds=settings.RENEWAL_WINDOW_SECONDS),
        standard_lifetime=timedelta(seconds=settings.STANDARD_TOKEN_LIFETIME_SECONDS),
        timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
    )
    scheduler = ExtractionScheduler(
        store,
        extractors or {},
        sink if sink is not None else _default_sink(settings),
        inter_job_delay=settings.INTER_JOB_DELAY_SECONDS,
        timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
    )
    runner = BackgroundRunner(monitor, scheduler, expiry_interval=settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
    return Container(settings=settings, engine=engine, codec=codec, store=store,
                     monitor=monitor, scheduler=scheduler, runner=runner)

# ---- FastAPI dependencies ------------------------------------------------------

def get_container(request: Request) -> Container:
    return request.app.state.container

def get_store(request: Request) -> ConnectionStore:
    return request.app.state.container.store

def platform_path(platform: str = Path(..., min_length=2)) -> Platform:
    try:
        return as_platform(platform)
    except ValueError:
        allowed = ", ".join(p.value for p in Platform)
        raise HTTPException(status_code=400, detail=f"invalid platform; must be one of {allowed}")
