"""
Connection records: one row per (user_id, platform) holding encrypted
session tokens, a status and metadata.

State machine::

    (none)       --connect-->    CONNECTED
    CONNECTED    --mark_error--> ERROR
    CONNECTED    --disconnect--> DISCONNECTED
    ERROR        --connect-->    CONNECTED
    DISCONNECTED --connect-->    CONNECTED

ERROR and DISCONNECTED only leave through ``connect``. ``update_expiry`` is
valid from CONNECTED only.

The store does no locking. Two writers on the same key race and the last
commit wins; callers serialize per key.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from sessionkeeper.db.models import PlatformConnection
from sessionkeeper.services.crypto import SecretCodec, SecretCodecError
from sessionkeeper.services.metadata import ConnectionMetadata, ScheduledJobConfig
from sessionkeeper.services.schedules import fired_between

log = logging.getLogger(__name__)

class Platform(str, Enum):
    LTK = "LTK"
    MAVELY = "MAVELY"
    AMAZON = "AMAZON"
    SHOPMY = "SHOPMY"

class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"
    # reported by status() only, never stored
    NOT_FOUND = "NOT_FOUND"

class DueSelector(str, Enum):
    EXPIRING = "expiring"    # CONNECTED and token_expires_at < before
    SCHEDULED = "scheduled"  # CONNECTED, job enabled, cron fired in (since, before]

class ConnectionNotFound(LookupError):
    pass

class InvalidTransition(RuntimeError):
    pass

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def as_platform(value: "Platform | str") -> Platform:
    if isinstance(value, Platform):
        return value
    try:
        return Platform(str(value).strip().upper())
    except ValueError:
        raise ValueError(f"unknown platform {value!r}") from None

class PlatformTokens(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    id_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = {}

    @property
    def session_cookie(self) -> Optional[str]:
        return self.metadata.get("sessionCookie")

class ConnectionRecord(BaseModel):
    """Read-only snapshot of one row."""
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    platform: Platform
    status: ConnectionStatus
    encrypted_access_token: Optional[str] = None
    encrypted_id_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    last_refresh_at: Optional[datetime] = None
    refresh_error: Optional[str] = None
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    metadata: ConnectionMetadata = ConnectionMetadata()
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: PlatformConnection) -> "ConnectionRecord":
        return cls(
            id=row.id,
            user_id=row.user_id,
            platform=Platform(row.platform),
            status=ConnectionStatus(row.status),
            encrypted_access_token=row.encrypted_access_token,
            encrypted_id_token=row.encrypted_id_token,
            token_expires_at=_as_utc(row.token_expires_at),
            last_refresh_at=_as_utc(row.last_refresh_at),
            refresh_error=row.refresh_error,
            connected_at=_as_utc(row.connected_at),
            last_synced_at=_as_utc(row.last_synced_at),
            metadata=ConnectionMetadata.from_storage(row.meta),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @property
    def scheduled_job(self) -> Optional[ScheduledJobConfig]:
        return self.metadata.scheduled_job

class ConnectionStatusReport(BaseModel):
    connected: bool
    status: ConnectionStatus
    expires_at: Optional[datetime] = None
    last_refresh: Optional[datetime] = None
    error: Optional[str] = None

class ConnectionStore:
    """
    CRUD over ``platform_connections``. Built once at startup and handed to
    the expiry monitor, the extraction scheduler and the HTTP layer.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        codec: SecretCodec,
        *,
        clock: Callable[[], datetime] = utcnow,
        strict: bool = False,
    ):
        self._session_factory = session_factory
        self._codec = codec
        self._clock = clock
        self._strict = strict

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    @staticmethod
    def _row(db: Session, user_id: str, platform: Platform) -> Optional[PlatformConnection]:
        return (
            db.query(PlatformConnection)
            .filter(PlatformConnection.user_id == user_id, PlatformConnection.platform == platform.value)
            .one_or_none()
        )

    # ---- writes ----------------------------------------------------------------

    def connect(
        self,
        user_id: str,
        platform: Platform | str,
        *,
        access_token: str,
        expires_at: datetime,
        id_token: Optional[str] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
    ) -> ConnectionRecord:
        """
        Store fresh tokens and mark the connection CONNECTED. Creates the row on
        first connect; afterwards overwrites secrets, expiry and status and
        merges ``metadata_patch`` into the existing metadata.
        """
        if not user_id:
            raise ValueError("user_id required")
        if not access_token:
            raise ValueError("access_token required")
        platform = as_platform(platform)

        try:
            record = self._connect_once(user_id, platform, access_token, id_token, expires_at, metadata_patch)
        except IntegrityError:
            # lost the insert race on UNIQUE(user_id, platform); the row exists now
            log.info("connect insert raced for %s/%s; retrying as update", user_id, platform.value)
            record = self._connect_once(user_id, platform, access_token, id_token, expires_at, metadata_patch)

        log.info("stored encrypted tokens", extra={"user_id": user_id, "platform": platform.value})
        return record

    def _connect_once(self, user_id, platform, access_token, id_token, expires_at, metadata_patch) -> ConnectionRecord:
        now = self._now()
        enc_access = self._codec.encrypt_to_str(access_token)
        enc_id = self._codec.encrypt_to_str(id_token) if id_token else None

        with self._session_factory() as db:
            row = self._row(db, user_id, platform)
            if row is None:
                row = PlatformConnection(user_id=user_id, platform=platform.value, created_at=now)
                base = ConnectionMetadata()
                db.add(row)
            else:
                base = ConnectionMetadata.from_storage(row.meta)

            row.status = ConnectionStatus.CONNECTED.value
            row.encrypted_access_token = enc_access
            row.encrypted_id_token = enc_id
            row.token_expires_at = _as_utc(expires_at)
            row.connected_at = now
            row.last_refresh_at = now
            row.refresh_error = None
            row.meta = base.merged(metadata_patch).to_storage()
            row.updated_at = now
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise
            return ConnectionRecord.from_row(row)

    def disconnect(self, user_id: str, platform: Platform | str) -> bool:
        """Clear secrets and expiry; keep the row and its metadata. False if absent."""
        platform = as_platform(platform)
        with self._session_factory() as db:
            row = self._row(db, user_id, platform)
            if row is None:
                return False
            row.status = ConnectionStatus.DISCONNECTED.value
            row.encrypted_access_token = None
            row.encrypted_id_token = None
            row.token_expires_at = None
            row.refresh_error = None
            row.updated_at = self._now()
            db.commit()
        log.info("disconnected", extra={"user_id": user_id, "platform": platform.value})
        return True

    def mark_error(
        self,
        user_id: str,
        platform: Platform | str,
        message: str,
        *,
        only_if: Optional[ConnectionStatus] = None,
    ) -> bool:
        """
        Set ERROR + refresh_error. Secrets stay so the token can be inspected or recovered.

        With ``only_if`` the write is a conditional UPDATE that only lands while
        the row is still in that status; False when it did not.
        """
        platform = as_platform(platform)
        with self._session_factory() as db:
            if only_if is not None:
                changed = (
                    db.query(PlatformConnection)
                    .filter(
                        PlatformConnection.user_id == user_id,
                        PlatformConnection.platform == platform.value,
                        PlatformConnection.status == only_if.value,
                    )
                    .update(
                        {
                            PlatformConnection.status: ConnectionStatus.ERROR.value,
                            PlatformConnection.refresh_error: message or "unknown error",
                            PlatformConnection.updated_at: self._now(),
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
                if not changed:
                    log.info("mark_error skipped, %s/%s no longer %s", user_id, platform.value, only_if.value)
                    return False
            else:
                row = self._row(db, user_id, platform)
                if row is None:
                    log.warning("mark_error on missing connection %s/%s", user_id, platform.value)
                    return False
                row.status = ConnectionStatus.ERROR.value
                row.refresh_error = message or "unknown error"
                row.updated_at = self._now()
                db.commit()
        log.info("marked connection ERROR", extra={"user_id": user_id, "platform": platform.value,
                                                   "reason": message})
        return True

    def update_expiry(self, user_id: str, platform: Platform | str, new_expires_at: datetime) -> bool:
        platform = as_platform(platform)
        with self._session_factory() as db:
            row = self._row(db, user_id, platform)
            if row is None or row.status != ConnectionStatus.CONNECTED.value:
                state = row.status if row is not None else ConnectionStatus.NOT_FOUND.value
                msg = f"update_expiry requires CONNECTED, {user_id}/{platform.value} is {state}"
                if self._strict:
                    raise InvalidTransition(msg)
                log.warning(msg)
                return False
            now = self._now()
            row.token_expires_at = _as_utc(new_expires_at)
            row.last_refresh_at = now
            row.refresh_error = None
            row.updated_at = now
            db.commit()
        return True

    def mark_synced(self, user_id: str, platform: Platform | str, at: Optional[datetime] = None) -> bool:
        platform = as_platform(platform)
        with self._session_factory() as db:
            row = self._row(db, user_id, platform)
            if row is None:
                return False
            now = self._now()
            row.last_synced_at = _as_utc(at) if at is not None else now
            row.updated_at = now
            db.commit()
        return True

    def update_metadata(self, user_id: str, platform: Platform | str, patch: Dict[str, Any]) -> ConnectionRecord:
        platform = as_platform(platform)
        with self._session_factory() as db:
            row = self._require(db, user_id, platform)
            row.meta = ConnectionMetadata.from_storage(row.meta).merged(patch).to_storage()
            row.updated_at = self._now()
            db.commit()
            return ConnectionRecord.from_row(row)

    def set_scheduled_job(self, user_id: str, platform: Platform | str, config: ScheduledJobConfig) -> ConnectionRecord:
        platform = as_platform(platform)
        with self._session_factory() as db:
            row = self._require(db, user_id, platform)
            row.meta = ConnectionMetadata.from_storage(row.meta).with_job(config).to_storage()
            row.updated_at = self._now()
            db.commit()
            record = ConnectionRecord.from_row(row)
        log.info("scheduled job %s", "enabled" if config.enabled else "saved disabled",
                 extra={"user_id": user_id, "platform": platform.value, "schedule": config.schedule})
        return record

    def disable_scheduled_job(self, user_id: str, platform: Platform | str) -> ConnectionRecord:
        """Flip ``enabled`` off, keeping destination and schedule for re-enabling."""
        platform = as_platform(platform)
        with self._session_factory() as db:
            row = self._require(db, user_id, platform)
            meta = ConnectionMetadata.from_storage(row.meta)
            if meta.scheduled_job is not None:
                meta = meta.with_job(meta.scheduled_job.model_copy(update={"enabled": False}))
                row.meta = meta.to_storage()
                row.updated_at = self._now()
                db.commit()
            record = ConnectionRecord.from_row(row)
        log.info("scheduled job disabled", extra={"user_id": user_id, "platform": platform.value})
        return record

    def _require(self, db: Session, user_id: str, platform: Platform) -> PlatformConnection:
        row = self._row(db, user_id, platform)
        if row is None:
            raise ConnectionNotFound(f"no {platform.value} connection found for user {user_id}")
        return row

    # ---- reads -----------------------------------------------------------------

    def get(self, user_id: str, platform: Platform | str) -> Optional[ConnectionRecord]:
        platform = as_platform(platform)
        with self._session_factory() as db:
            row = self._row(db, user_id, platform)
            return ConnectionRecord.from_row(row) if row is not None else None

    def get_decrypted(self, user_id: str, platform: Platform | str) -> Optional[PlatformTokens]:
        """
        Usable tokens, or None when there is nothing usable: no row, not
        CONNECTED, no access token, or the ciphertext does not decrypt.
        """
        record = self.get(user_id, platform)
        if record is None or record.status != ConnectionStatus.CONNECTED:
            return None
        if not record.encrypted_access_token:
            return None
        try:
            access = self._codec.decrypt_from_str(record.encrypted_access_token)
            id_token = (self._codec.decrypt_from_str(record.encrypted_id_token)
                        if record.encrypted_id_token else None)
        except SecretCodecError as e:
            log.error("failed to decrypt tokens for %s/%s: %s: %s",
                      user_id, record.platform.value, type(e).__name__, e)
            return None
        return PlatformTokens(
            access_token=access,
            id_token=id_token,
            expires_at=record.token_expires_at,
            metadata=record.metadata.extra,
        )

    def status(self, user_id: str, platform: Platform | str) -> ConnectionStatusReport:
        record = self.get(user_id, platform)
        if record is None:
            return ConnectionStatusReport(connected=False, status=ConnectionStatus.NOT_FOUND)
        return ConnectionStatusReport(
            connected=record.status == ConnectionStatus.CONNECTED,
            status=record.status,
            expires_at=record.token_expires_at,
            last_refresh=record.last_refresh_at,
            error=record.refresh_error,
        )

    def list_due(
        self,
        before: datetime,
        selector: DueSelector = DueSelector.EXPIRING,
        *,
        since: Optional[datetime] = None,
    ) -> List[ConnectionRecord]:
        """
        EXPIRING: CONNECTED rows whose token expires before ``before``.
        SCHEDULED: CONNECTED rows with an enabled job whose cron fired in the
        minutes (since, before], or in the minute of ``before`` when ``since``
        is None. Disabled jobs never qualify.
        """
        before = _as_utc(before)
        since = _as_utc(since)
        with self._session_factory() as db:
            q = db.query(PlatformConnection).filter(PlatformConnection.status == ConnectionStatus.CONNECTED.value)
            if selector is DueSelector.EXPIRING:
                q = q.filter(
                    PlatformConnection.token_expires_at.is_not(None),
                    PlatformConnection.token_expires_at < before,
                )
            rows = q.order_by(PlatformConnection.id).all()
            records = [ConnectionRecord.from_row(r) for r in rows]

        if selector is DueSelector.EXPIRING:
            return records

        due: List[ConnectionRecord] = []
        for rec in records:
            job = rec.scheduled_job
            if job is None or not job.enabled:
                continue
            if fired_between(job.schedule, since, before):
                due.append(rec)
        return due
