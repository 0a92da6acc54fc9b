"""
Typed view over ``platform_connections.metadata``.

The column stays a JSON object so platform-specific keys (publisher ids,
session cookies, ...) can be added without migrations, but the parts this
service relies on are parsed into explicit models:

* ``schema_version`` -- bumped when the stored shape changes;
* ``scheduled_job``  -- the extraction job config, see ``ScheduledJobConfig``.

Stored job configs use the legacy wire keys ``spreadsheet_id`` and
``sheet_name``; ``destination_id`` / ``destination_label`` are accepted on
input as well.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from sessionkeeper.services.schedules import DEFAULT_SCHEDULE, validate_cron

log = logging.getLogger(__name__)

METADATA_SCHEMA_VERSION = 1
SCHEDULED_JOB_KEY = "scheduled_job"
VERSION_KEY = "schema_version"

def _now() -> datetime:
    return datetime.now(timezone.utc)

class ScheduledJobConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    destination_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("destination_id", "spreadsheet_id"),
        serialization_alias="spreadsheet_id",
    )
    destination_label: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("destination_label", "sheet_name"),
        serialization_alias="sheet_name",
    )
    schedule: str = DEFAULT_SCHEDULE
    created_at: datetime = Field(default_factory=_now)

    @field_validator("schedule", mode="before")
    @classmethod
    def _check_cron(cls, v):
        return validate_cron(v or DEFAULT_SCHEDULE)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

class ConnectionMetadata(BaseModel):
    """Known metadata keys; anything else rides along in ``extra``."""
    model_config = ConfigDict(frozen=True)

    schema_version: int = METADATA_SCHEMA_VERSION
    scheduled_job: Optional[ScheduledJobConfig] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_storage(cls, raw: Optional[Dict[str, Any]]) -> "ConnectionMetadata":
        data = dict(raw or {})
        version = data.pop(VERSION_KEY, None)
        job_raw = data.pop(SCHEDULED_JOB_KEY, None)
        job = None
        if isinstance(job_raw, dict):
            try:
                job = _migrate_job(job_raw, version)
            except ValidationError as e:
                # keep the unreadable config verbatim so nothing is lost on the next write
                log.warning("ignoring unreadable scheduled_job metadata: %s", e.errors()[0].get("msg"))
                data[SCHEDULED_JOB_KEY] = job_raw
        elif job_raw is not None:
            data[SCHEDULED_JOB_KEY] = job_raw
        return cls(
            schema_version=METADATA_SCHEMA_VERSION,
            scheduled_job=job,
            extra=data,
        )

    def to_storage(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out[VERSION_KEY] = self.schema_version
        if self.scheduled_job is not None:
            out[SCHEDULED_JOB_KEY] = self.scheduled_job.to_storage()
        return out

    def merged(self, patch: Optional[Dict[str, Any]]) -> "ConnectionMetadata":
        """
        Shallow-merge a raw patch. A ``scheduled_job`` key in the patch
        replaces the job; other keys overwrite extras one by one.
        """
        if not patch:
            return self
        patch = dict(patch)
        patch.pop(VERSION_KEY, None)
        job = self.scheduled_job
        if SCHEDULED_JOB_KEY in patch:
            job_raw = patch.pop(SCHEDULED_JOB_KEY)
            job = ScheduledJobConfig.model_validate(job_raw) if job_raw is not None else None
        return self.model_copy(update={"scheduled_job": job, "extra": {**self.extra, **patch}})

    def with_job(self, job: Optional[ScheduledJobConfig]) -> "ConnectionMetadata":
        return self.model_copy(update={"scheduled_job": job})

def _migrate_job(job_raw: Dict[str, Any], version: Optional[int]) -> ScheduledJobConfig:
    job_raw = dict(job_raw)
    if version is None:
        # unversioned rows could carry created_at: null
        if not job_raw.get("created_at"):
            job_raw.pop("created_at", None)
    return ScheduledJobConfig.model_validate(job_raw)
