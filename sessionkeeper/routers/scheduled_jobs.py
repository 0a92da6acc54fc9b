from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field, ValidationError

from sessionkeeper.core.container import get_container, get_store, platform_path
from sessionkeeper.security.internal import require_internal
from sessionkeeper.services.connections import ConnectionNotFound, ConnectionStore, Platform
from sessionkeeper.services.metadata import ScheduledJobConfig
from sessionkeeper.services.schedules import next_run

router = APIRouter(prefix="/scheduled", tags=["scheduled-jobs"], dependencies=[Depends(require_internal)])

class EnableReq(BaseModel):
    spreadsheet_id: str = Field(..., min_length=1)
    sheet_name: Optional[str] = None
    schedule: Optional[str] = None

class JobResp(BaseModel):
    enabled: bool
    destination_id: str
    destination_label: Optional[str] = None
    schedule: str
    next_run_at: Optional[datetime] = None

class TickJobResp(BaseModel):
    user_id: str
    platform: Platform
    outcome: str
    rows: int
    error: Optional[str] = None

class TickResp(BaseModel):
    tick: datetime
    jobs: List[TickJobResp]

def _job_resp(job: ScheduledJobConfig) -> JobResp:
    upcoming = next_run(job.schedule, datetime.now(timezone.utc)) if job.enabled else None
    return JobResp(enabled=job.enabled, destination_id=job.destination_id,
                   destination_label=job.destination_label, schedule=job.schedule, next_run_at=upcoming)

@router.post("/{platform}/{user_id}/enable", response_model=JobResp, summary="Enable scheduled daily extraction")
def enable(
    payload: EnableReq,
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    container=Depends(get_container),
):
    try:
        config = ScheduledJobConfig(
            enabled=True,
            destination_id=payload.spreadsheet_id,
            destination_label=payload.sheet_name,
            schedule=payload.schedule or container.settings.DEFAULT_JOB_SCHEDULE,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0].get("msg", "invalid job config"))
    try:
        record = container.store.set_scheduled_job(user_id, platform, config)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _job_resp(record.scheduled_job)

@router.post("/{platform}/{user_id}/disable", response_model=JobResp, summary="Disable scheduled extraction")
def disable(
    user_id: str = Path(..., min_length=1),
    platform: Platform = Depends(platform_path),
    store: ConnectionStore = Depends(get_store),
):
    try:
        record = store.disable_scheduled_job(user_id, platform)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    if record.scheduled_job is None:
        raise HTTPException(status_code=404, detail="no scheduled job configured")
    return _job_resp(record.scheduled_job)

@router.post("/run", response_model=TickResp, summary="Run jobs due in the current minute")
async def run_now(container=Depends(get_container)):
    result = await container.scheduler.tick()
    return TickResp(
        tick=result.tick,
        jobs=[TickJobResp(user_id=j.user_id, platform=j.platform, outcome=j.outcome.value,
                          rows=j.rows, error=j.error) for j in result.jobs],
    )
