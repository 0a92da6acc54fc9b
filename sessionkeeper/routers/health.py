from fastapi import APIRouter, Depends
from sqlalchemy import text

from sessionkeeper.core.container import get_container

router = APIRouter(tags=["health"])

@router.get("/healthz", summary="Liveness check")
def healthz():
    return {"ok": True}

@router.get("/readyz", summary="Readiness: database reachable, background jobs state")
def readyz(container=Depends(get_container)):
    with container.engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"ok": True, "background_jobs": container.runner.running}
