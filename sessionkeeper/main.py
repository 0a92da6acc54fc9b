import logging
import time
import uuid
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from sessionkeeper.core.config import Settings, settings as default_settings
from sessionkeeper.core.container import Container, build_container
from sessionkeeper.core.logging import set_correlation_id, setup_logging
from sessionkeeper.routers import connections, health, scheduled_jobs

class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_correlation_id(rid)
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        logging.getLogger("sessionkeeper.request").info(
            f"{request.method} {request.url.path} {response.status_code} {dur_ms}ms",
            extra={"method": request.method, "path": str(request.url.path),
                   "status": response.status_code, "dur_ms": dur_ms},
        )
        response.headers["X-Request-ID"] = rid
        return response

def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    settings = settings or default_settings
    container = container or build_container(settings)

    app = FastAPI(title="Session Keeper", version="1.0")
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(health.router)
    app.include_router(connections.router)
    app.include_router(scheduled_jobs.router)

    @app.on_event("startup")
    async def on_startup():
        if settings.SCHEDULER_ENABLED:
            container.runner.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        container.runner.stop()

    return app

def build_app() -> FastAPI:
    """Process entrypoint for uvicorn --factory."""
    setup_logging(default_settings.LOG_DIR, default_settings.LOG_LEVEL)
    return create_app(default_settings)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("sessionkeeper.main:build_app", factory=True, host="0.0.0.0", port=8000)
