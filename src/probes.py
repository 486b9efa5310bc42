"""
Probe Server - Liveness and readiness endpoints for the controller pod.

GET /healthz answers as long as the process is serving requests.
GET /readyz reports 200 only after the initial sync has completed and
while the database answers a ping; otherwise it reports 503 with the
reconciler state so an operator can see why.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import ProbeConfig
from controller import ReconcilerState

logger = logging.getLogger(__name__)

DatabasePing = Callable[[], Awaitable[bool]]


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    """Readiness verdict plus the reconciler state behind it."""

    status: str
    reconciler_ready: bool
    database_ok: bool
    watching: bool
    last_sync_at: Optional[datetime] = None
    consecutive_watch_failures: int = 0
    events_written: int = 0


def create_app(state: ReconcilerState, db_ping: Optional[DatabasePing] = None) -> FastAPI:
    """
    Build the probe application.

    Args:
        state: Live reconciler state, read on every request.
        db_ping: Coroutine function returning True when the database is
            reachable. When omitted the database is not checked.
    """
    app = FastAPI(title="Redis PaaS Status Controller", docs_url=None, redoc_url=None)

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz():
        return HealthResponse(status="ok")

    @app.get("/readyz", response_model=ReadinessResponse)
    async def readyz():
        database_ok = True
        if db_ping is not None:
            try:
                database_ok = await db_ping()
            except Exception as e:
                logger.warning(f"Readiness database check failed: {e}")
                database_ok = False

        ready = state.ready and database_ok
        body = ReadinessResponse(
            status="ready" if ready else "not ready",
            reconciler_ready=state.ready,
            database_ok=database_ok,
            watching=state.watching,
            last_sync_at=state.last_sync_at,
            consecutive_watch_failures=state.consecutive_watch_failures,
            events_written=state.events_written,
        )
        return JSONResponse(
            status_code=200 if ready else 503,
            content=body.model_dump(mode="json"),
        )

    return app


class ProbeServer:
    """Runs the probe application under uvicorn."""

    def __init__(self, app: FastAPI, config: Optional[ProbeConfig] = None):
        self.app = app
        self.config = config or ProbeConfig()
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Serve until stop() is called."""
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting probe server on {self.config.host}:{self.config.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping probe server")
        if self.server:
            self.server.should_exit = True
