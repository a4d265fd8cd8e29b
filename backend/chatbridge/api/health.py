from __future__ import annotations

import asyncio
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatbridge.monitoring.metrics import metrics_response
from chatbridge.schemas.health import ErrorResponse, HealthSnapshot
from chatbridge.services.health import HealthMonitor

logger = logging.getLogger(__name__)


def create_health_app(monitor: HealthMonitor) -> FastAPI:
    app = FastAPI(title="chatbridge health", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health", response_model=HealthSnapshot)
    def health() -> JSONResponse:
        snapshot = monitor.snapshot()
        return JSONResponse(snapshot.model_dump(), status_code=200 if snapshot.ok else 503)

    @app.get("/metrics")
    def metrics():
        return metrics_response()

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(ErrorResponse(error=error).model_dump(), status_code=exc.status_code)

    return app


class HealthServer:
    """Serves the health app with uvicorn inside the running event loop."""

    def __init__(self, monitor: HealthMonitor, port: int, host: str = "127.0.0.1") -> None:
        config = uvicorn.Config(
            create_health_app(monitor),
            host=host,
            port=port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._task: asyncio.Task | None = None
        self.port = port

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._server.serve(), name="health-server")
            logger.info("Health server listening on port %d", self.port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
