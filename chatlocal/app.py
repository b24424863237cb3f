from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from chatlocal.api.error_handling import register_exception_handlers
from chatlocal.api.routes import build_router
from chatlocal.api.schemas import HealthResponse
from chatlocal.config import Settings, get_settings
from chatlocal.logging import get_logger, set_correlation_id
from chatlocal.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


async def _run_session_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop that deletes expired session files."""

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(runtime.sessions.purge_expired)
            except OSError as exc:
                logger.warning("session_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")
        raise


def create_app(settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application around one ``Runtime``.

    Tests pass their own ``runtime`` (for example one whose backend uses an
    ``httpx.MockTransport``); otherwise one is built from ``settings``.
    """

    if runtime is None:
        runtime = Runtime(settings or get_settings())
    settings = runtime.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweep_task: asyncio.Task | None = None
        logger.info(
            "app_starting",
            version=__version__,
            host=settings.host,
            port=settings.port,
            session_sweep_interval_seconds=settings.session_sweep_interval_seconds,
        )
        if settings.session_sweep_interval_seconds > 0:
            sweep_task = asyncio.create_task(
                _run_session_sweep(runtime, settings.session_sweep_interval_seconds)
            )

        yield

        if sweep_task:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")

    app = FastAPI(title="chatlocal", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag every log line of the request with ``X-Request-ID`` (or a fresh id) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path not in ("/", "/login"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(build_router(runtime))

    @app.get("/healthz", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__)

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
