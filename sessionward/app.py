from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionward.api.error_handling import register_exception_handlers
from sessionward.api.routes import router
from sessionward.config import Settings
from sessionward.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _run_expired_cleanup(store, interval_seconds: int) -> None:
    """Background loop that deactivates expired renewal tokens."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(store.cleanup_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("expired_cleanup_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("expired_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start periodic expired-token cleanup; drain pending work on shutdown."""
    global _cleanup_task
    from sessionward.service.runtime import get_runtime

    runtime = get_runtime()
    if not runtime.settings.test_mode:
        _cleanup_task = asyncio.create_task(
            _run_expired_cleanup(
                runtime.store, runtime.settings.expired_cleanup_interval_seconds
            )
        )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        await get_runtime().shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="sessionward", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for logs and the response header.

    Taken from ``X-Request-ID`` when the client sends one, otherwise generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    # Responses carry credentials
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from sessionward.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "store": "memory" if runtime.settings.use_memory_store else "postgres",
        "redis": runtime.cache is not None,
    }


def create_app() -> FastAPI:
    return app
