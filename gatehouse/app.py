from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import router
from gatehouse.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


_purge_task: asyncio.Task | None = None


async def _run_activity_purge(interval_seconds: int, retention_days: int) -> None:
    """Background loop deleting activity entries past the retention window."""
    from gatehouse.service.runtime import get_runtime

    try:
        while True:
            try:
                await get_runtime().activity.purge_older_than(retention_days)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("activity_purge_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("activity_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime and run the retention loop for the app's lifetime."""
    global _purge_task
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    _purge_task = asyncio.create_task(
        _run_activity_purge(
            runtime.settings.activity_purge_interval_seconds,
            runtime.settings.activity_log_retention_days,
        )
    )

    yield

    if _purge_task:
        _purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _purge_task
    if runtime.cache is not None:
        await runtime.cache.close()
    if hasattr(runtime.store, "close"):
        runtime.store.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation ID.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", tags=["meta"])
async def healthz():
    return {"status": "ok", "version": __version__}
