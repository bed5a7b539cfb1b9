from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from gatekey.api.error_handling import register_exception_handlers
from gatekey.api.routes import router
from gatekey.config import get_settings
from gatekey.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


async def _run_refresh_sweep(interval_seconds: int) -> None:
    """Background loop that deletes expired refresh tokens."""

    from gatekey.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            runtime = get_runtime()
            # sweep logs and swallows storage failures itself
            await asyncio.to_thread(runtime.auth.sweep_expired_refresh_tokens)
    except asyncio.CancelledError:
        logger.info("refresh_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; stop the sweep and close storage on shutdown."""
    global _sweep_task
    from gatekey.service.runtime import get_runtime, shutdown_runtime

    runtime = get_runtime()
    interval = runtime.settings.refresh_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_refresh_sweep(interval))
        logger.info("refresh_sweep_task_started", interval_seconds=interval)

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        shutdown_runtime()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="Gatekey", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the client's ``X-Request-ID`` header when present and
    is echoed back in the response header of the same name.
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
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report whether the configured store answers a ping."""
    from gatekey.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.auth.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        healthy = False
    except Exception as exc:
        logger.error("health_check_failed", error_type=type(exc).__name__)
        healthy = False
    else:
        healthy = True
    body = {
        "status": "ok" if healthy else "unavailable",
        "store": store_type,
        "version": __version__,
        "build": runtime.settings.build_sha,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        return addr or "0.0.0.0", 8081
    return host or "0.0.0.0", int(port)


def create_app() -> FastAPI:
    return app


def main() -> None:
    import uvicorn

    host, port = _split_addr(get_settings().http_addr)
    logger.info("http_server_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
