from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from yoink.api.error_handling import register_exception_handlers
from yoink.api.routes import router
from yoink.api.schemas import Envelope, ErrorBody
from yoink.config import Settings
from yoink.logging import clear_request_context, get_logger, set_correlation_id
from yoink.service.errors import ServiceError
from yoink.service.runtime import Runtime, get_runtime
from yoink.service.seed import seed_auth_data

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Periodically delete expired sessions until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await runtime.sessions.cleanup_expired_sessions()
        except ServiceError as exc:
            logger.warning("session_sweep_failed", error_code=exc.error_code)
        except Exception as exc:
            logger.error("session_sweep_crashed", error=str(exc), exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Seed bootstrap credentials and run the expired-session sweep."""
    global _sweep_task
    runtime = get_runtime()
    await seed_auth_data(runtime.settings.seed_token, runtime.users, runtime.tokens)
    interval = runtime.settings.session_cleanup_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_session_sweep(runtime, interval))

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await runtime.shutdown()
        logger.info("runtime_shutdown_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Yoink Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id.

    Taken from the client's ``X-Request-ID`` header when present, otherwise
    generated, and echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    clear_request_context()
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "version": __version__}


@app.get("/ready")
async def ready():
    runtime = get_runtime()
    try:
        await runtime.tokens.has_any_tokens()
    except ServiceError as exc:
        logger.warning("readiness_check_failed", error_code=exc.error_code)
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="not_ready", message="storage unavailable"),
        )
        return JSONResponse(status_code=503, content=envelope.model_dump())
    return {"status": "ready"}
