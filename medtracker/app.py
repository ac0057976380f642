from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from medtracker.api.error_handling import _error_response, register_exception_handlers
from medtracker.api.routes import extract_bearer_token, router
from medtracker.config import Settings
from medtracker.logging import get_logger, set_correlation_id
from medtracker.service.errors import NotFoundError

logger = get_logger(__name__)

_settings = Settings.from_env()

SERVICE_NAME = "Medicine Tracker Backend"
__version__ = "1.0.0"

_background_tasks: List[asyncio.Task] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the periodic jobs on startup and cancel them on shutdown."""
    from medtracker.service.runtime import get_runtime

    runtime = get_runtime()
    settings = runtime.settings
    if not settings.test_mode:
        _background_tasks.append(
            asyncio.create_task(
                _run_periodic(
                    "revocation_purge",
                    runtime.revocations.purge_expired,
                    settings.revocation_purge_interval_seconds,
                )
            )
        )
        if settings.notifications_enabled:
            _background_tasks.append(
                asyncio.create_task(
                    _run_aligned(
                        "dosage_reminders",
                        runtime.notifications.send_dosage_reminders,
                        settings.reminder_interval_seconds,
                    )
                )
            )
            _background_tasks.append(
                asyncio.create_task(
                    _run_daily_expiry(
                        runtime.notifications.send_expiry_notifications,
                        settings.expiry_notification_hour,
                    )
                )
            )
        logger.info("background_tasks_started", count=len(_background_tasks))

    yield

    while _background_tasks:
        task = _background_tasks.pop()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    logger.info("runtime_shutdown_complete")


app = FastAPI(title=SERVICE_NAME, version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


_PUBLIC_PATHS = {"/", "/healthz", "/docs", "/redoc", "/openapi.json"}
_PUBLIC_PREFIXES = ("/media/",)
_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


def is_public_request(method: str, path: str) -> bool:
    """Requests that skip token inspection entirely."""
    if path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES):
        return True
    if path.startswith("/api/auth/"):
        # logout acts on the caller's own token
        return path != "/api/auth/logout"
    if path == "/api/global-medicines" or path.startswith("/api/global-medicines/"):
        return method.upper() in _SAFE_METHODS
    return False


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Resolve the bearer token into ``request.state.identity``.

    A missing or unacceptable token leaves the request anonymous; routes that
    need an identity reject it through ``get_identity``. Revoked tokens are
    refused outright.
    """
    request.state.identity = None
    if request.method.upper() == "OPTIONS" or is_public_request(
        request.method, request.url.path
    ):
        return await call_next(request)

    token = extract_bearer_token(request.headers.get("Authorization"))
    if token:
        from medtracker.service.runtime import get_runtime

        runtime = get_runtime()
        if runtime.revocations.is_revoked(token):
            logger.warning("revoked_token_rejected", path=request.url.path)
            return _error_response(401, "token has been revoked", code="invalid_token")
        identity = runtime.auth.identify(token)
        if identity is None:
            logger.info("token_not_accepted", path=request.url.path)
        request.state.identity = identity
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id from ``X-Request-ID`` or a fresh one."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.include_router(router)
register_exception_handlers(app)


@app.get("/")
async def service_status() -> Dict[str, Any]:
    return {
        "status": "UP",
        "service": SERVICE_NAME,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Store connectivity and version info."""
    from medtracker.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {"store": {"status": "healthy" if store_ok else "unhealthy", "type": store_type}},
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/media/images/{filename}")
async def serve_image(filename: str) -> FileResponse:
    from medtracker.service.runtime import get_runtime

    runtime = get_runtime()
    # PathTraversalError is rendered as a 400 by the exception handlers
    path = runtime.image_store.path_for(filename)
    if not path.is_file():
        raise NotFoundError("image not found", detail={"filename": filename})
    return FileResponse(path)


async def _run_periodic(label: str, job: Callable[[], Any], interval_seconds: int) -> None:
    """Run ``job`` in a worker thread every ``interval_seconds`` until cancelled."""
    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"{label}_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info(f"{label}_task_cancelled")


def next_tick(now: datetime, interval_seconds: int) -> datetime:
    """First multiple of ``interval_seconds`` since the epoch strictly after ``now``."""
    interval = max(interval_seconds, 1)
    ticks = int(now.timestamp() // interval) + 1
    return datetime.fromtimestamp(ticks * interval, tz=now.tzinfo or timezone.utc)


async def _run_aligned(
    label: str, job: Callable[[datetime], Any], interval_seconds: int
) -> None:
    """Run ``job(tick)`` at each epoch-aligned tick, passing the tick time."""
    last: datetime | None = None
    try:
        while True:
            now = datetime.now(timezone.utc)
            tick = next_tick(max(now, last) if last else now, interval_seconds)
            await asyncio.sleep(max((tick - now).total_seconds(), 0))
            last = tick
            try:
                await asyncio.to_thread(job, tick)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"{label}_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info(f"{label}_task_cancelled")


def seconds_until_hour(now: datetime, hour: int) -> float:
    """Seconds from ``now`` until the next occurrence of ``hour``:00 in the same zone."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def _run_daily_expiry(job: Callable[[], Any], hour: int) -> None:
    try:
        while True:
            await asyncio.sleep(seconds_until_hour(datetime.now(timezone.utc), hour))
            try:
                await asyncio.to_thread(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("expiry_notifications_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("expiry_notifications_task_cancelled")


def create_app() -> FastAPI:
    return app
