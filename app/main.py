import logging
import time

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response

from app.api.admin import router as admin_router
from app.api.files import router as files_router
from app.api.system import router as system_router
from app.config import settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware
from app.rate_limit import limiter
from app.services.audit import audit_events
from app.services.storage import get_storage
from app.services.system_settings import system_settings

configure_logging()

app = FastAPI(title=f"{settings.system_name} API")
logger = logging.getLogger(__name__)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)

_AUDITED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_AUDIT_SKIP_PATHS = ["/health", "/metrics", "/api/v1/files/download/", "/api/v1/files/track-email/"]


def _is_audit_path_skipped(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in _AUDIT_SKIP_PATHS)


def _log_request(request: Request, status_code: int, started: float) -> None:
    db = SessionLocal()
    try:
        audit_events.log_request(
            db,
            request,
            status_code,
            int((time.monotonic() - started) * 1000),
            user_id=getattr(request.state, "user_id", None),
        )
    finally:
        db.close()


@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    should_log = (
        settings.audit_http_requests
        and request.method in _AUDITED_METHODS
        and not _is_audit_path_skipped(request.url.path)
    )
    started = time.monotonic()
    try:
        response = await call_next(request)
    except Exception:
        if should_log:
            _log_request(request, 500, started)
        raise
    if should_log:
        _log_request(request, response.status_code, started)
    return response


def _include_api_router(router, dependencies=None):
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(files_router)
_include_api_router(admin_router)
_include_api_router(system_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _startup():
    try:
        get_storage().root.mkdir(parents=True, exist_ok=True)
    except OSError:
        logger.exception("Failed to create upload directory during startup")
    db = SessionLocal()
    try:
        system_settings.initialize_defaults(db)
    except Exception:
        db.rollback()
        logger.exception("Failed to initialize default settings during startup")
    finally:
        db.close()
