from __future__ import annotations

import logging
from datetime import datetime

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Business-rule failure reported to the caller as a structured response."""

    status_code = 400
    code = "error"

    def __init__(self, message: str, details: object | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message, details=errors or [])


class QuotaExceeded(AppError):
    status_code = 413
    code = "quota_exceeded"

    def __init__(self, message: str, quota: dict):
        super().__init__(message, details=quota)
        self.quota = quota


class UnsupportedFileType(AppError):
    status_code = 400
    code = "unsupported_file_type"


class MimeTypeMismatch(AppError):
    status_code = 400
    code = "mime_type_mismatch"


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class Gone(AppError):
    """Token is known but redemption is permanently refused."""

    status_code = 410
    code = "gone"

    def __init__(
        self,
        reason: str,
        message: str,
        downloaded_at: datetime | None = None,
        expiry_date: datetime | None = None,
    ):
        super().__init__(
            message,
            details={
                "reason": reason,
                "downloaded_at": downloaded_at.isoformat() if downloaded_at else None,
                "expiry_date": expiry_date.isoformat() if expiry_date else None,
            },
        )
        self.reason = reason
        self.downloaded_at = downloaded_at
        self.expiry_date = expiry_date


class Forbidden(AppError):
    status_code = 403
    code = "forbidden"


class NotReady(AppError):
    status_code = 409
    code = "not_ready"


class Conflict(AppError):
    status_code = 409
    code = "conflict"


class CleanupAlreadyRunning(Conflict):
    code = "cleanup_already_running"

    def __init__(self, message: str = "Cleanup job is already running"):
        super().__init__(message)


class SettingVersionConflict(Conflict):
    code = "setting_version_conflict"


class InvalidStateTransition(Conflict):
    code = "invalid_state_transition"


class RangeNotSatisfiable(AppError):
    status_code = 416
    code = "range_not_satisfiable"


class ServiceUnavailable(AppError):
    status_code = 503
    code = "service_unavailable"


class InternalError(AppError):
    status_code = 500
    code = "internal_error"


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def register_error_handlers(app) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if isinstance(exc, InternalError):
            logger.error(
                "internal_error path=%s message=%s", request.url.path, exc.message
            )
            details = None if settings.is_production else exc.details
        else:
            details = exc.details
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, details, _request_id(request)),
        )

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Convert errors to JSON-serializable format.
        def _sanitize_input(value):
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            if isinstance(value, UploadFile):
                return value.filename or "upload"
            if isinstance(value, dict):
                return {key: _sanitize_input(val) for key, val in value.items()}
            if isinstance(value, (list, tuple, set)):
                return [_sanitize_input(item) for item in value]
            if isinstance(value, (str, int, float, bool)) or value is None:
                return value
            return str(value)

        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            if "input" in error_copy:
                error_copy["input"] = _sanitize_input(error_copy.get("input"))
            error_copy.pop("ctx", None)
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        details = None if settings.is_production else str(exc)
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", details, _request_id(request)
            ),
        )
