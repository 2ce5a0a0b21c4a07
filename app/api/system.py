from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version

from fastapi import APIRouter, Depends, Query
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db
from app.config import settings
from app.models.user import User
from app.services.file_catalog import file_catalog, format_bytes
from app.services.file_metadata import expected_mime_types
from app.services.storage import ObjectStorageError, get_storage
from app.services.system_settings import DEFAULTS_BY_KEY, system_settings
from app.services.uploads import (
    MAX_CHUNK_SIZE,
    MAX_DOWNLOADS,
    MAX_RETENTION_DAYS,
    MAX_TOTAL_CHUNKS,
)

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health")
def health(db: Session = Depends(get_db)):
    checks = {"database": "ok", "storage": "ok"}
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        checks["database"] = "error"
    try:
        get_storage().disk_usage()
    except (OSError, ObjectStorageError):
        checks["storage"] = "error"
    healthy = all(value == "ok" for value in checks.values())
    return {"status": "ok" if healthy else "degraded", "checks": checks}


@router.get("/settings")
def public_settings(db: Session = Depends(get_db)):
    return system_settings.public_settings(db)


@router.get("/limits")
def limits(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return {
        "max_file_size": system_settings.get_number(db, "MAX_FILE_SIZE", settings.max_file_size),
        "max_files_per_upload": settings.max_files_per_upload,
        "allowed_extensions": system_settings.get_list(
            db, "ALLOWED_EXTENSIONS", DEFAULTS_BY_KEY["ALLOWED_EXTENSIONS"].value
        ),
        "default_retention_days": system_settings.get_number(
            db, "DEFAULT_FILE_RETENTION_DAYS", settings.default_file_retention_days
        ),
        "max_retention_days": MAX_RETENTION_DAYS,
        "max_downloads": MAX_DOWNLOADS,
        "quota": current_user.quota_status(),
    }


def _app_version() -> str:
    try:
        return version("secure-file-transfer")
    except PackageNotFoundError:
        return "0.0.0"


def _max_file_size(db: Session) -> int:
    return int(system_settings.get_number(db, "MAX_FILE_SIZE", settings.max_file_size))


def _allowed_extensions(db: Session) -> list[str]:
    return system_settings.get_list(
        db, "ALLOWED_EXTENSIONS", DEFAULTS_BY_KEY["ALLOWED_EXTENSIONS"].value
    )


@router.get("/info")
def info(db: Session = Depends(get_db)):
    return {
        "name": system_settings.get_setting(db, "SYSTEM_NAME", settings.system_name),
        "version": _app_version(),
        "environment": settings.app_env,
        "maintenance_mode": system_settings.get_bool(db, "MAINTENANCE_MODE", False),
        "max_file_size": _max_file_size(db),
        "allowed_extensions": _allowed_extensions(db),
        "session_timeout_minutes": settings.jwt_access_ttl_minutes,
        "features": {
            "resumable_uploads": True,
            "email_notifications": True,
            "audit_logging": True,
            "admin_panel": True,
        },
    }


@router.get("/stats")
def stats(
    period: str = Query(default="week", pattern="^(day|week|month)$"),
    db: Session = Depends(get_db),
):
    return {
        "period": period,
        "stats": file_catalog.period_totals(db, period),
        "generated_at": datetime.now(UTC),
    }


@router.get("/capabilities")
def capabilities(db: Session = Depends(get_db)):
    max_file_size = _max_file_size(db)
    return {
        "upload": {
            "max_file_size": max_file_size,
            "formatted_max_size": format_bytes(max_file_size),
            "allowed_extensions": _allowed_extensions(db),
            "max_files_per_upload": settings.max_files_per_upload,
            "resumable_uploads": True,
            "max_chunk_size": MAX_CHUNK_SIZE,
            "max_total_chunks": MAX_TOTAL_CHUNKS,
        },
        "download": {
            "max_downloads_per_file": system_settings.get_number(
                db, "MAX_DOWNLOADS_PER_FILE", DEFAULTS_BY_KEY["MAX_DOWNLOADS_PER_FILE"].value
            ),
            "supported_methods": ["direct", "token-based"],
            "resumable_downloads": True,
        },
        "retention": {
            "default_days": system_settings.get_number(
                db, "DEFAULT_FILE_RETENTION_DAYS", settings.default_file_retention_days
            ),
            "min_days": 1,
            "max_days": MAX_RETENTION_DAYS,
        },
        "notifications": {
            "email": True,
            "download_notifications": system_settings.get_bool(
                db, "SEND_DOWNLOAD_NOTIFICATIONS", True
            ),
            "expiry_warnings": False,
        },
        "security": {
            "audit_logging": True,
            "gdpr_compliance_mode": system_settings.get_bool(db, "GDPR_COMPLIANCE_MODE", True),
            "encryption_at_rest": False,
        },
    }


@router.get("/file-types")
def file_types(db: Session = Depends(get_db)):
    supported = []
    grouped: dict[str, list[dict]] = {}
    for extension in _allowed_extensions(db):
        mime_types = sorted(expected_mime_types(extension) or ())
        category = _category(mime_types)
        entry = {"extension": extension, "category": category, "mime_types": mime_types}
        supported.append(entry)
        grouped.setdefault(category, []).append(entry)
    max_file_size = _max_file_size(db)
    return {
        "supported_types": supported,
        "grouped_types": grouped,
        "total_types": len(supported),
        "max_file_size": max_file_size,
        "formatted_max_size": format_bytes(max_file_size),
    }


def _category(mime_types: list[str]) -> str:
    if not mime_types:
        return "other"
    major, _, minor = mime_types[0].partition("/")
    if major in ("image", "video", "text"):
        return major
    if "zip" in minor or "rar" in minor:
        return "archive"
    if "sheet" in minor or "excel" in minor:
        return "spreadsheet"
    if "presentation" in minor or "powerpoint" in minor:
        return "presentation"
    return "document"
