"""Personal-data export and erasure for a single user."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import Request
from sqlalchemy.orm import Session, selectinload

from app.errors import Forbidden, ValidationError
from app.models.audit import AuditLog
from app.models.file import File
from app.models.user import User
from app.services.audit import audit_events, to_jsonable
from app.services.common import get_or_404
from app.services.file_records import file_records
from app.services.system_settings import system_settings

logger = logging.getLogger(__name__)

EXPORT_AUDIT_LIMIT = 1000
ERASE_CONFIRMATION = "DELETE"


def _require_enabled(db: Session) -> None:
    if not system_settings.get_bool(db, "GDPR_COMPLIANCE_MODE", True):
        raise Forbidden("Data export and erasure are disabled")


def export_user_data(db: Session, user_id, actor: User, request: Request | None = None) -> dict:
    _require_enabled(db)
    user = get_or_404(db, User, user_id, "User not found")
    files = (
        db.query(File)
        .options(selectinload(File.recipients))
        .filter(File.uploaded_by == user.id)
        .order_by(File.upload_date.desc())
        .all()
    )
    logs = (
        db.query(AuditLog)
        .filter(AuditLog.user_id == user.id)
        .order_by(AuditLog.created_at.desc())
        .limit(EXPORT_AUDIT_LIMIT)
        .all()
    )
    data = {
        "user": {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "display_name": user.display_name,
            "department": user.department,
            "created_at": user.created_at,
            "last_login_at": user.last_login_at,
            "preferences": user.preferences,
        },
        "files": [
            {
                "id": file.id,
                "filename": file.original_filename,
                "size": file.file_size,
                "upload_date": file.upload_date,
                "expiry_date": file.expiry_date,
                "status": file.status,
                "recipients": [
                    {
                        "email": r.email,
                        "sent_at": r.email_sent_at,
                        "downloaded_at": r.downloaded_at,
                    }
                    for r in file.recipients
                ],
            }
            for file in files
        ],
        "audit_logs": [
            {
                "action": log.action,
                "category": log.category,
                "ip_address": log.ip_address,
                "created_at": log.created_at,
                "details": log.details,
            }
            for log in logs
        ],
        "exported_at": datetime.now(UTC),
        "exported_by": actor.username,
    }
    audit_events.log_admin_action(
        db,
        "EXPORT_USER_DATA",
        actor.id,
        resource_type="user",
        resource_id=user.id,
        request=request,
    )
    logger.info("user_data_exported user_id=%s admin_id=%s", user.id, actor.id)
    return to_jsonable(data)


def erase_user_data(
    db: Session, user_id, actor: User, confirm: str | None, request: Request | None = None
) -> dict:
    """Delete a user's files, anonymise their audit rows and scrub the account."""
    _require_enabled(db)
    if confirm != ERASE_CONFIRMATION:
        raise ValidationError(
            "Confirmation required",
            [{"field": "confirm", "message": f"must equal {ERASE_CONFIRMATION}"}],
        )
    user = get_or_404(db, User, user_id, "User not found")
    files = db.query(File).filter(File.uploaded_by == user.id).all()
    for file in files:
        file_records.mark_deleted(db, file)

    try:
        anonymized = audit_events.anonymize_user(db, user.id)
        original_username = user.username
        user.is_active = False
        user.email = f"deleted_{user.id}@deleted.local"
        user.display_name = f"Deleted User {user.id}"
        user.department = None
        user.preferences = {}
        user.ldap_groups = []
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(user)

    audit_events.log_admin_action(
        db,
        "DELETE_USER_DATA",
        actor.id,
        resource_type="user",
        resource_id=user.id,
        details={"files_deleted": len(files), "audit_rows_anonymized": anonymized},
        request=request,
    )
    logger.info(
        "user_data_erased user_id=%s username=%s admin_id=%s files=%s",
        user.id,
        original_username,
        actor.id,
        len(files),
    )
    return {"files_deleted": len(files), "audit_rows_anonymized": anonymized}
