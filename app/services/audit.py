"""Audit trail writers and queries.

Writers are best-effort: a failed insert is logged and swallowed so that the
business operation being audited is never rolled back because of it. Callers
commit their own work before recording the event.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum

from fastapi import Request
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.audit import AuditCategory, AuditLog, AuditSeverity
from app.services.common import (
    apply_pagination,
    client_ip,
    coerce_uuid,
    user_agent,
    validate_enum,
)

logger = logging.getLogger(__name__)


def to_jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


class AuditEvents:
    def record(
        self,
        db: Session,
        action: str,
        category: AuditCategory,
        severity: AuditSeverity,
        *,
        user_id=None,
        resource_type: str | None = None,
        resource_id=None,
        details: dict | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        request: Request | None = None,
        status_code: int | None = None,
        duration_ms: int | None = None,
        error_message: str | None = None,
    ) -> AuditLog | None:
        entry = AuditLog(
            user_id=coerce_uuid(user_id),
            action=action,
            category=category,
            severity=severity,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
            request_method=request.method if request is not None else None,
            request_url=str(request.url.path) if request is not None else None,
            status_code=status_code,
            duration_ms=duration_ms,
            details=to_jsonable(details) if details is not None else None,
            old_values=to_jsonable(old_values) if old_values is not None else None,
            new_values=to_jsonable(new_values) if new_values is not None else None,
            error_message=error_message,
        )
        try:
            with db.begin_nested():
                db.add(entry)
            db.commit()
        except SQLAlchemyError:
            logger.exception("audit_write_failed action=%s", action)
            db.rollback()
            return None
        return entry

    def log_auth(self, db: Session, action: str, user_id=None, details=None, request=None):
        severity = AuditSeverity.high if "FAILED" in action else AuditSeverity.low
        return self.record(
            db, action, AuditCategory.auth, severity,
            user_id=user_id, details=details, request=request,
        )

    def log_file_action(
        self, db: Session, action: str, file_id, user_id=None, details=None, request=None
    ):
        severity = AuditSeverity.medium if "DELETE" in action else AuditSeverity.low
        return self.record(
            db, action, AuditCategory.file, severity,
            user_id=user_id, resource_type="file", resource_id=file_id,
            details=details, request=request,
        )

    def log_admin_action(
        self,
        db: Session,
        action: str,
        user_id,
        resource_type: str | None = None,
        resource_id=None,
        details=None,
        old_values=None,
        new_values=None,
        request=None,
    ):
        return self.record(
            db, action, AuditCategory.admin, AuditSeverity.high,
            user_id=user_id, resource_type=resource_type, resource_id=resource_id,
            details=details, old_values=old_values, new_values=new_values,
            request=request,
        )

    def log_system_action(self, db: Session, action: str, details=None):
        return self.record(
            db, action, AuditCategory.system, AuditSeverity.medium, details=details
        )

    def log_security_event(
        self, db: Session, action: str, user_id=None, details=None, request=None
    ):
        return self.record(
            db, action, AuditCategory.security, AuditSeverity.critical,
            user_id=user_id, details=details, request=request,
        )

    def log_request(
        self, db: Session, request: Request, status_code: int, duration_ms: int, user_id=None
    ):
        if status_code >= 500:
            severity = AuditSeverity.high
        elif status_code >= 400:
            severity = AuditSeverity.medium
        else:
            severity = AuditSeverity.low
        return self.record(
            db, "HTTP_REQUEST", AuditCategory.system, severity,
            user_id=user_id, request=request, status_code=status_code,
            duration_ms=duration_ms,
        )

    def _filtered(
        self,
        db: Session,
        category=None,
        severity=None,
        action: str | None = None,
        user_id=None,
        start: datetime | None = None,
        end: datetime | None = None,
    ):
        query = db.query(AuditLog)
        category = validate_enum(category, AuditCategory, "category")
        severity = validate_enum(severity, AuditSeverity, "severity")
        if category:
            query = query.filter(AuditLog.category == category)
        if severity:
            query = query.filter(AuditLog.severity == severity)
        if action:
            query = query.filter(AuditLog.action == action)
        if user_id:
            query = query.filter(AuditLog.user_id == coerce_uuid(user_id))
        if start:
            query = query.filter(AuditLog.created_at >= start)
        if end:
            query = query.filter(AuditLog.created_at <= end)
        return query

    def list(self, db: Session, limit: int = 50, offset: int = 0, **filters) -> list[AuditLog]:
        query = self._filtered(db, **filters).order_by(AuditLog.created_at.desc())
        return apply_pagination(query, limit, offset).all()

    def count(self, db: Session, **filters) -> int:
        return self._filtered(db, **filters).count()

    def anonymize_user(self, db: Session, user_id) -> int:
        """Strip personal data from a user's rows, keeping action and time."""
        result = db.execute(
            update(AuditLog)
            .where(AuditLog.user_id == coerce_uuid(user_id))
            .values(details=None, user_agent=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


audit_events = AuditEvents()
