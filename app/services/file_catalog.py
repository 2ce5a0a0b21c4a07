"""File listing, detail views, deletion and storage statistics."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import Request
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from app.config import settings
from app.errors import NotFound, ValidationError
from app.models.file import File, FileStatus
from app.models.file_recipient import EmailStatus, FileRecipient
from app.models.user import User
from app.services.audit import audit_events
from app.services.common import apply_ordering, apply_pagination, coerce_uuid, validate_enum
from app.services.file_records import file_records
from app.services.storage import ObjectStorageError, get_storage

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = {
    "upload_date": File.upload_date,
    "expiry_date": File.expiry_date,
    "original_filename": File.original_filename,
    "file_size": File.file_size,
    "download_count": File.download_count,
}

PERIOD_HOURS = {"day": 24, "week": 7 * 24, "month": 30 * 24, "year": 365 * 24}

_BYTE_UNITS = ("Bytes", "KB", "MB", "GB", "TB", "PB")


def period_start(period: str, now: datetime | None = None) -> datetime:
    hours = PERIOD_HOURS.get(period)
    if hours is None:
        raise ValidationError(
            "Invalid period", [{"field": "period", "message": f"unknown value {period!r}"}]
        )
    return (now or datetime.now(UTC)) - timedelta(hours=hours)


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    for unit in _BYTE_UNITS:
        if value < 1024 or unit == _BYTE_UNITS[-1]:
            break
        value /= 1024
    return f"{round(value, 2):g} {unit}"


class FileCatalog:
    def __init__(self) -> None:
        self.storage = None

    def _storage_client(self):
        if self.storage is None:
            self.storage = get_storage()
        return self.storage

    def _query(
        self,
        db: Session,
        owner_id=None,
        search: str | None = None,
        status: str | None = None,
        include_deleted: bool = False,
    ):
        query = db.query(File).options(selectinload(File.recipients))
        if owner_id is not None:
            query = query.filter(File.uploaded_by == coerce_uuid(owner_id))
        status_value = validate_enum(status, FileStatus, "status")
        if status_value:
            query = query.filter(File.status == status_value)
        elif not include_deleted:
            query = query.filter(File.status != FileStatus.deleted)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(File.original_filename.ilike(pattern), File.description.ilike(pattern))
            )
        return query

    def list_files(
        self,
        db: Session,
        owner_id=None,
        search: str | None = None,
        status: str | None = None,
        order_by: str = "upload_date",
        order_dir: str = "desc",
        limit: int = 20,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> tuple[list[File], int]:
        query = self._query(db, owner_id, search, status, include_deleted)
        total = query.count()
        query = apply_ordering(query, order_by, order_dir, SORTABLE_COLUMNS)
        return apply_pagination(query, limit, offset).all(), total

    def get_owned(self, db: Session, file_id, user: User) -> File:
        file = file_records.get_file(db, file_id)
        if file.uploaded_by != user.id and not user.is_admin:
            raise NotFound("File not found")
        return file

    def download_stats(self, file: File) -> dict:
        recipients = list(file.recipients)
        downloaded = [r for r in recipients if r.downloaded_at is not None]
        return {
            "total_recipients": len(recipients),
            "downloaded": len(downloaded),
            "pending": len(recipients) - len(downloaded),
            "emails_sent": sum(
                1
                for r in recipients
                if r.email_status in (EmailStatus.sent, EmailStatus.delivered)
            ),
            "emails_failed": sum(1 for r in recipients if r.email_status == EmailStatus.failed),
            "emails_opened": sum(1 for r in recipients if r.email_opened_at is not None),
        }

    def delete(
        self, db: Session, file: File, actor: User, request: Request | None = None
    ) -> bool:
        """Soft-delete a file and remove its blobs."""
        changed = file_records.mark_deleted(db, file)
        action = "FILE_DELETE" if file.uploaded_by == actor.id else "ADMIN_FILE_DELETE"
        if action == "ADMIN_FILE_DELETE":
            audit_events.log_admin_action(
                db,
                action,
                actor.id,
                resource_type="file",
                resource_id=file.id,
                details={"filename": file.original_filename, "owner_id": file.uploaded_by},
                request=request,
            )
        else:
            audit_events.log_file_action(
                db,
                action,
                file.id,
                user_id=actor.id,
                details={"filename": file.original_filename},
                request=request,
            )
        return changed

    def storage_stats(self, db: Session) -> dict:
        total_files, total_bytes = db.query(
            func.count(File.id), func.coalesce(func.sum(File.file_size), 0)
        ).one()
        active_files, active_bytes = (
            db.query(func.count(File.id), func.coalesce(func.sum(File.file_size), 0))
            .filter(File.status == FileStatus.ready)
            .one()
        )
        capacity = settings.storage_capacity_bytes
        stats = {
            "total_files": int(total_files),
            "total_size": int(total_bytes),
            "active_files": int(active_files),
            "active_size": int(active_bytes),
            "capacity": capacity,
            "usage_percent": round(int(active_bytes) / capacity * 100, 2) if capacity else 0.0,
            "disk": None,
        }
        try:
            usage = self._storage_client().disk_usage()
            stats["disk"] = {"total": usage.total, "used": usage.used, "free": usage.free}
        except (OSError, ObjectStorageError) as exc:
            logger.warning("disk_usage_failed error=%s", exc)
        return stats

    def period_totals(self, db: Session, period: str) -> dict:
        since = period_start(period)
        files, size = (
            db.query(func.count(File.id), func.coalesce(func.sum(File.file_size), 0))
            .filter(File.upload_date >= since, File.status != FileStatus.deleted)
            .one()
        )
        downloads = (
            db.query(func.count(FileRecipient.id))
            .filter(FileRecipient.downloaded_at >= since)
            .scalar()
        )
        return {
            "total_files": int(files),
            "total_downloads": int(downloads or 0),
            "total_size": int(size),
            "formatted_size": format_bytes(int(size)),
        }

    def activity(self, db: Session, period: str, metric: str | None = None) -> dict:
        """Per-day upload, download and login counts since the start of ``period``."""
        since = period_start(period)
        stats: dict = {}
        if metric in (None, "uploads"):
            day = func.date(File.upload_date).label("date")
            rows = (
                db.query(day, func.count(File.id), func.coalesce(func.sum(File.file_size), 0))
                .filter(File.upload_date >= since)
                .group_by(day)
                .order_by(day)
                .all()
            )
            stats["uploads"] = [
                {"date": str(date), "count": int(count), "size": int(size)}
                for date, count, size in rows
            ]
        if metric in (None, "downloads"):
            stats["downloads"] = self._daily_counts(
                db, FileRecipient.downloaded_at, FileRecipient.id, since
            )
        if metric in (None, "users"):
            stats["users"] = self._daily_counts(db, User.last_login_at, User.id, since)
        if metric in (None, "storage"):
            stats["storage"] = self.storage_stats(db)
        return stats

    @staticmethod
    def _daily_counts(db: Session, column, key, since: datetime) -> list[dict]:
        day = func.date(column).label("date")
        rows = (
            db.query(day, func.count(key))
            .filter(column >= since)
            .group_by(day)
            .order_by(day)
            .all()
        )
        return [{"date": str(date), "count": int(count)} for date, count in rows]

    def dashboard(self, db: Session) -> dict:
        files_by_status = dict(
            db.query(File.status, func.count(File.id)).group_by(File.status).all()
        )
        return {
            "users": {
                "total": db.query(func.count(User.id)).scalar() or 0,
                "active": db.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar()
                or 0,
                "admins": db.query(func.count(User.id)).filter(User.is_admin.is_(True)).scalar()
                or 0,
            },
            "files": {status.value: int(files_by_status.get(status, 0)) for status in FileStatus},
            "recipients": {
                "total": db.query(func.count(FileRecipient.id)).scalar() or 0,
                "downloaded": db.query(func.count(FileRecipient.id))
                .filter(FileRecipient.downloaded_at.is_not(None))
                .scalar()
                or 0,
            },
            "storage": self.storage_stats(db),
        }


file_catalog = FileCatalog()
