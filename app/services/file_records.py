"""File and recipient state transitions.

Counter and status changes are issued as conditional UPDATE statements so
concurrent requests cannot lose updates or move a row out of a terminal
status. Methods taking ``commit`` let a caller group several mutations in one
transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.errors import InvalidStateTransition, NotFound, ValidationError
from app.models.file import TERMINAL_STATUSES, File, FileStatus
from app.models.file_recipient import EmailStatus, FileRecipient
from app.services.common import coerce_uuid
from app.services.storage import ObjectStorageError, chunk_prefix, get_storage

logger = logging.getLogger(__name__)

EMAIL_TRANSITIONS: dict[EmailStatus, frozenset[EmailStatus]] = {
    EmailStatus.pending: frozenset({EmailStatus.sent, EmailStatus.failed}),
    EmailStatus.sent: frozenset(
        {EmailStatus.sent, EmailStatus.delivered, EmailStatus.failed, EmailStatus.bounced}
    ),
    EmailStatus.failed: frozenset({EmailStatus.sent, EmailStatus.failed}),
    EmailStatus.bounced: frozenset({EmailStatus.sent, EmailStatus.bounced}),
    EmailStatus.delivered: frozenset({EmailStatus.delivered}),
}


def clamp_progress(progress: int) -> int:
    return max(0, min(100, int(progress)))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _constraint_error(exc: IntegrityError, entity: str) -> ValidationError:
    message = str(getattr(exc, "orig", exc)).splitlines()[0]
    return ValidationError(
        f"{entity} violates a data constraint", [{"field": entity, "message": message}]
    )


class FileRecords:
    def __init__(self) -> None:
        self.storage = None

    def _storage_client(self):
        if self.storage is None:
            self.storage = get_storage()
        return self.storage

    def _execute(self, db: Session, statement) -> int:
        try:
            result = db.execute(statement.execution_options(synchronize_session=False))
        except IntegrityError as exc:
            db.rollback()
            raise _constraint_error(exc, "file") from exc
        return result.rowcount or 0

    def _finish(self, db: Session, commit: bool, *instances) -> None:
        if commit:
            db.commit()
        for instance in instances:
            if instance is not None:
                db.refresh(instance)

    # Lookups

    def get_file(self, db: Session, file_id) -> File:
        try:
            file = db.get(File, coerce_uuid(file_id))
        except ValueError as exc:
            raise NotFound("File not found") from exc
        if not file:
            raise NotFound("File not found")
        return file

    def get_recipient(self, db: Session, recipient_id) -> FileRecipient:
        try:
            recipient = db.get(FileRecipient, coerce_uuid(recipient_id))
        except ValueError as exc:
            raise NotFound("Recipient not found") from exc
        if not recipient:
            raise NotFound("Recipient not found")
        return recipient

    def find_by_token(self, db: Session, token: str) -> FileRecipient | None:
        if not token:
            return None
        return (
            db.query(FileRecipient)
            .options(selectinload(FileRecipient.file))
            .filter(FileRecipient.download_token == token)
            .first()
        )

    # File

    def create_file(
        self,
        db: Session,
        *,
        owner_id,
        filename: str,
        original_filename: str,
        file_path: str,
        file_size: int,
        mime_type: str,
        file_extension: str | None,
        checksum: str | None,
        expiry_date: datetime,
        max_downloads: int = 1,
        description: str | None = None,
        tags: list | None = None,
        metadata: dict | None = None,
        status: FileStatus = FileStatus.uploading,
    ) -> File:
        """Add a File to the session and flush; the caller commits."""
        file = File(
            id=uuid.uuid4(),
            uploaded_by=coerce_uuid(owner_id),
            filename=filename,
            original_filename=original_filename,
            file_path=file_path,
            file_size=file_size,
            mime_type=mime_type,
            file_extension=file_extension,
            checksum=checksum,
            upload_date=datetime.now(UTC),
            expiry_date=expiry_date,
            max_downloads=max_downloads,
            description=description,
            tags=tags or [],
            metadata_=metadata or {},
            status=status,
            upload_progress=100 if status == FileStatus.ready else 0,
        )
        db.add(file)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise _constraint_error(exc, "file") from exc
        return file

    def update_progress(self, db: Session, file: File, progress: int, commit: bool = True) -> File:
        value = clamp_progress(progress)
        if value == 100:
            self._execute(
                db,
                update(File)
                .where(File.id == file.id)
                .where(File.status == FileStatus.uploading)
                .values(status=FileStatus.ready, upload_progress=100),
            )
        self._execute(
            db,
            update(File)
            .where(File.id == file.id)
            .where(File.status.not_in(list(TERMINAL_STATUSES)))
            .values(upload_progress=value),
        )
        self._finish(db, commit, file)
        return file

    def mark_ready(self, db: Session, file: File, commit: bool = True) -> File:
        changed = self._execute(
            db,
            update(File)
            .where(File.id == file.id)
            .where(File.status == FileStatus.uploading)
            .values(status=FileStatus.ready, upload_progress=100),
        )
        if not changed:
            db.refresh(file)
            if file.status != FileStatus.ready:
                raise InvalidStateTransition(
                    f"Cannot mark a {file.status.value} file as ready",
                    details={"file_id": str(file.id), "status": file.status.value},
                )
        self._finish(db, commit, file)
        return file

    def mark_expired(self, db: Session, file: File, commit: bool = True) -> File:
        changed = self._execute(
            db,
            update(File)
            .where(File.id == file.id)
            .where(File.status == FileStatus.ready)
            .values(status=FileStatus.expired),
        )
        if not changed:
            db.refresh(file)
            if file.status != FileStatus.expired:
                raise InvalidStateTransition(
                    f"Cannot expire a {file.status.value} file",
                    details={"file_id": str(file.id), "status": file.status.value},
                )
        self._finish(db, commit, file)
        return file

    def mark_deleted(
        self, db: Session, file: File, remove_blobs: bool = True, commit: bool = True
    ) -> bool:
        """Move any non-deleted file to ``deleted``; returns False if it already was."""
        changed = self._execute(
            db,
            update(File)
            .where(File.id == file.id)
            .where(File.status != FileStatus.deleted)
            .values(status=FileStatus.deleted, deleted_at=datetime.now(UTC)),
        )
        self._finish(db, commit, file)
        if remove_blobs:
            self.remove_blobs(file)
        if changed:
            logger.info("file_deleted file_id=%s", file.id)
        return bool(changed)

    def remove_blobs(self, file: File) -> int:
        """Best-effort removal of a file's stored blobs, including unassembled chunks."""
        removed = 0
        keys = [file.file_path]
        if file.thumbnail_path:
            keys.append(file.thumbnail_path)
        for size_key in (file.metadata_ or {}).get("thumbnails", {}).values():
            if size_key not in keys:
                keys.append(size_key)
        storage = self._storage_client()
        for key in keys:
            try:
                if storage.delete(key):
                    removed += 1
            except ObjectStorageError as exc:
                logger.warning("blob_delete_failed file_id=%s key=%s error=%s", file.id, key, exc)
        try:
            storage.delete_tree(chunk_prefix(file.id))
        except ObjectStorageError as exc:
            logger.warning("chunk_delete_failed file_id=%s error=%s", file.id, exc)
        return removed

    def increment_download_count(self, db: Session, file_id, commit: bool = True) -> bool:
        """Bump the counter unless the file is at its download limit."""
        changed = self._execute(
            db,
            update(File)
            .where(File.id == coerce_uuid(file_id))
            .where(File.download_count < File.max_downloads)
            .values(download_count=File.download_count + 1),
        )
        if commit:
            db.commit()
        return bool(changed)

    def set_thumbnails(self, db: Session, file: File, thumbnails: dict[str, str]) -> File:
        metadata = dict(file.metadata_ or {})
        metadata["thumbnails"] = thumbnails
        file.metadata_ = metadata
        file.thumbnail_path = thumbnails.get("medium") or next(iter(thumbnails.values()), None)
        db.commit()
        db.refresh(file)
        return file

    # Recipient

    def create_recipient(
        self,
        db: Session,
        file: File,
        email: str,
        expiry_date: datetime | None = None,
        custom_message: str | None = None,
    ) -> FileRecipient:
        """Add a recipient to the session and flush; the caller commits."""
        address = normalize_email(email)
        if not address:
            raise ValidationError(
                "Recipient email is required", [{"field": "recipients", "message": "empty"}]
            )
        recipient = FileRecipient(
            file_id=file.id,
            email=address,
            expiry_date=expiry_date,
            custom_message=custom_message,
        )
        db.add(recipient)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise _constraint_error(exc, "recipient") from exc
        return recipient

    def mark_downloaded(
        self,
        db: Session,
        recipient_id,
        ip_address: str | None,
        user_agent: str | None,
        commit: bool = True,
    ) -> bool:
        """Claim the single redemption; False if it was already claimed."""
        now = datetime.now(UTC)
        changed = self._execute(
            db,
            update(FileRecipient)
            .where(FileRecipient.id == coerce_uuid(recipient_id))
            .where(FileRecipient.downloaded_at.is_(None))
            .values(
                downloaded_at=now,
                download_ip=ip_address,
                download_user_agent=user_agent,
                access_count=FileRecipient.access_count + 1,
                last_access_at=now,
            ),
        )
        if commit:
            db.commit()
        return bool(changed)

    def _set_email_status(
        self, db: Session, recipient: FileRecipient, status: EmailStatus, **values
    ) -> bool:
        db.refresh(recipient)
        if status not in EMAIL_TRANSITIONS[recipient.email_status]:
            logger.info(
                "email_status_ignored recipient_id=%s from=%s to=%s",
                recipient.id,
                recipient.email_status.value,
                status.value,
            )
            return False
        recipient.email_status = status
        for key, value in values.items():
            setattr(recipient, key, value)
        db.commit()
        db.refresh(recipient)
        return True

    def mark_email_sent(self, db: Session, recipient: FileRecipient) -> bool:
        return self._set_email_status(
            db,
            recipient,
            EmailStatus.sent,
            email_sent_at=datetime.now(UTC),
            notification_sent=True,
            email_failure_reason=None,
        )

    def mark_email_delivered(self, db: Session, recipient: FileRecipient) -> bool:
        return self._set_email_status(db, recipient, EmailStatus.delivered)

    def mark_email_failed(self, db: Session, recipient: FileRecipient, reason: str) -> bool:
        return self._set_email_status(
            db, recipient, EmailStatus.failed, email_failure_reason=(reason or "")[:1000]
        )

    def mark_email_bounced(self, db: Session, recipient: FileRecipient, reason: str) -> bool:
        return self._set_email_status(
            db, recipient, EmailStatus.bounced, email_failure_reason=(reason or "")[:1000]
        )

    def mark_email_opened(self, db: Session, recipient: FileRecipient) -> bool:
        changed = self._execute(
            db,
            update(FileRecipient)
            .where(FileRecipient.id == recipient.id)
            .where(FileRecipient.email_opened_at.is_(None))
            .values(email_opened_at=datetime.now(UTC)),
        )
        db.commit()
        db.refresh(recipient)
        return bool(changed)

    def increment_access_count(self, db: Session, recipient_id, commit: bool = True) -> None:
        self._execute(
            db,
            update(FileRecipient)
            .where(FileRecipient.id == coerce_uuid(recipient_id))
            .values(
                access_count=FileRecipient.access_count + 1,
                last_access_at=datetime.now(UTC),
            ),
        )
        if commit:
            db.commit()

    def deactivate(self, db: Session, recipient: FileRecipient) -> FileRecipient:
        recipient.is_active = False
        db.commit()
        db.refresh(recipient)
        return recipient

    def set_recipient_expiry(
        self, db: Session, recipient: FileRecipient, expiry_date: datetime | None
    ) -> FileRecipient:
        recipient.expiry_date = expiry_date
        db.commit()
        db.refresh(recipient)
        return recipient


file_records = FileRecords()
