"""Token redemption and authenticated downloads."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import quote

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import Gone, NotFound, NotReady, RangeNotSatisfiable
from app.metrics import record_redemption
from app.models.file import TERMINAL_STATUSES, File, FileStatus
from app.models.file_recipient import FileRecipient
from app.models.user import User
from app.services import dispatch
from app.services.audit import audit_events
from app.services.common import client_ip, user_agent
from app.services.file_records import file_records
from app.services.storage import (
    ByteRange,
    ObjectNotFoundError,
    StreamResult,
    get_storage,
    parse_range_header,
)
from app.services.system_settings import system_settings

logger = logging.getLogger(__name__)


@dataclass
class DownloadPayload:
    stream: StreamResult
    filename: str
    mime_type: str
    total_size: int
    byte_range: ByteRange | None = None

    @property
    def content_range(self) -> str | None:
        if self.byte_range is None:
            return None
        return f"bytes {self.byte_range.start}-{self.byte_range.end}/{self.total_size}"

    @property
    def status_code(self) -> int:
        return 206 if self.byte_range is not None else 200

    def headers(self) -> dict[str, str]:
        headers = {
            "Content-Disposition": build_content_disposition(self.filename),
            "Accept-Ranges": "bytes",
        }
        if self.stream.content_length is not None:
            headers["Content-Length"] = str(self.stream.content_length)
        if self.content_range:
            headers["Content-Range"] = self.content_range
        return headers


def build_content_disposition(filename: str) -> str:
    fallback = filename.encode("ascii", "ignore").decode().replace('"', "").replace("\\", "")
    return f"attachment; filename=\"{fallback or 'download'}\"; filename*=UTF-8''{quote(filename)}"


def classify_refusal(recipient: FileRecipient, now: datetime | None = None) -> str | None:
    """Reason a recipient may not redeem, or None when redemption is allowed.

    Order matters: a recipient that already downloaded is reported as such even
    when it has since expired or been deactivated.
    """
    now = now or datetime.now(UTC)
    if recipient.has_downloaded():
        return "already_downloaded"
    if recipient.is_expired(now):
        return "expired"
    if not recipient.is_active:
        return "deactivated"
    file = recipient.file
    if file is None or file.status in TERMINAL_STATUSES:
        return "file_unavailable"
    if file.download_count >= file.max_downloads:
        return "download_limit_reached"
    return None


_REFUSAL_MESSAGES = {
    "already_downloaded": "This file has already been downloaded",
    "expired": "This download link has expired",
    "deactivated": "This download link has been deactivated",
    "file_unavailable": "This file is no longer available",
    "download_limit_reached": "This file has reached its download limit",
}


def _gone(reason: str, recipient: FileRecipient) -> Gone:
    return Gone(
        reason,
        _REFUSAL_MESSAGES.get(reason, "This file is no longer available"),
        downloaded_at=recipient.downloaded_at,
        expiry_date=recipient.effective_expiry(),
    )


class DownloadService:
    def __init__(self) -> None:
        self.storage = None

    def _storage_client(self):
        if self.storage is None:
            self.storage = get_storage()
        return self.storage

    def _open(self, file: File, byte_range: ByteRange | None = None) -> StreamResult:
        try:
            return self._storage_client().stream(
                file.file_path, byte_range=byte_range, content_type=file.mime_type
            )
        except ObjectNotFoundError as exc:
            logger.warning(
                "data_integrity blob_missing file_id=%s path=%s", file.id, file.file_path
            )
            raise NotFound("File content is not available") from exc

    def redeem(self, db: Session, token: str, request: Request | None = None) -> DownloadPayload:
        """Consume a single-use token and return the blob stream."""
        recipient = file_records.find_by_token(db, token)
        if recipient is None:
            record_redemption("not_found")
            raise NotFound("Download link not found")

        reason = classify_refusal(recipient)
        if reason is not None:
            record_redemption(reason)
            logger.info(
                "download_refused recipient_id=%s reason=%s", recipient.id, reason
            )
            raise _gone(reason, recipient)

        file = recipient.file
        if file.status != FileStatus.ready:
            record_redemption("not_ready")
            raise NotReady("File upload has not finished yet")

        stream = self._open(file)

        ip_address = client_ip(request)
        agent = user_agent(request)
        try:
            claimed = file_records.mark_downloaded(
                db, recipient.id, ip_address, agent, commit=False
            )
            if not claimed:
                db.rollback()
                db.refresh(recipient)
                record_redemption("already_downloaded")
                raise _gone("already_downloaded", recipient)
            counted = file_records.increment_download_count(db, file.id, commit=False)
            if not counted:
                db.rollback()
                record_redemption("download_limit_reached")
                raise _gone("download_limit_reached", recipient)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        db.refresh(recipient)
        db.refresh(file)

        record_redemption("success")
        logger.info(
            "file_downloaded file_id=%s recipient_id=%s ip=%s",
            file.id,
            recipient.id,
            ip_address,
        )
        audit_events.log_file_action(
            db,
            "FILE_DOWNLOAD",
            file.id,
            details={"recipient": recipient.email, "download_count": file.download_count},
            request=request,
        )
        if system_settings.get_bool(db, "SEND_DOWNLOAD_NOTIFICATIONS", True):
            dispatch.queue_download_notification(recipient.id)

        return DownloadPayload(
            stream=stream,
            filename=file.original_filename,
            mime_type=file.mime_type,
            total_size=file.file_size,
        )

    def open_for_owner(
        self,
        db: Session,
        file_id,
        user: User,
        range_header: str | None = None,
        request: Request | None = None,
    ) -> DownloadPayload:
        """Owner download; honours a single ``Range`` header."""
        file = file_records.get_file(db, file_id)
        if file.uploaded_by != user.id and not user.is_admin:
            raise NotFound("File not found")
        if file.status == FileStatus.deleted:
            raise NotFound("File not found")
        if file.status == FileStatus.uploading:
            raise NotReady("File upload has not finished yet")

        try:
            byte_range = parse_range_header(range_header, file.file_size)
        except ValueError as exc:
            raise RangeNotSatisfiable(
                "Requested range not satisfiable", details={"size": file.file_size}
            ) from exc

        stream = self._open(file, byte_range)
        if byte_range is None:
            audit_events.log_file_action(
                db, "FILE_OWNER_DOWNLOAD", file.id, user_id=user.id, request=request
            )
        return DownloadPayload(
            stream=stream,
            filename=file.original_filename,
            mime_type=file.mime_type,
            total_size=file.file_size,
            byte_range=byte_range,
        )

    def track_email_open(self, db: Session, token: str) -> bool:
        """Record an e-mail open; unknown tokens are ignored silently."""
        try:
            recipient = file_records.find_by_token(db, token)
            if recipient is None:
                return False
            return file_records.mark_email_opened(db, recipient)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("email_open_tracking_failed")
            return False


downloads = DownloadService()
