"""Uploaded blob record and its lifecycle status."""

import enum
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base

DEFAULT_RETENTION_DAYS = 14

PREVIEWABLE_IMAGE_TYPES = frozenset(
    {"image/jpeg", "image/png", "image/gif", "image/webp", "image/bmp", "image/tiff"}
)


class FileStatus(enum.Enum):
    uploading = "uploading"
    ready = "ready"
    expired = "expired"
    deleted = "deleted"


TERMINAL_STATUSES = frozenset({FileStatus.expired, FileStatus.deleted})


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _default_expiry() -> datetime:
    return datetime.now(UTC) + timedelta(days=DEFAULT_RETENTION_DAYS)


def format_file_size(size_bytes: int) -> str:
    """Format file size in human-readable format."""
    size = float(size_bytes)
    for unit in ["Bytes", "KB", "MB", "GB"]:
        if size < 1024 or unit == "GB":
            if unit == "Bytes":
                return f"{int(size)} {unit}"
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"


class File(Base):
    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint("download_count >= 0", name="ck_files_download_count_positive"),
        CheckConstraint(
            "download_count <= max_downloads", name="ck_files_download_count_within_limit"
        ),
        CheckConstraint(
            "upload_progress >= 0 AND upload_progress <= 100",
            name="ck_files_upload_progress_range",
        ),
        CheckConstraint("file_size >= 0", name="ck_files_file_size_positive"),
        Index("ix_files_status_expiry_owner", "status", "expiry_date", "uploaded_by"),
        Index("ix_files_upload_date", "upload_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    file_extension: Mapped[str | None] = mapped_column(String(20))
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    checksum: Mapped[str | None] = mapped_column(String(64))
    upload_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    expiry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_default_expiry, nullable=False
    )
    uploaded_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_downloads: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[FileStatus] = mapped_column(
        Enum(FileStatus), default=FileStatus.uploading, nullable=False, index=True
    )
    upload_progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    thumbnail_path: Mapped[str | None] = mapped_column(String(1024))
    description: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list | None] = mapped_column(JSON, default=list)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, default=dict)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    owner = relationship("User", back_populates="files")
    recipients = relationship(
        "FileRecipient",
        back_populates="file",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return _as_utc(self.expiry_date) <= now

    def can_be_downloaded(self, now: datetime | None = None) -> bool:
        return (
            self.status == FileStatus.ready
            and not self.is_expired(now)
            and self.download_count < self.max_downloads
        )

    def days_until_expiry(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        remaining = _as_utc(self.expiry_date) - now
        return max(remaining.days + (1 if remaining.seconds else 0), 0)

    @property
    def formatted_size(self) -> str:
        return format_file_size(self.file_size)

    @property
    def is_image(self) -> bool:
        return (self.mime_type or "").startswith("image/")

    @property
    def is_video(self) -> bool:
        return (self.mime_type or "").startswith("video/")

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"

    @property
    def has_preview(self) -> bool:
        return self.mime_type in PREVIEWABLE_IMAGE_TYPES or self.is_video or self.is_pdf
