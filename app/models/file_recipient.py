"""One addressed delivery of a File, keyed by a single-use download token."""

import enum
import secrets
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
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

from app.config import settings
from app.db import Base
from app.models.file import _as_utc


class EmailStatus(enum.Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    failed = "failed"
    bounced = "bounced"


def generate_download_token() -> str:
    return secrets.token_hex(32)


class FileRecipient(Base):
    __tablename__ = "file_recipients"
    __table_args__ = (
        Index("ix_file_recipients_file_downloaded", "file_id", "downloaded_at"),
        Index("ix_file_recipients_email_status", "email_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("files.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    download_token: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, default=generate_download_token
    )
    downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    download_ip: Mapped[str | None] = mapped_column(String(45))
    download_user_agent: Mapped[str | None] = mapped_column(Text)

    email_status: Mapped[EmailStatus] = mapped_column(
        Enum(EmailStatus), default=EmailStatus.pending, nullable=False
    )
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    email_failure_reason: Mapped[str | None] = mapped_column(Text)
    email_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    custom_message: Mapped[str | None] = mapped_column(Text)
    access_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_access_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    file = relationship("File", back_populates="recipients")

    def has_downloaded(self) -> bool:
        return self.downloaded_at is not None

    def effective_expiry(self) -> datetime | None:
        if self.expiry_date is not None:
            return _as_utc(self.expiry_date)
        if self.file is not None:
            return _as_utc(self.file.expiry_date)
        return None

    def is_expired(self, now: datetime | None = None) -> bool:
        expiry = self.effective_expiry()
        if expiry is None:
            return False
        return expiry <= (now or datetime.now(UTC))

    def can_download(self, now: datetime | None = None) -> bool:
        return self.is_active and not self.has_downloaded() and not self.is_expired(now)

    def download_url(self) -> str:
        return f"{settings.frontend_url.rstrip('/')}/download/{self.download_token}"

    def tracking_url(self) -> str:
        return f"{settings.api_base_url.rstrip('/')}/files/track-email/{self.download_token}"
