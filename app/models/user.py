import uuid
from datetime import UTC, date, datetime

from sqlalchemy import JSON, BigInteger, Boolean, Date, DateTime, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.config import settings
from app.db import Base


def _today() -> date:
    return datetime.now(UTC).date()


class User(Base):
    """Directory-backed account with upload quota counters."""

    __tablename__ = "users"
    __table_args__ = (Index("ix_users_is_active", "is_active"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255))
    department: Mapped[str | None] = mapped_column(String(255))
    ldap_groups: Mapped[list | None] = mapped_column(JSON, default=list)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    upload_quota_daily: Mapped[int] = mapped_column(
        BigInteger, default=lambda: settings.default_quota_daily, nullable=False
    )
    upload_quota_monthly: Mapped[int] = mapped_column(
        BigInteger, default=lambda: settings.default_quota_monthly, nullable=False
    )
    upload_used_daily: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    upload_used_monthly: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    quota_reset_date: Mapped[date] = mapped_column(Date, default=_today, nullable=False)

    preferences: Mapped[dict | None] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    files = relationship("File", back_populates="owner", passive_deletes=True)

    def can_upload(self, size: int) -> bool:
        return (
            self.upload_used_daily + size <= self.upload_quota_daily
            and self.upload_used_monthly + size <= self.upload_quota_monthly
        )

    def quota_status(self) -> dict:
        def _percent(used: int, quota: int) -> float:
            if not quota:
                return 100.0
            return round(used / quota * 100, 2)

        return {
            "daily": {
                "used": self.upload_used_daily,
                "quota": self.upload_quota_daily,
                "remaining": max(self.upload_quota_daily - self.upload_used_daily, 0),
                "percentage": _percent(self.upload_used_daily, self.upload_quota_daily),
            },
            "monthly": {
                "used": self.upload_used_monthly,
                "quota": self.upload_quota_monthly,
                "remaining": max(self.upload_quota_monthly - self.upload_used_monthly, 0),
                "percentage": _percent(self.upload_used_monthly, self.upload_quota_monthly),
            },
            "reset_date": self.quota_reset_date.isoformat() if self.quota_reset_date else None,
        }
