"""Upload quota accounting.

Counters are changed with single UPDATE statements (``used = used + :n``) so
concurrent uploads and the periodic reset never overwrite each other.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.errors import QuotaExceeded
from app.models.user import User
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)


def _today() -> date:
    return datetime.now(UTC).date()


class QuotaService:
    def check(self, db: Session, user: User, total_size: int) -> None:
        """Reject when ``total_size`` bytes would exceed either quota.

        For a batch upload pass the sum of all files.
        """
        db.refresh(user)
        if user.can_upload(total_size):
            return
        over_daily = user.upload_used_daily + total_size > user.upload_quota_daily
        window = "daily" if over_daily else "monthly"
        logger.info(
            "quota_exceeded user_id=%s window=%s requested=%s", user.id, window, total_size
        )
        snapshot = user.quota_status()
        snapshot["requested"] = total_size
        snapshot["exceeded"] = window
        raise QuotaExceeded(f"Upload would exceed your {window} quota", snapshot)

    def consume(self, db: Session, user_id, size: int, commit: bool = True) -> None:
        db.execute(
            update(User)
            .where(User.id == coerce_uuid(user_id))
            .values(
                upload_used_daily=User.upload_used_daily + size,
                upload_used_monthly=User.upload_used_monthly + size,
            )
            .execution_options(synchronize_session=False)
        )
        if commit:
            db.commit()

    def reset_expired_windows(self, db: Session, today: date | None = None) -> dict[str, int]:
        """Zero daily counters on a new day and monthly counters on a new month."""
        today = today or _today()
        month_start = today.replace(day=1)
        monthly = db.execute(
            update(User)
            .where(User.quota_reset_date < month_start)
            .values(upload_used_daily=0, upload_used_monthly=0, quota_reset_date=today)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        daily = db.execute(
            update(User)
            .where(User.quota_reset_date < today)
            .values(upload_used_daily=0, quota_reset_date=today)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        db.commit()
        daily += monthly
        if daily:
            logger.info("quota_reset daily=%s monthly=%s", daily, monthly)
        return {"daily": daily, "monthly": monthly}


quotas = QuotaService()
