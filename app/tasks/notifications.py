import logging
import smtplib

from app.celery_app import celery_app
from app.db import SessionLocal
from app.errors import NotFound
from app.models.file import FileStatus
from app.services import email as email_service
from app.services.file_records import file_records

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


def _load_recipient(session, recipient_id: str):
    try:
        recipient = file_records.get_recipient(session, recipient_id)
    except NotFound:
        logger.warning("notification_skipped recipient_id=%s reason=missing", recipient_id)
        return None
    if not recipient.is_active or recipient.file is None:
        logger.info("notification_skipped recipient_id=%s reason=inactive", recipient_id)
        return None
    if recipient.file.status != FileStatus.ready:
        logger.info(
            "notification_skipped recipient_id=%s reason=file_%s",
            recipient_id,
            recipient.file.status.value,
        )
        return None
    return recipient


@celery_app.task(
    bind=True,
    name="app.tasks.notifications.send_file_notification",
    max_retries=MAX_RETRIES,
    default_retry_delay=60,
)
def send_file_notification(self, recipient_id: str) -> bool:
    session = SessionLocal()
    try:
        recipient = _load_recipient(session, recipient_id)
        if recipient is None:
            return False
        try:
            email_service.send_file_notification(session, recipient)
        except email_service.EmailNotConfigured as exc:
            file_records.mark_email_failed(session, recipient, str(exc))
            return False
        except (smtplib.SMTPException, OSError) as exc:
            if self.request.retries >= self.max_retries:
                logger.error(
                    "file_notification_failed recipient_id=%s error=%s", recipient_id, exc
                )
                file_records.mark_email_failed(session, recipient, str(exc))
                return False
            raise self.retry(exc=exc)
        except Exception as exc:
            session.rollback()
            file_records.mark_email_failed(session, recipient, f"{type(exc).__name__}: {exc}")
            logger.exception("file_notification_error recipient_id=%s", recipient_id)
            return False
        file_records.mark_email_sent(session, recipient)
        return True
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.notifications.send_download_notification")
def send_download_notification(recipient_id: str) -> bool:
    session = SessionLocal()
    try:
        try:
            recipient = file_records.get_recipient(session, recipient_id)
        except NotFound:
            return False
        return email_service.send_download_notification(session, recipient)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
