"""Hand-off of detached work to Celery.

Request handlers call these after their transaction commits. A broker outage
is logged and never fails the request that triggered the work.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def queue_thumbnail(file_id) -> bool:
    try:
        from app.tasks.thumbnails import generate_thumbnail

        generate_thumbnail.delay(str(file_id))
    except Exception as exc:
        logger.error("thumbnail_queue_failed file_id=%s error=%s", file_id, exc)
        return False
    return True


def queue_file_notifications(recipient_ids) -> dict[str, str]:
    """Queue one notification per recipient; returns failures keyed by id."""
    failures: dict[str, str] = {}
    for recipient_id in recipient_ids:
        try:
            from app.tasks.notifications import send_file_notification

            send_file_notification.delay(str(recipient_id))
        except Exception as exc:
            logger.error(
                "notification_queue_failed recipient_id=%s error=%s", recipient_id, exc
            )
            failures[str(recipient_id)] = f"queue_failed: {exc}"
    return failures


def queue_download_notification(recipient_id) -> bool:
    try:
        from app.tasks.notifications import send_download_notification

        send_download_notification.delay(str(recipient_id))
    except Exception as exc:
        logger.error(
            "download_notification_queue_failed recipient_id=%s error=%s", recipient_id, exc
        )
        return False
    return True
