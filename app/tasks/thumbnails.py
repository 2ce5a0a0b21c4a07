import logging

from app.celery_app import celery_app
from app.db import SessionLocal
from app.errors import NotFound
from app.models.file import FileStatus
from app.services.file_records import file_records
from app.services.storage import ObjectStorageError
from app.services.thumbnails import ThumbnailError, thumbnails

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="app.tasks.thumbnails.generate_thumbnail",
    max_retries=2,
    default_retry_delay=30,
)
def generate_thumbnail(self, file_id: str) -> dict[str, str]:
    session = SessionLocal()
    try:
        try:
            file = file_records.get_file(session, file_id)
        except NotFound:
            return {}
        if file.status != FileStatus.ready:
            return {}
        try:
            return thumbnails.generate(session, file)
        except ThumbnailError as exc:
            logger.warning("thumbnail_failed file_id=%s error=%s", file_id, exc)
            return {}
        except ObjectStorageError as exc:
            if self.request.retries >= self.max_retries:
                logger.error("thumbnail_failed file_id=%s error=%s", file_id, exc)
                return {}
            raise self.retry(exc=exc)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
