from app.tasks.cleanup import run_cleanup
from app.tasks.notifications import send_download_notification, send_file_notification
from app.tasks.thumbnails import generate_thumbnail

__all__ = [
    "run_cleanup",
    "send_file_notification",
    "send_download_notification",
    "generate_thumbnail",
]
