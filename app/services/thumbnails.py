"""Preview images for uploaded pictures and videos."""

from __future__ import annotations

import io
import logging
import subprocess
import tempfile
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.file import File
from app.services.file_records import file_records
from app.services.storage import ObjectStorageError, get_storage, thumbnail_key

logger = logging.getLogger(__name__)

THUMBNAIL_SIZES = {"small": 150, "medium": 300, "large": 600}
JPEG_QUALITY = 85


class ThumbnailError(Exception):
    pass


def render_thumbnails(source: Image.Image) -> dict[str, bytes]:
    """Encode one JPEG per size, preserving aspect ratio."""
    image = ImageOps.exif_transpose(source)
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    rendered = {}
    for name, edge in THUMBNAIL_SIZES.items():
        copy = image.copy()
        copy.thumbnail((edge, edge))
        buffer = io.BytesIO()
        copy.save(buffer, format="JPEG", quality=JPEG_QUALITY)
        rendered[name] = buffer.getvalue()
    return rendered


def extract_video_frame(path: Path, at_seconds: float = 1.0) -> Image.Image:
    with tempfile.TemporaryDirectory() as workdir:
        frame_path = Path(workdir) / "frame.jpg"
        try:
            subprocess.run(
                [
                    settings.ffmpeg_binary,
                    "-y",
                    "-ss",
                    str(at_seconds),
                    "-i",
                    str(path),
                    "-frames:v",
                    "1",
                    str(frame_path),
                ],
                capture_output=True,
                check=True,
                timeout=60,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ThumbnailError(f"ffmpeg failed: {exc}") from exc
        if not frame_path.exists():
            raise ThumbnailError("ffmpeg produced no frame")
        with Image.open(frame_path) as frame:
            frame.load()
            return frame.copy()


class ThumbnailService:
    def __init__(self) -> None:
        self.storage = None

    def _storage_client(self):
        if self.storage is None:
            self.storage = get_storage()
        return self.storage

    def _source_image(self, file: File) -> Image.Image:
        path = self._storage_client().resolve(file.file_path)
        if not path.is_file():
            raise ThumbnailError("source blob missing")
        if file.is_video:
            return extract_video_frame(path)
        try:
            with Image.open(path) as image:
                image.load()
                return image.copy()
        except (UnidentifiedImageError, OSError) as exc:
            raise ThumbnailError(f"unreadable image: {exc}") from exc

    def generate(self, db: Session, file: File) -> dict[str, str]:
        """Write small/medium/large thumbnails and record their keys on the file."""
        if not (file.is_image or file.is_video):
            return {}
        rendered = render_thumbnails(self._source_image(file))
        storage = self._storage_client()
        keys = {}
        try:
            for name, data in rendered.items():
                key = thumbnail_key(file.id, name)
                storage.upload(key, data, "image/jpeg")
                keys[name] = key
        except ObjectStorageError:
            for key in keys.values():
                storage.delete(key)
            raise
        file_records.set_thumbnails(db, file, keys)
        logger.info("thumbnails_generated file_id=%s sizes=%s", file.id, ",".join(keys))
        return keys


thumbnails = ThumbnailService()
