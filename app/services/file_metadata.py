"""Content hashing, type rules and lightweight metadata for uploaded blobs."""

from __future__ import annotations

import hashlib
import json
import logging
import mimetypes
import subprocess
from collections.abc import Iterable, Iterator
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from app.config import settings

logger = logging.getLogger(__name__)

# Declared MIME types accepted for an extension. Extensions without an entry
# are checked against the allow-list only.
EXTENSION_MIME_TYPES: dict[str, frozenset[str]] = {
    "pdf": frozenset({"application/pdf"}),
    "doc": frozenset({"application/msword"}),
    "docx": frozenset(
        {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
    ),
    "xls": frozenset({"application/vnd.ms-excel"}),
    "xlsx": frozenset(
        {"application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"}
    ),
    "ppt": frozenset({"application/vnd.ms-powerpoint"}),
    "pptx": frozenset(
        {"application/vnd.openxmlformats-officedocument.presentationml.presentation"}
    ),
    "txt": frozenset({"text/plain"}),
    "zip": frozenset({"application/zip", "application/x-zip-compressed"}),
    "rar": frozenset({"application/vnd.rar", "application/x-rar-compressed"}),
    "jpg": frozenset({"image/jpeg"}),
    "jpeg": frozenset({"image/jpeg"}),
    "png": frozenset({"image/png"}),
    "gif": frozenset({"image/gif"}),
    "mp4": frozenset({"video/mp4"}),
    "avi": frozenset({"video/x-msvideo"}),
    "mov": frozenset({"video/quicktime"}),
}

DANGEROUS_EXTENSIONS = frozenset(
    {"exe", "scr", "bat", "cmd", "com", "pif", "vbs", "js", "jar", "msi", "ps1"}
)

EXECUTABLE_SIGNATURES = (b"MZ", b"\x7fELF", b"\xca\xfe\xba\xbe")


def file_extension(filename: str) -> str:
    """Lower-cased extension without the leading dot."""
    return Path(filename).suffix.lower().lstrip(".")


def expected_mime_types(extension: str) -> frozenset[str] | None:
    return EXTENSION_MIME_TYPES.get(extension.lower())


def resolve_mime_type(filename: str, declared: str | None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    guessed = mimetypes.guess_type(filename)[0]
    return guessed or declared or "application/octet-stream"


def looks_executable(head: bytes) -> bool:
    return any(head.startswith(signature) for signature in EXECUTABLE_SIGNATURES)


class ChecksumAccumulator:
    """SHA-256 over a stream, counting bytes as they pass through."""

    def __init__(self) -> None:
        self._hash = hashlib.sha256()
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)
        self.size += len(chunk)

    def wrap(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            self.update(chunk)
            yield chunk

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def compute_checksum(data: bytes) -> str:
    """Compute SHA-256 checksum of in-memory bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_checksum_from_file(file_path: str | Path) -> str:
    """Compute SHA-256 checksum of a file on disk (chunked)."""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def verify_checksum(file_path: str | Path, expected: str) -> bool:
    return compute_checksum_from_file(file_path) == expected


def image_metadata(path: Path) -> dict:
    try:
        with Image.open(path) as image:
            return {
                "width": image.width,
                "height": image.height,
                "format": image.format,
                "mode": image.mode,
            }
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("image_metadata_failed path=%s error=%s", path.name, exc)
        return {}


def video_metadata(path: Path) -> dict:
    probe = str(Path(settings.ffmpeg_binary).with_name("ffprobe"))
    try:
        result = subprocess.run(
            [
                probe,
                "-v",
                "quiet",
                "-print_format",
                "json",
                "-show_format",
                "-show_streams",
                str(path),
            ],
            capture_output=True,
            check=True,
            timeout=30,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("video_metadata_failed path=%s error=%s", path.name, exc)
        return {}
    try:
        probed = json.loads(result.stdout or b"{}")
    except json.JSONDecodeError:
        return {}
    video = next(
        (s for s in probed.get("streams", []) if s.get("codec_type") == "video"), {}
    )
    fmt = probed.get("format", {})
    return {
        "duration": float(fmt["duration"]) if fmt.get("duration") else None,
        "width": video.get("width"),
        "height": video.get("height"),
        "codec": video.get("codec_name"),
    }


def extract_metadata(path: Path, mime_type: str) -> dict:
    if mime_type.startswith("image/"):
        return image_metadata(path)
    if mime_type.startswith("video/"):
        return video_metadata(path)
    return {}
