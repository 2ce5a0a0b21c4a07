"""Filesystem blob storage for uploaded files and thumbnails."""

from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from app.config import settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
THUMBNAIL_PREFIX = "thumbnails"
CHUNK_PREFIX = "temp/chunks"
SYSTEM_DIRECTORIES = frozenset({"temp", "tmp", "logs", ".git", "node_modules"})
SAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class ObjectStorageError(Exception):
    """Generic storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when a blob is missing."""


@dataclass
class StreamResult:
    """Streaming metadata for download responses."""

    chunks: Iterator[bytes]
    content_type: str | None
    content_length: int | None


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass
class DiskUsage:
    total: int
    used: int
    free: int


class StorageService(Protocol):
    """Storage provider interface."""

    def write(self, key: str, chunks: Iterable[bytes]) -> int: ...
    def upload(self, key: str, data: bytes, content_type: str | None) -> None: ...
    def download(self, key: str) -> bytes: ...
    def stream(
        self, key: str, byte_range: ByteRange | None = None, content_type: str | None = None
    ) -> StreamResult: ...
    def exists(self, key: str) -> bool: ...
    def size(self, key: str) -> int: ...
    def delete(self, key: str) -> bool: ...
    def delete_tree(self, prefix: str) -> bool: ...
    def walk(self) -> Iterator[str]: ...
    def resolve(self, key: str) -> Path: ...


def sanitize_filename(filename: str) -> str:
    name = Path(filename).stem
    cleaned = SAFE_FILENAME_RE.sub("_", name).strip("._")
    return cleaned[:100] or "file"


def generate_storage_key(original_filename: str, now: datetime | None = None) -> str:
    """Date-partitioned key: ``YYYY/MM/DD/{millis}_{random}_{name}{ext}``."""
    now = now or datetime.now(UTC)
    ext = Path(original_filename).suffix.lower()
    millis = int(now.timestamp() * 1000)
    generated = f"{millis}_{secrets.token_hex(8)}_{sanitize_filename(original_filename)}{ext}"
    return f"{now:%Y}/{now:%m}/{now:%d}/{generated}"


def thumbnail_key(file_id: object, size_name: str) -> str:
    return f"{THUMBNAIL_PREFIX}/{file_id}_{size_name}.jpg"


def chunk_prefix(file_id: object) -> str:
    return f"{CHUNK_PREFIX}/{file_id}"


def chunk_key(file_id: object, number: int) -> str:
    return f"{chunk_prefix(file_id)}/chunk_{number:05d}"


def parse_range_header(header: str | None, total_size: int) -> ByteRange | None:
    """Parse a single ``bytes=start-end`` range.

    Returns ``None`` when no range was requested. Raises ``ValueError`` for a
    range that cannot be satisfied against ``total_size``.
    """
    if not header:
        return None
    unit, _, ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not ranges or "," in ranges:
        raise ValueError("Unsupported range")
    start_raw, _, end_raw = ranges.strip().partition("-")
    start_raw = start_raw.strip()
    end_raw = end_raw.strip()
    if not start_raw:
        # Suffix range: last N bytes.
        if not end_raw:
            raise ValueError("Invalid range")
        suffix = int(end_raw)
        if suffix <= 0 or total_size == 0:
            raise ValueError("Range not satisfiable")
        return ByteRange(max(total_size - suffix, 0), total_size - 1)
    start = int(start_raw)
    end = int(end_raw) if end_raw else total_size - 1
    end = min(end, total_size - 1)
    if start < 0 or start > end or start >= total_size:
        raise ValueError("Range not satisfiable")
    return ByteRange(start, end)


class LocalStorageService:
    """Blob storage rooted at a single directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def resolve(self, key: str) -> Path:
        base = self.root.resolve()
        full_path = (base / key).resolve()
        if base != full_path and base not in full_path.parents:
            raise ObjectStorageError("Invalid file path: outside upload directory")
        return full_path

    def write(self, key: str, chunks: Iterable[bytes]) -> int:
        path = self.resolve(key)
        written = 0
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("wb") as handle:
                for chunk in chunks:
                    handle.write(chunk)
                    written += len(chunk)
        except OSError as exc:
            raise ObjectStorageError(f"Failed to write {key}") from exc
        return written

    def upload(self, key: str, data: bytes, content_type: str | None = None) -> None:
        self.write(key, [data])

    def download(self, key: str) -> bytes:
        path = self.resolve(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(key) from exc
        except OSError as exc:
            raise ObjectStorageError(f"Failed to read {key}") from exc

    def stream(
        self,
        key: str,
        byte_range: ByteRange | None = None,
        content_type: str | None = None,
    ) -> StreamResult:
        path = self.resolve(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)
        start = byte_range.start if byte_range else 0
        length = byte_range.length if byte_range else path.stat().st_size

        def _chunks() -> Iterator[bytes]:
            remaining = length
            with path.open("rb") as handle:
                handle.seek(start)
                while remaining > 0:
                    chunk = handle.read(min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    yield chunk

        return StreamResult(chunks=_chunks(), content_type=content_type, content_length=length)

    def exists(self, key: str) -> bool:
        return self.resolve(key).is_file()

    def size(self, key: str) -> int:
        path = self.resolve(key)
        try:
            return path.stat().st_size
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(key) from exc

    def delete(self, key: str) -> bool:
        """Remove a blob; returns ``False`` when it was already gone."""
        path = self.resolve(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ObjectStorageError(f"Failed to delete {key}") from exc
        return True

    def delete_tree(self, prefix: str) -> bool:
        """Remove a directory of blobs; returns ``False`` when it did not exist."""
        path = self.resolve(prefix)
        if not path.is_dir():
            return False
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise ObjectStorageError(f"Failed to delete {prefix}") from exc
        return True

    def walk(self) -> Iterator[str]:
        """Yield every stored key, skipping system directories."""
        if not self.root.exists():
            return
        base = self.root.resolve()
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = [name for name in dirnames if name not in SYSTEM_DIRECTORIES]
            for filename in filenames:
                full_path = Path(dirpath) / filename
                yield full_path.relative_to(base).as_posix()

    def disk_usage(self) -> DiskUsage:
        self.root.mkdir(parents=True, exist_ok=True)
        usage = shutil.disk_usage(self.root)
        return DiskUsage(total=usage.total, used=usage.used, free=usage.free)


@lru_cache(maxsize=1)
def get_storage() -> LocalStorageService:
    return LocalStorageService(settings.upload_dir)
