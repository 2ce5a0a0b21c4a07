"""Upload orchestration: validate, store, persist, then hand off background work."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import BinaryIO

from fastapi import Request
from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import (
    AppError,
    InvalidStateTransition,
    MimeTypeMismatch,
    NotFound,
    ServiceUnavailable,
    UnsupportedFileType,
    ValidationError,
)
from app.metrics import record_upload
from app.models.file import File, FileStatus
from app.models.file_recipient import FileRecipient
from app.models.user import User
from app.services import dispatch
from app.services.audit import audit_events
from app.services.file_metadata import (
    DANGEROUS_EXTENSIONS,
    ChecksumAccumulator,
    expected_mime_types,
    extract_metadata,
    file_extension,
    looks_executable,
    resolve_mime_type,
)
from app.services.file_records import file_records, normalize_email
from app.services.quota import quotas
from app.services.storage import (
    CHUNK_SIZE,
    ObjectStorageError,
    chunk_key,
    chunk_prefix,
    generate_storage_key,
    get_storage,
)
from app.services.system_settings import DEFAULTS_BY_KEY, system_settings

logger = logging.getLogger(__name__)

_EMAIL = TypeAdapter(EmailStr)

MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365
MIN_DOWNLOADS = 1
MAX_DOWNLOADS = 100
MAX_CHUNK_SIZE = 10 * 1024 * 1024
MAX_TOTAL_CHUNKS = 10_000


@dataclass
class IncomingFile:
    filename: str
    content_type: str | None
    stream: BinaryIO
    size: int | None = None


@dataclass
class UploadOptions:
    recipients: list[str]
    description: str | None = None
    retention_days: int | None = None
    max_downloads: int | None = None
    custom_message: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class UploadResult:
    file: File
    recipients: list[FileRecipient]
    notification_failures: dict[str, str] = field(default_factory=dict)


@dataclass
class ChunkResult:
    file: File
    chunk_number: int
    total_chunks: int
    upload: UploadResult | None = None

    @property
    def completed(self) -> bool:
        return self.upload is not None


@dataclass
class _StagedBlob:
    incoming: IncomingFile
    extension: str
    mime_type: str
    key: str | None = None
    size: int = 0
    checksum: str | None = None
    metadata: dict = field(default_factory=dict)


class UploadOrchestrator:
    def __init__(self) -> None:
        self.storage = None

    def _storage_client(self):
        if self.storage is None:
            self.storage = get_storage()
        return self.storage

    def _max_file_size(self, db: Session) -> int:
        return int(system_settings.get_number(db, "MAX_FILE_SIZE", settings.max_file_size))

    def validate_options(self, db: Session, options: UploadOptions) -> tuple[list[str], int, int]:
        errors: list[dict] = []
        recipients: list[str] = []
        for raw in options.recipients or []:
            address = normalize_email(raw)
            if not address:
                continue
            try:
                _EMAIL.validate_python(address)
            except PydanticValidationError:
                errors.append({"field": "recipients", "message": f"Invalid email: {raw}"})
                continue
            if address not in recipients:
                recipients.append(address)
        if not recipients and not errors:
            errors.append({"field": "recipients", "message": "At least one recipient is required"})

        retention = options.retention_days
        if retention is None:
            retention = int(
                system_settings.get_number(
                    db, "DEFAULT_FILE_RETENTION_DAYS", settings.default_file_retention_days
                )
            )
        elif not MIN_RETENTION_DAYS <= retention <= MAX_RETENTION_DAYS:
            errors.append(
                {
                    "field": "retention_days",
                    "message": f"Must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS}",
                }
            )

        max_downloads = options.max_downloads
        if max_downloads is None:
            max_downloads = int(
                system_settings.get_number(
                    db, "MAX_DOWNLOADS_PER_FILE", DEFAULTS_BY_KEY["MAX_DOWNLOADS_PER_FILE"].value
                )
            )
        elif not MIN_DOWNLOADS <= max_downloads <= MAX_DOWNLOADS:
            errors.append(
                {
                    "field": "max_downloads",
                    "message": f"Must be between {MIN_DOWNLOADS} and {MAX_DOWNLOADS}",
                }
            )

        if errors:
            raise ValidationError("Invalid upload request", errors)
        return recipients, retention, max_downloads

    def check_type(self, db: Session, incoming: IncomingFile) -> tuple[str, str]:
        """Extension and declared MIME checks; runs before anything is written."""
        allowed = [
            str(ext).lower().lstrip(".")
            for ext in system_settings.get_list(
                db, "ALLOWED_EXTENSIONS", DEFAULTS_BY_KEY["ALLOWED_EXTENSIONS"].value
            )
        ]
        if not allowed:
            raise UnsupportedFileType("File uploads are currently disabled")

        extension = file_extension(incoming.filename or "")
        if not extension or extension in DANGEROUS_EXTENSIONS or extension not in allowed:
            raise UnsupportedFileType(
                f"File type .{extension} is not allowed",
                details={"extension": extension, "allowed": allowed},
            )

        declared = (incoming.content_type or "").split(";")[0].strip().lower()
        expected = expected_mime_types(extension)
        if expected is not None and declared not in expected:
            raise MimeTypeMismatch(
                f"MIME type {declared or 'unknown'} does not match file extension .{extension}",
                details={"declared": declared, "expected": sorted(expected)},
            )
        return extension, resolve_mime_type(incoming.filename, declared or None)

    def _guarded(
        self,
        chunks: Iterable[bytes],
        max_size: int,
        field: str = "file",
        check_signature: bool = True,
    ) -> Iterator[bytes]:
        first = check_signature
        total = 0
        for chunk in chunks:
            if first:
                first = False
                if looks_executable(chunk[:8]):
                    raise UnsupportedFileType("File contains an executable signature")
            total += len(chunk)
            if total > max_size:
                raise ValidationError(
                    f"{field.capitalize()} exceeds maximum allowed size",
                    [{"field": field, "message": f"Maximum size is {max_size} bytes"}],
                )
            yield chunk

    def _write(self, blob: _StagedBlob, max_size: int) -> None:
        storage = self._storage_client()
        blob.key = generate_storage_key(blob.incoming.filename)
        accumulator = ChecksumAccumulator()
        stream = blob.incoming.stream
        chunks = iter(lambda: stream.read(CHUNK_SIZE), b"")
        storage.write(blob.key, accumulator.wrap(self._guarded(chunks, max_size)))
        blob.size = accumulator.size
        blob.checksum = accumulator.hexdigest()
        if blob.size == 0:
            raise ValidationError("File is empty", [{"field": "file", "message": "empty file"}])
        try:
            blob.metadata = extract_metadata(storage.resolve(blob.key), blob.mime_type)
        except Exception:
            logger.exception("metadata_extraction_failed key=%s", blob.key)
            blob.metadata = {}

    def _discard(self, blobs: list[_StagedBlob]) -> None:
        storage = self._storage_client()
        for blob in blobs:
            if not blob.key:
                continue
            try:
                storage.delete(blob.key)
            except ObjectStorageError as exc:
                logger.error("upload_blob_discard_failed key=%s error=%s", blob.key, exc)

    def upload(
        self,
        db: Session,
        user: User,
        files: list[IncomingFile],
        options: UploadOptions,
        request: Request | None = None,
    ) -> list[UploadResult]:
        """Store a batch of files shared with the same recipients.

        The whole batch is accepted or rejected: quota is checked against the
        sum of all sizes, and any failure removes every blob written so far.
        """
        if not files:
            raise ValidationError("No file provided", [{"field": "file", "message": "required"}])
        if len(files) > settings.max_files_per_upload:
            raise ValidationError(
                "Too many files",
                [{"field": "files", "message": f"At most {settings.max_files_per_upload} files"}],
            )
        if system_settings.get_bool(db, "MAINTENANCE_MODE", False):
            raise ServiceUnavailable("Uploads are disabled during maintenance")

        recipients, retention_days, max_downloads = self.validate_options(db, options)
        staged = []
        for incoming in files:
            extension, mime_type = self.check_type(db, incoming)
            staged.append(_StagedBlob(incoming=incoming, extension=extension, mime_type=mime_type))

        max_size = self._max_file_size(db)
        declared_total = sum(item.size or 0 for item in files)
        try:
            if declared_total:
                quotas.check(db, user, declared_total)
            for blob in staged:
                self._write(blob, max_size)
            quotas.check(db, user, sum(blob.size for blob in staged))
            results = self._persist(db, user, staged, recipients, retention_days, max_downloads, options)
        except AppError as exc:
            self._discard(staged)
            record_upload("rejected")
            logger.info("file_upload_rejected user_id=%s code=%s", user.id, exc.code)
            raise
        except Exception:
            self._discard(staged)
            record_upload("failed")
            raise

        for result in results:
            self.announce(db, user, result, request)
        return results

    def _persist(
        self,
        db: Session,
        user: User,
        staged: list[_StagedBlob],
        recipients: list[str],
        retention_days: int,
        max_downloads: int,
        options: UploadOptions,
    ) -> list[UploadResult]:
        expiry = datetime.now(UTC) + timedelta(days=retention_days)
        results = []
        try:
            for blob in staged:
                file = file_records.create_file(
                    db,
                    owner_id=user.id,
                    filename=Path(blob.key).name,
                    original_filename=Path(blob.incoming.filename).name[:255],
                    file_path=blob.key,
                    file_size=blob.size,
                    mime_type=blob.mime_type,
                    file_extension=blob.extension,
                    checksum=blob.checksum,
                    expiry_date=expiry,
                    max_downloads=max_downloads,
                    description=options.description,
                    tags=options.tags,
                    metadata=blob.metadata,
                    status=FileStatus.ready,
                )
                rows = [
                    file_records.create_recipient(
                        db, file, address, custom_message=options.custom_message
                    )
                    for address in recipients
                ]
                results.append(UploadResult(file=file, recipients=rows))
            quotas.consume(db, user.id, sum(blob.size for blob in staged), commit=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        for result in results:
            db.refresh(result.file)
        db.refresh(user)
        return results

    def announce(self, db: Session, user: User, result: UploadResult, request) -> None:
        file = result.file
        record_upload("accepted", file.file_size)
        logger.info(
            "file_upload_success file_id=%s user_id=%s size=%s recipients=%s",
            file.id,
            user.id,
            file.file_size,
            len(result.recipients),
        )
        audit_events.log_file_action(
            db,
            "FILE_UPLOAD",
            file.id,
            user_id=user.id,
            details={
                "filename": file.original_filename,
                "size": file.file_size,
                "recipients": len(result.recipients),
            },
            request=request,
        )
        if file.is_image or file.is_video:
            dispatch.queue_thumbnail(file.id)
        self.notify_recipients(db, result)

    # Chunked uploads

    def receive_chunk(
        self,
        db: Session,
        user: User,
        chunk: IncomingFile,
        chunk_number: int,
        total_chunks: int,
        options: UploadOptions | None = None,
        file_id=None,
        total_size: int | None = None,
        request: Request | None = None,
    ) -> ChunkResult:
        """Accept one numbered part of a resumable upload.

        The first part creates the File in ``uploading`` status together with
        its recipients. Parts are kept under ``temp/chunks/{file_id}`` and the
        last part assembles them into the final blob, consumes quota and
        promotes the file to ``ready``.
        """
        if not 1 <= total_chunks <= MAX_TOTAL_CHUNKS or not 1 <= chunk_number <= total_chunks:
            raise ValidationError(
                "Invalid chunk position",
                [
                    {
                        "field": "chunk_number",
                        "message": f"Must be between 1 and total_chunks (at most {MAX_TOTAL_CHUNKS})",
                    }
                ],
            )
        if system_settings.get_bool(db, "MAINTENANCE_MODE", False):
            raise ServiceUnavailable("Uploads are disabled during maintenance")

        if file_id is None:
            if chunk_number != 1:
                raise ValidationError(
                    "file_id is required after the first chunk",
                    [{"field": "file_id", "message": "required"}],
                )
            file = self._start_chunked(
                db, user, chunk, options or UploadOptions(recipients=[]), total_size
            )
        else:
            file = self._resumable_file(db, user, file_id)

        try:
            self._store_chunk(file, chunk, chunk_number)
        except Exception:
            self._abandon(db, file)
            raise

        if chunk_number < total_chunks:
            file_records.update_progress(db, file, min(99, chunk_number * 100 // total_chunks))
            logger.debug(
                "chunk_received file_id=%s chunk=%s total=%s", file.id, chunk_number, total_chunks
            )
            return ChunkResult(file=file, chunk_number=chunk_number, total_chunks=total_chunks)

        result = self._assemble(db, user, file, total_chunks, request)
        return ChunkResult(
            file=result.file,
            chunk_number=chunk_number,
            total_chunks=total_chunks,
            upload=result,
        )

    def _start_chunked(
        self,
        db: Session,
        user: User,
        chunk: IncomingFile,
        options: UploadOptions,
        total_size: int | None,
    ) -> File:
        recipients, retention_days, max_downloads = self.validate_options(db, options)
        extension, mime_type = self.check_type(db, chunk)
        if total_size:
            max_size = self._max_file_size(db)
            if total_size > max_size:
                raise ValidationError(
                    "File exceeds maximum allowed size",
                    [{"field": "total_size", "message": f"Maximum size is {max_size} bytes"}],
                )
            quotas.check(db, user, total_size)

        key = generate_storage_key(chunk.filename)
        try:
            file = file_records.create_file(
                db,
                owner_id=user.id,
                filename=Path(key).name,
                original_filename=Path(chunk.filename).name[:255],
                file_path=key,
                file_size=total_size or 0,
                mime_type=mime_type,
                file_extension=extension,
                checksum=None,
                expiry_date=datetime.now(UTC) + timedelta(days=retention_days),
                max_downloads=max_downloads,
                description=options.description,
                tags=options.tags,
                status=FileStatus.uploading,
            )
            for address in recipients:
                file_records.create_recipient(
                    db, file, address, custom_message=options.custom_message
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(file)
        logger.info("chunked_upload_started file_id=%s user_id=%s", file.id, user.id)
        return file

    def _resumable_file(self, db: Session, user: User, file_id) -> File:
        file = file_records.get_file(db, file_id)
        if file.uploaded_by != user.id:
            raise NotFound("File not found")
        if file.status != FileStatus.uploading:
            raise InvalidStateTransition(
                f"File is {file.status.value}, not uploading",
                details={"file_id": str(file.id), "status": file.status.value},
            )
        return file

    def _store_chunk(self, file: File, chunk: IncomingFile, chunk_number: int) -> None:
        stream = chunk.stream
        parts = iter(lambda: stream.read(CHUNK_SIZE), b"")
        written = self._storage_client().write(
            chunk_key(file.id, chunk_number),
            self._guarded(
                parts, MAX_CHUNK_SIZE, field="chunk", check_signature=chunk_number == 1
            ),
        )
        if written == 0:
            raise ValidationError("Chunk is empty", [{"field": "chunk", "message": "empty chunk"}])

    def _assemble(
        self, db: Session, user: User, file: File, total_chunks: int, request
    ) -> UploadResult:
        storage = self._storage_client()
        missing = [
            number
            for number in range(1, total_chunks + 1)
            if not storage.exists(chunk_key(file.id, number))
        ]
        if missing:
            raise ValidationError(
                "Upload is missing chunks",
                [{"field": "chunk_number", "message": f"missing {missing[:20]}"}],
            )

        def _parts() -> Iterator[bytes]:
            for number in range(1, total_chunks + 1):
                yield from storage.stream(chunk_key(file.id, number)).chunks

        accumulator = ChecksumAccumulator()
        try:
            storage.write(
                file.file_path,
                accumulator.wrap(
                    self._guarded(_parts(), self._max_file_size(db), check_signature=False)
                ),
            )
            db.refresh(file)
            if file.status != FileStatus.uploading:
                raise InvalidStateTransition(
                    f"File is {file.status.value}, not uploading",
                    details={"file_id": str(file.id), "status": file.status.value},
                )
            quotas.check(db, user, accumulator.size)
            try:
                metadata = extract_metadata(storage.resolve(file.file_path), file.mime_type)
            except Exception:
                logger.exception("metadata_extraction_failed key=%s", file.file_path)
                metadata = {}
            file.file_size = accumulator.size
            file.checksum = accumulator.hexdigest()
            file.metadata_ = metadata
            quotas.consume(db, user.id, accumulator.size, commit=False)
            db.commit()
        except Exception:
            db.rollback()
            self._abandon(db, file)
            raise

        file_records.update_progress(db, file, 100)
        try:
            storage.delete_tree(chunk_prefix(file.id))
        except ObjectStorageError as exc:
            logger.warning("chunk_delete_failed file_id=%s error=%s", file.id, exc)
        logger.info(
            "chunked_upload_completed file_id=%s size=%s chunks=%s",
            file.id,
            file.file_size,
            total_chunks,
        )
        result = UploadResult(file=file, recipients=list(file.recipients))
        self.announce(db, user, result, request)
        return result

    def _abandon(self, db: Session, file: File) -> None:
        record_upload("rejected")
        file_records.mark_deleted(db, file)
        logger.info("chunked_upload_abandoned file_id=%s", file.id)

    def notify_recipients(self, db: Session, result: UploadResult) -> None:
        failures = dispatch.queue_file_notifications([r.id for r in result.recipients])
        by_id = {str(r.id): r for r in result.recipients}
        for recipient_id, reason in failures.items():
            recipient = by_id.get(recipient_id)
            if recipient is not None:
                file_records.mark_email_failed(db, recipient, reason)
        result.notification_failures = failures

    def resend_notifications(
        self, db: Session, file: File, emails: list[str] | None = None
    ) -> list[FileRecipient]:
        """Re-send to recipients that have not redeemed, optionally a subset."""
        wanted = {normalize_email(e) for e in emails or [] if normalize_email(e)}
        eligible = [
            r
            for r in file.recipients
            if r.downloaded_at is None and r.is_active and (not wanted or r.email in wanted)
        ]
        if not eligible:
            raise ValidationError(
                "No recipients eligible for resend",
                [{"field": "recipients", "message": "all recipients have downloaded"}],
            )
        result = UploadResult(file=file, recipients=eligible)
        self.notify_recipients(db, result)
        return eligible


file_uploads = UploadOrchestrator()
