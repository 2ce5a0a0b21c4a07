"""Tests for resumable uploads sent as numbered chunks."""

import hashlib

import pytest

from app.errors import (
    InvalidStateTransition,
    NotFound,
    QuotaExceeded,
    UnsupportedFileType,
    ValidationError,
)
from app.models.audit import AuditLog
from app.models.file import File, FileStatus
from app.services.file_records import file_records
from app.services.storage import chunk_key, chunk_prefix
from app.services.uploads import UploadOptions, file_uploads
from tests.helpers import incoming

PARTS = [b"%PDF-1.4 first part ", b"second part ", b"third part"]


def _options(**overrides):
    values = {"recipients": ["a@example.com", "b@example.com"], "retention_days": 5}
    values.update(overrides)
    return UploadOptions(**values)


def _send(db_session, user, number, file_id=None, parts=PARTS, **kwargs):
    return file_uploads.receive_chunk(
        db_session,
        user,
        incoming(parts[number - 1]),
        number,
        len(parts),
        options=kwargs.pop("options", _options()),
        file_id=file_id,
        **kwargs,
    )


def _chunk_dir(storage, file):
    return storage.resolve(chunk_prefix(file.id))


def test_chunks_assemble_into_ready_file(
    db_session, storage, dispatched, settings_defaults, user
):
    first = _send(db_session, user, 1)
    file = first.file
    assert first.completed is False
    assert file.status == FileStatus.uploading
    assert file.upload_progress == 33
    assert storage.exists(chunk_key(file.id, 1))
    assert dispatched.notifications == []

    second = _send(db_session, user, 2, file_id=str(file.id))
    assert second.file.upload_progress == 66

    last = _send(db_session, user, 3, file_id=str(file.id))

    whole = b"".join(PARTS)
    assert last.completed is True
    db_session.refresh(file)
    assert file.status == FileStatus.ready
    assert file.upload_progress == 100
    assert file.file_size == len(whole)
    assert file.checksum == hashlib.sha256(whole).hexdigest()
    assert storage.download(file.file_path) == whole
    assert not _chunk_dir(storage, file).exists()

    db_session.refresh(user)
    assert user.upload_used_daily == len(whole)
    assert sorted(r.email for r in last.upload.recipients) == ["a@example.com", "b@example.com"]
    assert len(dispatched.notifications) == 2
    assert db_session.query(AuditLog).filter(AuditLog.action == "FILE_UPLOAD").count() == 1


def test_single_chunk_upload_completes_immediately(
    db_session, storage, dispatched, settings_defaults, user
):
    result = _send(db_session, user, 1, parts=[b"%PDF-1.4 whole"])
    assert result.completed is True
    assert result.file.status == FileStatus.ready


def test_first_chunk_validates_recipients(db_session, storage, dispatched, settings_defaults, user):
    with pytest.raises(ValidationError):
        _send(db_session, user, 1, options=_options(recipients=[]))
    assert db_session.query(File).count() == 0


def test_later_chunk_requires_file_id(db_session, storage, dispatched, settings_defaults, user):
    with pytest.raises(ValidationError):
        _send(db_session, user, 2)


@pytest.mark.parametrize("number, total", [(0, 3), (4, 3), (1, 0)])
def test_chunk_position_is_checked(
    db_session, storage, dispatched, settings_defaults, user, number, total
):
    with pytest.raises(ValidationError):
        file_uploads.receive_chunk(
            db_session, user, incoming(b"%PDF"), number, total, options=_options()
        )


def test_declared_total_size_checked_against_quota(
    db_session, storage, dispatched, settings_defaults, make_user
):
    small = make_user(upload_quota_daily=10)
    with pytest.raises(QuotaExceeded):
        _send(db_session, small, 1, total_size=500)
    assert db_session.query(File).count() == 0


def test_executable_first_chunk_abandons_upload(
    db_session, storage, dispatched, settings_defaults, user
):
    parts = [b"MZ\x90\x00 payload", b"rest"]
    with pytest.raises(UnsupportedFileType):
        _send(db_session, user, 1, parts=parts)

    file = db_session.query(File).one()
    assert file.status == FileStatus.deleted
    assert not _chunk_dir(storage, file).exists()


def test_chunk_for_another_users_file_is_not_found(
    db_session, storage, dispatched, settings_defaults, user, other_user
):
    file = _send(db_session, user, 1).file
    with pytest.raises(NotFound):
        _send(db_session, other_user, 2, file_id=str(file.id))


def test_chunk_after_completion_is_rejected(
    db_session, storage, dispatched, settings_defaults, user
):
    parts = [b"%PDF-1.4 a", b"b"]
    file = _send(db_session, user, 1, parts=parts).file
    _send(db_session, user, 2, file_id=str(file.id), parts=parts)

    with pytest.raises(InvalidStateTransition):
        _send(db_session, user, 2, file_id=str(file.id), parts=parts)


def test_missing_chunk_keeps_upload_open(
    db_session, storage, dispatched, settings_defaults, user
):
    file = _send(db_session, user, 1).file

    with pytest.raises(ValidationError):
        _send(db_session, user, 3, file_id=str(file.id))

    db_session.refresh(file)
    assert file.status == FileStatus.uploading
    _send(db_session, user, 2, file_id=str(file.id))
    assert _send(db_session, user, 3, file_id=str(file.id)).completed is True


def test_quota_checked_on_assembled_size(
    db_session, storage, dispatched, settings_defaults, make_user
):
    small = make_user(upload_quota_daily=25)
    file = _send(db_session, small, 1).file
    _send(db_session, small, 2, file_id=str(file.id))

    with pytest.raises(QuotaExceeded):
        _send(db_session, small, 3, file_id=str(file.id))

    db_session.refresh(file)
    db_session.refresh(small)
    assert file.status == FileStatus.deleted
    assert not storage.exists(file.file_path)
    assert not _chunk_dir(storage, file).exists()
    assert small.upload_used_daily == 0
    assert dispatched.notifications == []


def test_deleting_unfinished_upload_removes_chunks(
    db_session, storage, dispatched, settings_defaults, user
):
    file = _send(db_session, user, 1).file
    assert _chunk_dir(storage, file).exists()

    file_records.mark_deleted(db_session, file)

    assert not _chunk_dir(storage, file).exists()
