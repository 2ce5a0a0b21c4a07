"""Tests for file and recipient state transitions."""

from datetime import UTC, datetime, timedelta

import pytest

from app.errors import InvalidStateTransition, NotFound
from app.models.file import FileStatus
from app.models.file_recipient import EmailStatus
from app.services.file_records import file_records
from tests.helpers import first_recipient


def test_update_progress_promotes_to_ready_at_100(db_session, user, make_file):
    file = make_file(user, status=FileStatus.uploading)
    file_records.update_progress(db_session, file, 40)
    assert file.status == FileStatus.uploading
    assert file.upload_progress == 40

    file_records.update_progress(db_session, file, 150)
    assert file.status == FileStatus.ready
    assert file.upload_progress == 100


def test_update_progress_clamps_negative_to_zero(db_session, user, make_file):
    file = make_file(user, status=FileStatus.uploading)
    file_records.update_progress(db_session, file, 30)

    file_records.update_progress(db_session, file, -5)

    assert file.upload_progress == 0
    assert file.status == FileStatus.uploading


def test_progress_ignored_on_terminal_file(db_session, user, make_file):
    file = make_file(user)
    file_records.mark_deleted(db_session, file)
    file_records.update_progress(db_session, file, 10)
    assert file.status == FileStatus.deleted
    assert file.upload_progress == 100


def test_mark_expired_only_from_ready(db_session, user, make_file):
    file = make_file(user)
    file_records.mark_expired(db_session, file)
    assert file.status == FileStatus.expired

    deleted = make_file(user)
    file_records.mark_deleted(db_session, deleted)
    with pytest.raises(InvalidStateTransition):
        file_records.mark_expired(db_session, deleted)
    assert deleted.status == FileStatus.deleted


def test_mark_ready_rejects_terminal_file(db_session, user, make_file):
    file = make_file(user, status=FileStatus.uploading)
    file_records.mark_deleted(db_session, file)
    with pytest.raises(InvalidStateTransition):
        file_records.mark_ready(db_session, file)


def test_mark_deleted_is_idempotent_and_removes_blob(db_session, storage, user, make_file):
    file = make_file(user)
    assert storage.exists(file.file_path)

    assert file_records.mark_deleted(db_session, file) is True
    first_deleted_at = file.deleted_at
    assert file.status == FileStatus.deleted
    assert not storage.exists(file.file_path)

    assert file_records.mark_deleted(db_session, file) is False
    assert file.deleted_at == first_deleted_at


def test_increment_download_count_stops_at_limit(db_session, user, make_file):
    file = make_file(user, max_downloads=2)
    assert file_records.increment_download_count(db_session, file.id) is True
    assert file_records.increment_download_count(db_session, file.id) is True
    assert file_records.increment_download_count(db_session, file.id) is False
    db_session.refresh(file)
    assert file.download_count == 2


def test_mark_downloaded_claims_once(db_session, user, make_file):
    file = make_file(user)
    recipient = first_recipient(file)

    assert file_records.mark_downloaded(db_session, recipient.id, "203.0.113.9", "curl/8") is True
    assert file_records.mark_downloaded(db_session, recipient.id, "203.0.113.10", "curl/8") is False
    db_session.refresh(recipient)
    assert recipient.download_ip == "203.0.113.9"
    assert recipient.access_count == 1
    assert recipient.downloaded_at is not None


def test_create_recipient_normalizes_email(db_session, user, make_file):
    file = make_file(user, recipients=())
    recipient = file_records.create_recipient(db_session, file, "  Someone@Example.COM ")
    db_session.commit()
    assert recipient.email == "someone@example.com"
    assert len(recipient.download_token) == 64


def test_find_by_token(db_session, user, make_file):
    file = make_file(user)
    recipient = first_recipient(file)
    assert file_records.find_by_token(db_session, recipient.download_token).id == recipient.id
    assert file_records.find_by_token(db_session, "missing") is None
    assert file_records.find_by_token(db_session, "") is None


def test_get_file_not_found_for_bad_id(db_session):
    with pytest.raises(NotFound):
        file_records.get_file(db_session, "not-a-uuid")


def test_email_status_transitions(db_session, user, make_file):
    file = make_file(user)
    recipient = first_recipient(file)

    assert file_records.mark_email_sent(db_session, recipient) is True
    assert recipient.email_status == EmailStatus.sent
    assert recipient.notification_sent is True

    assert file_records.mark_email_delivered(db_session, recipient) is True
    # delivered is final
    assert file_records.mark_email_failed(db_session, recipient, "late bounce") is False
    assert recipient.email_status == EmailStatus.delivered


def test_failed_email_can_be_resent(db_session, user, make_file):
    file = make_file(user)
    recipient = first_recipient(file)
    file_records.mark_email_failed(db_session, recipient, "smtp down")
    assert recipient.email_status == EmailStatus.failed
    assert recipient.email_failure_reason == "smtp down"

    file_records.mark_email_sent(db_session, recipient)
    assert recipient.email_status == EmailStatus.sent
    assert recipient.email_failure_reason is None


def test_mark_email_opened_records_first_open_only(db_session, user, make_file):
    file = make_file(user)
    recipient = first_recipient(file)
    assert file_records.mark_email_opened(db_session, recipient) is True
    opened_at = recipient.email_opened_at
    assert file_records.mark_email_opened(db_session, recipient) is False
    assert recipient.email_opened_at == opened_at


def test_recipient_expiry_overrides_file_expiry(db_session, user, make_file):
    file = make_file(user, expiry_date=datetime.now(UTC) + timedelta(days=1))
    recipient = first_recipient(file)
    later = datetime.now(UTC) + timedelta(days=30)
    file_records.set_recipient_expiry(db_session, recipient, later)
    assert recipient.effective_expiry() > datetime.now(UTC) + timedelta(days=29)
    assert not recipient.is_expired(datetime.now(UTC) + timedelta(days=2))


def test_set_thumbnails_records_keys(db_session, user, make_file):
    file = make_file(user, filename="photo.png", mime_type="image/png")
    keys = {"small": "thumbnails/a_small.jpg", "medium": "thumbnails/a_medium.jpg"}
    file_records.set_thumbnails(db_session, file, keys)
    assert file.thumbnail_path == "thumbnails/a_medium.jpg"
    assert file.metadata_["thumbnails"] == keys
