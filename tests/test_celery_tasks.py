"""Tests for Celery tasks."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from app.errors import NotFound
from app.models.file import FileStatus
from app.services.email import EmailNotConfigured
from app.services.storage import ObjectStorageError
from app.services.thumbnails import ThumbnailError


def _recipient(active=True, status=FileStatus.ready):
    recipient = MagicMock()
    recipient.is_active = active
    recipient.file.status = status
    return recipient


# =============================================================================
# Cleanup Task Tests
# =============================================================================


class TestCleanupTask:
    """Tests for cleanup.run_cleanup task."""

    def test_run_cleanup_success(self):
        mock_session = MagicMock()

        with patch("app.tasks.cleanup.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.cleanup.cleanup_job.run", return_value={"errors": 0}
            ) as mock_run:
                from app.tasks.cleanup import run_cleanup

                assert run_cleanup() == {"errors": 0}

                mock_run.assert_called_once_with(mock_session, trigger="scheduled")
                mock_session.close.assert_called_once()

    def test_run_cleanup_exception_rollback(self):
        mock_session = MagicMock()

        with patch("app.tasks.cleanup.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.cleanup.cleanup_job.run", side_effect=Exception("Cleanup error")
            ):
                from app.tasks.cleanup import run_cleanup

                with pytest.raises(Exception, match="Cleanup error"):
                    run_cleanup()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()


# =============================================================================
# Notification Task Tests
# =============================================================================


class TestFileNotificationTask:
    """Tests for notifications.send_file_notification task."""

    def test_sends_and_marks_sent(self):
        mock_session = MagicMock()
        recipient = _recipient()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.return_value = recipient
                with patch(
                    "app.tasks.notifications.email_service.send_file_notification"
                ) as mock_send:
                    from app.tasks.notifications import send_file_notification

                    assert send_file_notification("rid") is True

                    mock_send.assert_called_once_with(mock_session, recipient)
                    records.mark_email_sent.assert_called_once_with(mock_session, recipient)
                    mock_session.close.assert_called_once()

    def test_missing_recipient_is_skipped(self):
        mock_session = MagicMock()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.side_effect = NotFound("Recipient not found")
                with patch(
                    "app.tasks.notifications.email_service.send_file_notification"
                ) as mock_send:
                    from app.tasks.notifications import send_file_notification

                    assert send_file_notification("rid") is False
                    mock_send.assert_not_called()

    def test_file_not_ready_is_skipped(self):
        mock_session = MagicMock()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.return_value = _recipient(status=FileStatus.deleted)
                with patch(
                    "app.tasks.notifications.email_service.send_file_notification"
                ) as mock_send:
                    from app.tasks.notifications import send_file_notification

                    assert send_file_notification("rid") is False
                    mock_send.assert_not_called()

    def test_unconfigured_smtp_marks_failed(self):
        mock_session = MagicMock()
        recipient = _recipient()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.return_value = recipient
                with patch(
                    "app.tasks.notifications.email_service.send_file_notification",
                    side_effect=EmailNotConfigured("SMTP host is not configured"),
                ):
                    from app.tasks.notifications import send_file_notification

                    assert send_file_notification("rid") is False
                    records.mark_email_failed.assert_called_once_with(
                        mock_session, recipient, "SMTP host is not configured"
                    )

    def test_smtp_error_is_retried(self):
        mock_session = MagicMock()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.return_value = _recipient()
                with patch(
                    "app.tasks.notifications.email_service.send_file_notification",
                    side_effect=smtplib.SMTPServerDisconnected("gone"),
                ):
                    from app.tasks.notifications import send_file_notification

                    # a direct call re-raises instead of scheduling the retry
                    with pytest.raises(smtplib.SMTPServerDisconnected):
                        send_file_notification("rid")

                    records.mark_email_failed.assert_not_called()
                    mock_session.rollback.assert_called_once()
                    mock_session.close.assert_called_once()

    def test_smtp_error_after_last_retry_marks_failed(self):
        mock_session = MagicMock()
        recipient = _recipient()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.return_value = recipient
                with patch(
                    "app.tasks.notifications.email_service.send_file_notification",
                    side_effect=smtplib.SMTPServerDisconnected("gone"),
                ):
                    from app.tasks.notifications import send_file_notification

                    with patch.object(send_file_notification, "max_retries", 0):
                        assert send_file_notification("rid") is False

                    records.mark_email_failed.assert_called_once_with(
                        mock_session, recipient, "gone"
                    )


    def test_unexpected_error_marks_failed(self):
        mock_session = MagicMock()
        recipient = _recipient()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.return_value = recipient
                with patch(
                    "app.tasks.notifications.email_service.send_file_notification",
                    side_effect=KeyError("frontend_url"),
                ):
                    from app.tasks.notifications import send_file_notification

                    assert send_file_notification("rid") is False

                    records.mark_email_failed.assert_called_once_with(
                        mock_session, recipient, "KeyError: 'frontend_url'"
                    )
                    records.mark_email_sent.assert_not_called()
                    mock_session.close.assert_called_once()


class TestDownloadNotificationTask:
    """Tests for notifications.send_download_notification task."""

    def test_sends_to_owner(self):
        mock_session = MagicMock()
        recipient = _recipient()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.return_value = recipient
                with patch(
                    "app.tasks.notifications.email_service.send_download_notification",
                    return_value=True,
                ) as mock_send:
                    from app.tasks.notifications import send_download_notification

                    assert send_download_notification("rid") is True
                    mock_send.assert_called_once_with(mock_session, recipient)
                    mock_session.close.assert_called_once()

    def test_missing_recipient(self):
        mock_session = MagicMock()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch("app.tasks.notifications.file_records") as records:
                records.get_recipient.side_effect = NotFound("Recipient not found")
                from app.tasks.notifications import send_download_notification

                assert send_download_notification("rid") is False


# =============================================================================
# Thumbnail Task Tests
# =============================================================================


class TestThumbnailTask:
    """Tests for thumbnails.generate_thumbnail task."""

    def test_generates_for_ready_file(self):
        mock_session = MagicMock()
        file = MagicMock(status=FileStatus.ready)

        with patch("app.tasks.thumbnails.SessionLocal", return_value=mock_session):
            with patch("app.tasks.thumbnails.file_records") as records:
                records.get_file.return_value = file
                with patch(
                    "app.tasks.thumbnails.thumbnails.generate",
                    return_value={"small": "thumbnails/x_small.jpg"},
                ) as mock_generate:
                    from app.tasks.thumbnails import generate_thumbnail

                    assert generate_thumbnail("fid") == {"small": "thumbnails/x_small.jpg"}
                    mock_generate.assert_called_once_with(mock_session, file)
                    mock_session.close.assert_called_once()

    def test_skips_files_that_are_not_ready(self):
        mock_session = MagicMock()

        with patch("app.tasks.thumbnails.SessionLocal", return_value=mock_session):
            with patch("app.tasks.thumbnails.file_records") as records:
                records.get_file.return_value = MagicMock(status=FileStatus.uploading)
                with patch("app.tasks.thumbnails.thumbnails.generate") as mock_generate:
                    from app.tasks.thumbnails import generate_thumbnail

                    assert generate_thumbnail("fid") == {}
                    mock_generate.assert_not_called()

    def test_unreadable_image_returns_empty(self):
        mock_session = MagicMock()

        with patch("app.tasks.thumbnails.SessionLocal", return_value=mock_session):
            with patch("app.tasks.thumbnails.file_records") as records:
                records.get_file.return_value = MagicMock(status=FileStatus.ready)
                with patch(
                    "app.tasks.thumbnails.thumbnails.generate",
                    side_effect=ThumbnailError("cannot identify image"),
                ):
                    from app.tasks.thumbnails import generate_thumbnail

                    assert generate_thumbnail("fid") == {}

    def test_storage_error_after_retries(self):
        mock_session = MagicMock()

        with patch("app.tasks.thumbnails.SessionLocal", return_value=mock_session):
            with patch("app.tasks.thumbnails.file_records") as records:
                records.get_file.return_value = MagicMock(status=FileStatus.ready)
                with patch(
                    "app.tasks.thumbnails.thumbnails.generate",
                    side_effect=ObjectStorageError("disk full"),
                ):
                    from app.tasks.thumbnails import generate_thumbnail

                    with patch.object(generate_thumbnail, "max_retries", 0):
                        assert generate_thumbnail("fid") == {}
                    mock_session.close.assert_called_once()
