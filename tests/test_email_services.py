import smtplib

import pytest

from app.services import email as email_service
from app.services.system_settings import system_settings
from tests.helpers import first_recipient
from tests.mocks import FailingSMTP, FakeSMTP

SMTP_CONFIG = {
    "host": "smtp.example.com",
    "port": 587,
    "username": "mailer",
    "password": "secret",
    "use_tls": True,
    "use_ssl": False,
    "timeout": 5,
    "from_email": "noreply@example.com",
    "from_name": "File Drop",
}


@pytest.fixture()
def smtp(monkeypatch):
    servers: list[FakeSMTP] = []

    def _factory(host, port, **kwargs):
        server = FakeSMTP(host, port, **kwargs)
        servers.append(server)
        return server

    monkeypatch.setattr(email_service, "get_smtp_config", lambda: dict(SMTP_CONFIG))
    monkeypatch.setattr(email_service.smtplib, "SMTP", _factory)
    return servers


def test_deliver_email_uses_tls_and_login(smtp):
    email_service.deliver_email(SMTP_CONFIG, "to@example.com", "Hi", "<p>Hi</p>", "Hi")
    server = smtp[0]
    assert server.host == "smtp.example.com"
    assert server.started_tls is True
    assert server.logged_in is True
    from_addr, to_addrs, message = server.messages[0]
    assert from_addr == "noreply@example.com"
    assert to_addrs == ["to@example.com"]
    assert "Subject: Hi" in message


def test_deliver_email_without_host_raises():
    with pytest.raises(email_service.EmailNotConfigured):
        email_service.deliver_email({"host": ""}, "to@example.com", "Hi", "<p>Hi</p>")


def test_send_email_reports_failure(monkeypatch):
    monkeypatch.setattr(email_service, "get_smtp_config", lambda: dict(SMTP_CONFIG))
    monkeypatch.setattr(email_service.smtplib, "SMTP", FailingSMTP)
    assert email_service.send_email("to@example.com", "Hi", "<p>Hi</p>") is False


def test_send_file_notification_contains_link_and_message(
    db_session, storage, settings_defaults, smtp, user, make_file
):
    file = make_file(user)
    recipient = first_recipient(file)
    recipient.custom_message = "Numbers <attached>"
    db_session.commit()

    email_service.send_file_notification(db_session, recipient)

    _, to_addrs, message = smtp[0].messages[0]
    assert to_addrs == [recipient.email]
    assert recipient.download_token in message
    assert "report.pdf" in message
    assert "Numbers &lt;attached&gt;" in message


def test_send_file_notification_propagates_smtp_errors(
    db_session, storage, settings_defaults, monkeypatch, user, make_file
):
    monkeypatch.setattr(email_service, "get_smtp_config", lambda: dict(SMTP_CONFIG))
    monkeypatch.setattr(email_service.smtplib, "SMTP", FailingSMTP)
    file = make_file(user)
    with pytest.raises(smtplib.SMTPRecipientsRefused):
        email_service.send_file_notification(db_session, first_recipient(file))


def test_build_file_notification_subject(db_session, storage, settings_defaults, user, make_file):
    file = make_file(user, filename="budget.xlsx")
    subject, body_html, body_text = email_service.build_file_notification(
        db_session, first_recipient(file)
    )
    assert subject == f"{user.display_name} shared a file with you: budget.xlsx"
    assert "Secure File Transfer" in body_text
    assert "track-email" in body_html


def test_download_notification_goes_to_owner(
    db_session, storage, settings_defaults, smtp, user, make_file
):
    file = make_file(user)
    assert email_service.send_download_notification(db_session, first_recipient(file)) is True
    assert smtp[0].messages[0][1] == [user.email]


def test_admin_recipients_prefer_configured_list(db_session, settings_defaults, admin_user):
    assert email_service.admin_recipients(db_session) == [admin_user.email]
    system_settings.set_setting(db_session, "ADMIN_NOTIFICATION_EMAILS", ["ops@example.com"])
    assert email_service.admin_recipients(db_session) == ["ops@example.com"]


def test_admin_notification_counts_deliveries(db_session, settings_defaults, smtp, admin_user):
    sent = email_service.send_admin_notification(db_session, "Storage warning", ["91% full"])
    assert sent == 1
    message = smtp[0].messages[0][2]
    assert "[Secure File Transfer] Storage warning" in message
    assert "91% full" in message


def test_admin_notification_with_no_admins(db_session, settings_defaults, smtp):
    assert email_service.send_admin_notification(db_session, "Report", ["nothing"]) == 0
    assert smtp == []


def test_send_test_email(db_session, settings_defaults, smtp):
    assert email_service.send_test_email(db_session, "me@example.com") is True
    assert smtp[0].messages[0][1] == ["me@example.com"]
