import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from sqlalchemy.orm import Session

from app.config import settings
from app.models.file_recipient import FileRecipient
from app.models.user import User
from app.services.system_settings import system_settings

logger = logging.getLogger(__name__)

_STYLE = """
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .button {
            display: inline-block;
            padding: 12px 24px;
            background-color: #007bff;
            color: #ffffff;
            text-decoration: none;
            border-radius: 4px;
            margin: 20px 0;
        }
        .message { background: #f5f5f5; padding: 12px; border-left: 4px solid #007bff; }
        .footer { margin-top: 30px; font-size: 12px; color: #666; }
"""


class EmailNotConfigured(RuntimeError):
    """No SMTP host is configured."""


def get_smtp_config() -> dict:
    return {
        "host": settings.smtp_host,
        "port": settings.smtp_port,
        "username": settings.smtp_username,
        "password": settings.smtp_password,
        "use_tls": settings.smtp_use_tls,
        "use_ssl": settings.smtp_use_ssl,
        "timeout": settings.smtp_timeout,
        "from_email": settings.smtp_from_email,
        "from_name": settings.smtp_from_name,
    }


def _system_name(db: Session | None) -> str:
    if db is None:
        return settings.system_name
    return str(system_settings.get_setting(db, "SYSTEM_NAME", settings.system_name))


def _create_smtp_client(host: str, port: int, use_ssl: bool, timeout: int | None = None):
    if use_ssl:
        if timeout is None:
            return smtplib.SMTP_SSL(host, port)
        return smtplib.SMTP_SSL(host, port, timeout=timeout)
    if timeout is None:
        return smtplib.SMTP(host, port)
    return smtplib.SMTP(host, port, timeout=timeout)


def _wrap_html(title: str, content: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h2>{html.escape(title)}</h2>
        {content}
        <div class="footer">
            <p>This is an automated message. Please do not reply to this email.</p>
        </div>
    </div>
</body>
</html>
"""


def deliver_email(
    config: dict,
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
) -> None:
    """Send one message; SMTP and socket errors propagate to the caller."""
    host = str(config.get("host") or "")
    if not host:
        raise EmailNotConfigured("SMTP host is not configured")

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config.get('from_name', settings.smtp_from_name)} <{config.get('from_email')}>"
    msg["To"] = to_email
    if body_text:
        msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    port = int(config.get("port", 587) or 587)
    server = _create_smtp_client(host, port, bool(config.get("use_ssl")), config.get("timeout"))
    try:
        if config.get("use_tls") and not config.get("use_ssl"):
            server.starttls()
        username = config.get("username")
        password = config.get("password")
        if username and password:
            server.login(username, password)
        server.sendmail(config.get("from_email"), [to_email], msg.as_string())
    finally:
        server.quit()


def send_email_with_config(
    config: dict,
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
) -> bool:
    try:
        deliver_email(config, to_email, subject, body_html, body_text)
        return True
    except EmailNotConfigured:
        logger.warning("email_skipped reason=smtp_not_configured to=%s", to_email)
        return False
    except smtplib.SMTPAuthenticationError as exc:
        logger.error("SMTP authentication failed for %s: %s", to_email, exc)
        return False
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False


def send_email(to_email: str, subject: str, body_html: str, body_text: str | None = None) -> bool:
    return send_email_with_config(get_smtp_config(), to_email, subject, body_html, body_text)


def build_file_notification(db: Session, recipient: FileRecipient) -> tuple[str, str, str]:
    file = recipient.file
    owner = file.owner
    sender = owner.display_name or owner.username if owner else "A colleague"
    system_name = _system_name(db)
    expiry = recipient.effective_expiry()
    expiry_label = expiry.strftime("%Y-%m-%d %H:%M UTC") if expiry else "unknown"
    download_url = recipient.download_url()

    subject = f"{sender} shared a file with you: {file.original_filename}"
    message_html = ""
    message_text = ""
    if recipient.custom_message:
        message_html = f'<p class="message">{html.escape(recipient.custom_message)}</p>'
        message_text = f"\nMessage from {sender}:\n{recipient.custom_message}\n"
    if file.description:
        message_html += f"<p>{html.escape(file.description)}</p>"

    content = f"""
        <p>{html.escape(sender)} has shared a file with you through {html.escape(system_name)}.</p>
        <p><strong>{html.escape(file.original_filename)}</strong> ({file.formatted_size})</p>
        {message_html}
        <p><a href="{download_url}" class="button">Download File</a></p>
        <p>This link can be used once and expires on {expiry_label}.</p>
        <img src="{recipient.tracking_url()}" width="1" height="1" alt="" />
"""
    body_text = f"""{sender} has shared a file with you through {system_name}.

File: {file.original_filename} ({file.formatted_size})
{message_text}
Download (single use, expires {expiry_label}):
{download_url}
"""
    return subject, _wrap_html("A file has been shared with you", content), body_text


def send_file_notification(db: Session, recipient: FileRecipient) -> None:
    """Deliver the download link; raises on SMTP failure so the caller can retry."""
    subject, body_html, body_text = build_file_notification(db, recipient)
    deliver_email(get_smtp_config(), recipient.email, subject, body_html, body_text)
    logger.info("file_notification_sent recipient_id=%s", recipient.id)


def send_download_notification(db: Session, recipient: FileRecipient) -> bool:
    file = recipient.file
    owner = file.owner if file else None
    if owner is None or not owner.email:
        return False
    downloaded_at = (
        recipient.downloaded_at.strftime("%Y-%m-%d %H:%M UTC") if recipient.downloaded_at else ""
    )
    subject = f"Your file was downloaded: {file.original_filename}"
    content = f"""
        <p><strong>{html.escape(file.original_filename)}</strong> was downloaded by
        {html.escape(recipient.email)} on {downloaded_at}.</p>
        <p>Downloads: {file.download_count} of {file.max_downloads}</p>
"""
    body_text = (
        f"{file.original_filename} was downloaded by {recipient.email} on {downloaded_at}.\n"
        f"Downloads: {file.download_count} of {file.max_downloads}\n"
    )
    return send_email(owner.email, subject, _wrap_html("File downloaded", content), body_text)


def admin_recipients(db: Session) -> list[str]:
    configured = [
        str(address).strip()
        for address in system_settings.get_list(db, "ADMIN_NOTIFICATION_EMAILS", [])
        if str(address).strip()
    ]
    if configured:
        return configured
    rows = (
        db.query(User.email)
        .filter(User.is_admin.is_(True))
        .filter(User.is_active.is_(True))
        .filter(User.email.is_not(None))
        .all()
    )
    return [row[0] for row in rows]


def send_admin_notification(db: Session, subject: str, lines: list[str]) -> int:
    """Send a plain report to every administrator; returns messages sent."""
    system_name = _system_name(db)
    full_subject = f"[{system_name}] {subject}"
    content = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    body_html = _wrap_html(subject, content)
    body_text = "\n".join(lines)
    sent = 0
    for address in admin_recipients(db):
        if send_email(address, full_subject, body_html, body_text):
            sent += 1
    if not sent:
        logger.warning("admin_notification_undelivered subject=%s", subject)
    return sent


def send_test_email(db: Session, to_email: str) -> bool:
    system_name = _system_name(db)
    subject = f"{system_name} test email"
    content = "<p>SMTP delivery is working.</p>"
    return send_email(to_email, subject, _wrap_html("Test email", content), "SMTP delivery is working.")
