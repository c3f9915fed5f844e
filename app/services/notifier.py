"""
Delivery of "your export is ready" messages.

Notification is best-effort: failures are logged and reported as False,
never raised back into the worker.
"""
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from urllib.parse import urlencode

from app.config import settings

logger = logging.getLogger(__name__)

EXPORT_READY_SUBJECT = "Your Fitness Data Export is Ready!"


def build_download_url(email: str, secret: str) -> str:
    """Download link embedding the owner identity and single-use secret."""
    query = urlencode({"email": email, "secret": secret})
    return f"{settings.public_base_url.rstrip('/')}/udata/download?{query}"


def export_ready_text(download_url: str, export_format: str) -> str:
    return (
        "Hello,\n\n"
        f"Your requested {export_format.upper()} fitness data export is ready. "
        "You can download your data using the link below. Please note that the "
        f"link will expire in {settings.export_expiry_hours} hours and can only "
        "be used once.\n\n"
        f"Download Link: {download_url}\n\n"
        "If you did not request this export, please change your password immediately.\n"
    )


class Notifier(ABC):
    """Interface for export-ready notifications."""

    @abstractmethod
    def send_export_ready(self, recipient: str, download_url: str, export_format: str) -> bool:
        """
        Tell the recipient their export can be downloaded.

        Returns True if delivered, False otherwise.
        """
        pass


class EmailNotifier(Notifier):
    """Sends the download link over SMTP."""

    def send_export_ready(self, recipient: str, download_url: str, export_format: str) -> bool:
        try:
            message = MIMEText(export_ready_text(download_url, export_format))
            message["From"] = settings.smtp_from_email
            message["To"] = recipient
            message["Subject"] = EXPORT_READY_SUBJECT

            with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
                if settings.smtp_use_tls:
                    server.starttls()
                if settings.smtp_username and settings.smtp_password:
                    server.login(settings.smtp_username, settings.smtp_password)
                server.send_message(message)

            logger.info("Export email sent to %s", recipient)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send export email to %s: %s", recipient, e)
            return False


class LoggingNotifier(Notifier):
    """Logs the download link instead of sending it (local development)."""

    def send_export_ready(self, recipient: str, download_url: str, export_format: str) -> bool:
        logger.info("Export (%s) ready for %s: %s", export_format, recipient, download_url)
        return True


def get_notifier() -> Notifier:
    """Factory returning the configured notifier."""
    if settings.smtp_host:
        return EmailNotifier()
    return LoggingNotifier()
