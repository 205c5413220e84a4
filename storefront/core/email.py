import logging
import ssl
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

import aiosmtplib

from storefront.core.config import Settings
from storefront.models.enums import TransportErrorKind

logger = logging.getLogger(__name__)

REJECTED_CODES = frozenset({550, 551, 553})


@dataclass
class TransportResult:
    ok: bool
    error_kind: TransportErrorKind | None = None
    message: str | None = None
    provider_message_id: str | None = None


def classify_smtp_error(exc: Exception) -> TransportErrorKind:
    """Map aiosmtplib failures onto the dispatcher's error kinds."""
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return TransportErrorKind.auth
    if isinstance(exc, (aiosmtplib.SMTPRecipientsRefused, aiosmtplib.SMTPRecipientRefused)):
        return TransportErrorKind.rejected
    if isinstance(exc, (aiosmtplib.SMTPTimeoutError, TimeoutError)):
        return TransportErrorKind.timeout
    if isinstance(exc, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected)):
        return TransportErrorKind.network
    if isinstance(exc, aiosmtplib.SMTPNotSupported):
        return TransportErrorKind.config
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        if exc.code in REJECTED_CODES:
            return TransportErrorKind.rejected
        if exc.code >= 500:
            return TransportErrorKind.config
        return TransportErrorKind.network
    return TransportErrorKind.network


class SmtpTransport:
    """Sends one message per call over aiosmtplib. Port 465 uses SSL/TLS, anything else STARTTLS."""

    def __init__(self, config: Settings):
        self.config = config

    def _build_message(self, to_email: str, subject: str, body: str) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["From"] = f"{self.config.MAIL_FROM_NAME} <{self.config.MAIL_FROM}>"
        message["To"] = to_email
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.attach(MIMEText(body, "html"))
        return message

    async def send(self, recipient: str, subject: str, body: str) -> TransportResult:
        if not self.config.MAIL_SERVER:
            return TransportResult(False, TransportErrorKind.config, "MAIL_SERVER is not configured")
        message = self._build_message(recipient, subject, body)
        options = {
            "hostname": self.config.MAIL_SERVER,
            "port": self.config.MAIL_PORT,
            "username": self.config.MAIL_USERNAME or None,
            "password": self.config.MAIL_PASSWORD or None,
            "timeout": self.config.TRANSPORT_TIMEOUT_SECONDS,
        }
        if self.config.MAIL_PORT == 465:
            options.update(use_tls=True, tls_context=ssl.create_default_context())
        else:
            options.update(start_tls=True)
        try:
            await aiosmtplib.send(message, **options)
        except (aiosmtplib.SMTPException, OSError) as e:
            kind = classify_smtp_error(e)
            logger.warning("Email to %s failed (%s): %s", recipient, kind.value, e)
            return TransportResult(False, kind, str(e))
        logger.info("Email sent successfully to %s", recipient)
        return TransportResult(True, provider_message_id=message["Message-ID"])


class LoggingTransport:
    """Used when mail is not configured: logs the message and reports success."""

    async def send(self, recipient: str, subject: str, body: str) -> TransportResult:
        logger.info("Mail not configured; would send to=%s subject=%r", recipient, subject)
        return TransportResult(True, provider_message_id=f"logged-{uuid.uuid4().hex}")


def build_transport(config: Settings):
    # In production an unset MAIL_SERVER surfaces as a config failure on every send
    if config.MAIL_SERVER or config.is_production:
        if not config.MAIL_SERVER:
            logger.error("MAIL_SERVER not set in production; notifications will fail")
        return SmtpTransport(config)
    logger.warning("MAIL_SERVER not set; notifications will be logged, not sent")
    return LoggingTransport()
