import aiosmtplib
import pytest

from storefront.core.config import Settings
from storefront.core.email import LoggingTransport, SmtpTransport, build_transport, classify_smtp_error
from storefront.core.templates import DEFAULT_TEMPLATES, substitute
from storefront.models.enums import OrderStatus, TransportErrorKind


@pytest.mark.parametrize(
    "exc, kind",
    [
        (aiosmtplib.SMTPAuthenticationError(535, "authentication failed"), TransportErrorKind.auth),
        (aiosmtplib.SMTPRecipientRefused(550, "no such user", "gone@example.com"), TransportErrorKind.rejected),
        (aiosmtplib.SMTPResponseException(553, "mailbox name not allowed"), TransportErrorKind.rejected),
        (aiosmtplib.SMTPResponseException(554, "relay denied"), TransportErrorKind.config),
        (aiosmtplib.SMTPResponseException(451, "try again later"), TransportErrorKind.network),
        (aiosmtplib.SMTPConnectError("connection refused"), TransportErrorKind.network),
        (aiosmtplib.SMTPServerDisconnected("closed"), TransportErrorKind.network),
        (aiosmtplib.SMTPTimeoutError("timed out"), TransportErrorKind.timeout),
    ],
)
def test_smtp_errors_are_classified(exc, kind):
    assert classify_smtp_error(exc) == kind


def mail_config(**overrides) -> Settings:
    values = dict(MAIL_SERVER="smtp.example.com", MAIL_PORT=587, MAIL_FROM="orders@example.com")
    values.update(overrides)
    return Settings(**values)


@pytest.mark.asyncio
async def test_smtp_send_uses_starttls_on_submission_port(monkeypatch):
    calls = []

    async def fake_send(message, **options):
        calls.append((message, options))

    monkeypatch.setattr(aiosmtplib, "send", fake_send)

    result = await SmtpTransport(mail_config()).send("ada@example.com", "Hello", "<p>Hi</p>")

    assert result.ok
    message, options = calls[0]
    assert message["To"] == "ada@example.com"
    assert options["start_tls"] is True
    assert "use_tls" not in options
    assert result.provider_message_id == message["Message-ID"]


@pytest.mark.asyncio
async def test_smtp_send_uses_implicit_tls_on_465(monkeypatch):
    calls = []

    async def fake_send(message, **options):
        calls.append(options)

    monkeypatch.setattr(aiosmtplib, "send", fake_send)

    await SmtpTransport(mail_config(MAIL_PORT=465)).send("ada@example.com", "Hello", "<p>Hi</p>")

    assert calls[0]["use_tls"] is True


@pytest.mark.asyncio
async def test_smtp_failure_is_reported_not_raised(monkeypatch):
    async def fake_send(message, **options):
        raise aiosmtplib.SMTPAuthenticationError(535, "bad credentials")

    monkeypatch.setattr(aiosmtplib, "send", fake_send)

    result = await SmtpTransport(mail_config()).send("ada@example.com", "Hello", "<p>Hi</p>")

    assert not result.ok
    assert result.error_kind == TransportErrorKind.auth


def test_unconfigured_mail_falls_back_to_logging_transport():
    assert isinstance(build_transport(mail_config(MAIL_SERVER="")), LoggingTransport)
    assert isinstance(build_transport(mail_config()), SmtpTransport)


def test_every_order_status_has_a_default_template():
    for status in OrderStatus:
        assert f"order_{status.value}" in DEFAULT_TEMPLATES


def test_substitute_escapes_and_fills_missing():
    rendered = substitute("{{ name }} owes {{total}} for {{missing}}", {"name": "<b>Ada</b>", "total": 0})
    assert rendered == "&lt;b&gt;Ada&lt;/b&gt; owes 0 for N/A"


@pytest.mark.asyncio
async def test_unconfigured_mail_in_production_fails_as_config_error():
    transport = build_transport(mail_config(MAIL_SERVER="", ENVIRONMENT="production"))

    result = await transport.send("ada@example.com", "Hello", "<p>Hi</p>")

    assert isinstance(transport, SmtpTransport)
    assert not result.ok
    assert result.error_kind == TransportErrorKind.config
