import smtplib
from unittest.mock import MagicMock, patch

import pytest

from marketplace.core.exceptions import DeliveryFailure
from marketplace.services.channels import ConsoleChannel, SmtpEmailChannel, generate_webhook_signature
from marketplace.services.templates import RenderedMessage

MESSAGE = RenderedMessage(subject="New lead: Fix sink", body="A customer needs help")


def test_webhook_signature_is_stable():
    first = generate_webhook_signature('{"to": "+1"}', "secret")
    assert first == generate_webhook_signature('{"to": "+1"}', "secret")
    assert first != generate_webhook_signature('{"to": "+1"}', "other")
    assert len(first) == 64


@pytest.mark.asyncio
async def test_console_channel():
    receipt = await ConsoleChannel("email").send("someone@example.com", MESSAGE)
    assert receipt.channel == "email"


@pytest.mark.asyncio
async def test_smtp_sends_with_starttls():
    channel = SmtpEmailChannel("smtp.example.com", 587, "no-reply@example.com", username="u", password="p")
    server = MagicMock()
    with patch("marketplace.services.channels.smtplib.SMTP", return_value=server) as smtp:
        receipt = await channel.send("provider@example.com", MESSAGE)

    smtp.assert_called_once_with("smtp.example.com", 587, timeout=10.0)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("u", "p")
    sent = server.send_message.call_args.args[0]
    assert sent["To"] == "provider@example.com"
    assert sent["Subject"] == "New lead: Fix sink"
    server.quit.assert_called_once()
    assert receipt.channel == "email"


@pytest.mark.asyncio
async def test_smtp_refused_recipient_is_permanent():
    channel = SmtpEmailChannel("smtp.example.com", 25, "no-reply@example.com", use_tls=False)
    server = MagicMock()
    server.send_message.side_effect = smtplib.SMTPRecipientsRefused({"bad@example.com": (550, b"no such user")})
    with patch("marketplace.services.channels.smtplib.SMTP", return_value=server):
        with pytest.raises(DeliveryFailure) as exc_info:
            await channel.send("bad@example.com", MESSAGE)

    assert exc_info.value.retryable is False
    server.starttls.assert_not_called()


@pytest.mark.asyncio
async def test_smtp_connection_error_is_retryable():
    channel = SmtpEmailChannel("smtp.example.com", 587, "no-reply@example.com")
    with patch("marketplace.services.channels.smtplib.SMTP", side_effect=OSError("connection refused")):
        with pytest.raises(DeliveryFailure) as exc_info:
            await channel.send("provider@example.com", MESSAGE)

    assert exc_info.value.retryable is True
    assert "connection refused" in exc_info.value.message
