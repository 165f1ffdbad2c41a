from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional, Protocol

import aiohttp

from marketplace.core.exceptions import DeliveryFailure
from marketplace.core.logging import get_structlog_logger
from marketplace.services.templates import RenderedMessage

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class SendReceipt:
    channel: str
    external_id: Optional[str] = None


class Channel(Protocol):
    name: str

    async def send(self, recipient: str, message: RenderedMessage) -> SendReceipt: ...


def generate_webhook_signature(payload: str, secret: str) -> str:
    """
    Generate HMAC-SHA256 signature for webhook payload.
    """
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class ConsoleChannel:
    """Writes messages to the structured log instead of sending them."""

    def __init__(self, name: str = "console"):
        self.name = name

    async def send(self, recipient: str, message: RenderedMessage) -> SendReceipt:
        logger.info("channel.console_send", channel=self.name, recipient=recipient, subject=message.subject)
        return SendReceipt(channel=self.name)


class SmtpEmailChannel:
    name = "email"

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout_seconds: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds

    def _send_sync(self, recipient: str, message: RenderedMessage) -> Optional[str]:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = recipient
        email["Subject"] = message.subject
        email.set_content(message.body)

        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_seconds)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds)
        try:
            if self.use_tls and self.port != 465:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(email)
        finally:
            server.quit()
        return email.get("Message-ID")

    async def send(self, recipient: str, message: RenderedMessage) -> SendReceipt:
        try:
            message_id = await asyncio.to_thread(self._send_sync, recipient, message)
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryFailure("Recipient refused", retryable=False, details={"error": str(e)}) from e
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailure(f"SMTP error: {str(e)[:200]}", details={"host": self.host}) from e
        return SendReceipt(channel=self.name, external_id=message_id)


class WebhookSmsChannel:
    """Posts SMS messages to a gateway webhook, signed with HMAC-SHA256."""

    name = "sms"

    def __init__(self, url: str, secret: Optional[str] = None, timeout_seconds: float = 10.0):
        self.url = url
        self.secret = secret
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send(self, recipient: str, message: RenderedMessage) -> SendReceipt:
        body = json.dumps({"to": recipient, "text": f"{message.subject}\n{message.body}"}, sort_keys=True)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Signature"] = generate_webhook_signature(body, self.secret)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.url, data=body, headers=headers) as response:
                    if 200 <= response.status < 300:
                        return SendReceipt(channel=self.name, external_id=response.headers.get("X-Message-ID"))
                    error_text = await response.text()
                    raise DeliveryFailure(
                        f"HTTP {response.status}: {error_text[:200]}",
                        retryable=response.status >= 500 or response.status == 429,
                        details={"status": response.status},
                    )
        except asyncio.TimeoutError as e:
            raise DeliveryFailure("Request timeout") from e
        except aiohttp.ClientError as e:
            raise DeliveryFailure(f"Client error: {str(e)[:200]}") from e
