# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery transports used by the dispatcher.

The engine only knows one call: ``deliver(recipient_email, subject, body)``
returning a :class:`DeliveryReceipt` or raising :class:`TransportError`.
Adapters are responsible for their own timeouts so a hanging provider
cannot stall a scheduler tick forever.

Adapters:
    - SMTPTransport: direct SMTP delivery through aiosmtplib.
    - WebhookTransport: JSON POST to an HTTP mail/SMS provider through aiohttp.

Every adapter reports whether a failure is permanent (retrying cannot
help, e.g. an invalid recipient) so the dispatcher does not waste the
retry budget on it.

Example:
    Delivering through SMTP::

        transport = SMTPTransport(
            host="smtp.example.com", port=587, user="crm", password="secret",
            sender="CRM <crm@example.com>", use_tls=True,
        )
        receipt = await transport.deliver("ann@example.com", "Hello", "Body")
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Protocol

import aiohttp
import aiosmtplib

from .logger import get_logger

logger = get_logger("Transport")


@dataclass(frozen=True)
class DeliveryReceipt:
    """Identifiers assigned by the provider to a delivered message."""

    provider_message_id: str | None = None
    provider_thread_id: str | None = None


class TransportError(Exception):
    """Failure reported by a transport.

    Attributes:
        code: Provider or protocol error code, when available.
        permanent: True if retrying the same message cannot succeed.
    """

    def __init__(self, message: str, *, code: str | int | None = None, permanent: bool = False):
        super().__init__(message)
        self.code = None if code is None else str(code)
        self.permanent = permanent


class Transport(Protocol):
    """Interface of an external delivery provider."""

    async def deliver(self, recipient_email: str, subject: str, body: str) -> DeliveryReceipt:
        ...


_TEMPORARY_PATTERNS = (
    "421",  # Service not available
    "450",  # Mailbox unavailable
    "451",  # Local error in processing
    "452",  # Insufficient system storage
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
)

_PERMANENT_PATTERNS = (
    "wrong_version_number",
    "certificate verify failed",
    "ssl handshake",
    "certificate has expired",
    "self signed certificate",
    "authentication failed",
    "535",  # Authentication credentials invalid
    "534",  # Authentication mechanism too weak
    "530",  # Authentication required
    "550",  # Mailbox unavailable / unknown user
    "553",  # Mailbox name not allowed
    "invalid recipient",
    "invalid address",
)


def classify_transport_error(exc: BaseException) -> TransportError:
    """Wrap a native delivery error into a :class:`TransportError`.

    Network errors, timeouts and 4xx SMTP replies are retryable. 5xx
    replies and TLS/authentication failures are permanent. Unknown errors
    are treated as retryable.
    """
    if isinstance(exc, TransportError):
        return exc

    code: int | None = None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        code = exc.code
    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiosmtplib.SMTPServerDisconnected)):
        return TransportError(message, code=code or "timeout", permanent=False)
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        return TransportError(message, code=code or "recipient_refused", permanent=True)
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return TransportError(message, code=code, permanent=True)

    if code:
        if 400 <= code < 500:
            return TransportError(message, code=code, permanent=False)
        if 500 <= code < 600:
            return TransportError(message, code=code, permanent=True)

    lowered = message.lower()
    if any(pattern in lowered for pattern in _TEMPORARY_PATTERNS):
        return TransportError(message, code=code, permanent=False)
    if any(pattern in lowered for pattern in _PERMANENT_PATTERNS):
        return TransportError(message, code=code, permanent=True)
    return TransportError(message, code=code, permanent=False)


class SMTPTransport:
    """Deliver messages through an SMTP relay.

    TLS behaviour:
        - port 465 with ``use_tls``: implicit TLS
        - other ports with ``use_tls``: STARTTLS
        - ``use_tls=False``: plain SMTP
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        sender: str,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = int(port)
        self.sender = sender
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = float(timeout)

    def _client(self) -> aiosmtplib.SMTP:
        if self.use_tls and self.port == 465:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=self.timeout)
        if self.use_tls:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=True, timeout=self.timeout)
        return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=False, timeout=self.timeout)

    def build_message(self, recipient_email: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient_email
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(body)
        return msg

    async def deliver(self, recipient_email: str, subject: str, body: str) -> DeliveryReceipt:
        msg = self.build_message(recipient_email, subject, body)
        smtp = self._client()

        async def _send() -> None:
            await smtp.connect()
            try:
                if self.user and self.password:
                    await smtp.login(self.user, self.password)
                await smtp.send_message(msg)
            finally:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException:
                    pass

        try:
            await asyncio.wait_for(_send(), timeout=self.timeout)
        except Exception as exc:
            raise classify_transport_error(exc) from exc
        return DeliveryReceipt(provider_message_id=msg["Message-ID"])


class WebhookTransport:
    """Deliver messages by POSTing them to an HTTP provider.

    The provider receives ``{"to", "subject", "body"}`` (plus ``from`` when a
    sender is configured) and is expected to answer with JSON carrying
    ``id`` and optionally ``threadId``.
    """

    RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})

    def __init__(
        self,
        *,
        url: str,
        sender: str | None = None,
        auth_method: str = "none",
        token: str | None = None,
        user: str | None = None,
        password: str | None = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self.sender = sender
        self.auth_method = auth_method
        self.token = token
        self.user = user
        self.password = password
        self.timeout = float(timeout)

    def _auth(self) -> tuple[dict[str, str], aiohttp.BasicAuth | None]:
        headers: dict[str, str] = {}
        auth = None
        if self.auth_method == "bearer" and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.auth_method == "basic":
            auth = aiohttp.BasicAuth(self.user or "", self.password or "")
        return headers, auth

    async def deliver(self, recipient_email: str, subject: str, body: str) -> DeliveryReceipt:
        payload: dict[str, Any] = {"to": recipient_email, "subject": subject, "body": body}
        if self.sender:
            payload["from"] = self.sender
        headers, auth = self._auth()
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, json=payload, auth=auth, headers=headers or None) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        permanent = resp.status < 500 and resp.status not in self.RETRYABLE_CLIENT_STATUSES
                        raise TransportError(
                            f"Provider returned HTTP {resp.status}: {text[:500]}",
                            code=resp.status,
                            permanent=permanent,
                        )
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        logger.warning("Provider %s returned a non-JSON response", self.url)
                        data = {}
        except TransportError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise classify_transport_error(exc) from exc
        if not isinstance(data, dict):
            data = {}
        return DeliveryReceipt(
            provider_message_id=data.get("id") or data.get("message_id"),
            provider_thread_id=data.get("threadId") or data.get("thread_id"),
        )
