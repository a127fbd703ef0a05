from __future__ import annotations

import asyncio
import html
import logging
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from enum import Enum
from typing import Callable, Optional, Protocol

import aiosmtplib

from mailguard.config import Settings
from mailguard.errors import (
    ConfigurationError,
    FieldError,
    RateLimitExceeded,
    SecurityCheckFailed,
    TransportError,
    ValidationFailed,
)
from mailguard.middleware.audit import log_security_event, redact
from mailguard.middleware.rate_limit import RateLimiter
from mailguard.schemas.contact import ContactEmailData
from mailguard.schemas.security import SecurityInfo, SendResult
from mailguard.services.content_security import ContentSecurityGate

logger = logging.getLogger(__name__)

MAILER_NAME = "SoftwarePros Secure Email Service v2.0"
APPLICATION_NAME = "SoftwarePros Contact Form"


@dataclass
class OutboundMessage:
    sender: str
    recipient: str
    subject: str
    text: str
    html: str
    reply_to: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)


class MailTransport(Protocol):
    async def send(self, message: OutboundMessage) -> str:
        """Deliver ``message`` and return the transport's message identifier."""


class SmtpTransport:
    """SMTP delivery over a fresh connection per message."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        use_tls: bool,
        timeout: float = 45.0,
        validate_certs: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.validate_certs = validate_certs

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpTransport":
        if not (settings.smtp_host and settings.smtp_user and settings.smtp_password):
            raise ConfigurationError(
                "SMTP configuration required. Please set SMTP_HOST, SMTP_USER, "
                "and SMTP_PASSWORD environment variables."
            )
        use_tls = settings.smtp_secure if settings.smtp_secure is not None else settings.smtp_port == 465
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=use_tls,
            timeout=settings.smtp_timeout_seconds,
            validate_certs=settings.smtp_validate_certs,
        )

    def build_message(self, message: OutboundMessage) -> EmailMessage:
        email = EmailMessage()
        email["From"] = message.sender
        email["To"] = message.recipient
        if message.reply_to:
            email["Reply-To"] = message.reply_to
        email["Subject"] = message.subject
        domain = message.sender.rsplit("@", 1)[-1] if "@" in message.sender else None
        email["Message-ID"] = make_msgid(domain=domain)
        for name, value in message.headers.items():
            email[name] = value
        email.set_content(message.text)
        email.add_alternative(message.html, subtype="html")
        return email

    async def send(self, message: OutboundMessage) -> str:
        email = self.build_message(message)
        try:
            await aiosmtplib.send(
                email,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=self.use_tls,
                start_tls=False if self.use_tls else None,
                validate_certs=self.validate_certs,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPAuthenticationError as e:
            raise TransportError("SMTP authentication failed", kind="auth") from e
        except aiosmtplib.SMTPTimeoutError as e:
            raise TransportError("SMTP connection timeout", kind="timeout") from e
        except aiosmtplib.SMTPConnectError as e:
            raise TransportError("SMTP connection failed", kind="connection") from e
        except aiosmtplib.SMTPException as e:
            raise TransportError(f"SMTP error: {e}", kind="smtp") from e
        except ssl.SSLError as e:
            raise TransportError("SMTP SSL/TLS connection failed", kind="tls") from e
        except asyncio.TimeoutError as e:
            raise TransportError("SMTP connection timeout", kind="timeout") from e
        except OSError as e:
            raise TransportError("SMTP connection failed", kind="connection") from e
        return email["Message-ID"]

    def describe(self) -> dict[str, object]:
        return {"host": self.host, "port": self.port, "user": redact(self.username)}


_HTML_FIELDS = [
    ("Name", "name"),
    ("Email", "email"),
    ("Phone", "phone"),
    ("Company", "company"),
    ("Website", "website"),
    ("Service Type", "service_type"),
    ("Project Subject", "subject"),
    ("Budget", "budget"),
    ("Timeline", "timeline"),
    ("Preferred Contact Method", "contact_method"),
    ("Best Time to Reach", "best_time_to_reach"),
    ("Heard About Us", "hear_about_us"),
    ("Message", "message"),
]


def build_subject(data: ContactEmailData) -> str:
    base = data.subject.strip() or "New Contact Message"
    return f"{base} - {data.name} ({data.service_type or 'General'})"


def build_html_email(data: ContactEmailData) -> str:
    lines = [
        "<h2>New Contact Form Submission</h2>",
        '<table cellspacing="0" cellpadding="6" style="border-collapse:collapse">',
    ]
    for label, attr in _HTML_FIELDS:
        value = getattr(data, attr)
        if not value:
            continue
        lines.append(
            '<tr><td style="font-weight:600;border-bottom:1px solid #eee">'
            f"{label}</td>"
            f'<td style="border-bottom:1px solid #eee">{html.escape(value)}</td></tr>'
        )
    lines.append("</table>")
    return "".join(lines)


def build_text_email(data: ContactEmailData) -> str:
    return "\n".join(
        f"{label}: {getattr(data, attr)}" for label, attr in _HTML_FIELDS if getattr(data, attr)
    )


class DispatchStage(str, Enum):
    START = "start"
    RATE_LIMIT_CHECK = "rate_limit_check"
    VALIDATE = "validate"
    SANITIZE = "sanitize"
    SECURITY_SCAN = "security_scan"
    TRANSPORT_SEND = "transport_send"
    LOGGED = "logged"
    REJECTED = "rejected"


class ContactDispatcher:
    """Runs one contact email through rate limiting, validation and scanning before sending.

    Holds no per-request state. The transport is resolved lazily so missing
    SMTP credentials surface as a ``ConfigurationError`` on first use.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        gate: ContentSecurityGate,
        recipient: str,
        sender: str,
        transport: Optional[MailTransport] = None,
        transport_factory: Optional[Callable[[], MailTransport]] = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.gate = gate
        self.recipient = recipient
        self.sender = sender
        self._transport = transport
        self._transport_factory = transport_factory

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rate_limiter: RateLimiter,
        transport: Optional[MailTransport] = None,
    ) -> "ContactDispatcher":
        return cls(
            rate_limiter=rate_limiter,
            gate=ContentSecurityGate.from_settings(settings),
            recipient=settings.contact_email,
            sender=settings.contact_from_email,
            transport=transport,
            transport_factory=lambda: SmtpTransport.from_settings(settings),
        )

    def _resolve_transport(self) -> MailTransport:
        if self._transport is None:
            if self._transport_factory is None:
                raise ConfigurationError("No mail transport configured")
            self._transport = self._transport_factory()
        return self._transport

    def _advance(self, stage: DispatchStage, identifier: str) -> DispatchStage:
        logger.debug("Contact dispatch for %s entering %s", identifier, stage.value)
        return stage

    async def send_contact_email(
        self,
        data: ContactEmailData,
        client_identifier: Optional[str] = None,
    ) -> SendResult:
        identifier = client_identifier or data.email or "unknown"
        stage = self._advance(DispatchStage.START, identifier)
        try:
            stage = self._advance(DispatchStage.RATE_LIMIT_CHECK, identifier)
            decision = await self.rate_limiter.check(identifier)
            if not decision.allowed:
                log_security_event(
                    "rate_limit",
                    {
                        "identifier": identifier,
                        "remaining": decision.remaining,
                        "retry_after_ms": decision.retry_after_ms,
                    },
                )
                raise RateLimitExceeded(identifier, decision.remaining, decision.retry_after_ms)

            stage = self._advance(DispatchStage.VALIDATE, identifier)
            report = self.gate.validate(data)
            errors = list(report.errors)
            if report.valid:
                mx = await self.gate.verify_email_domain(data.email)
                if not mx.valid:
                    errors.append(FieldError("email", mx.reason or "Email domain cannot receive mail"))
            if errors:
                log_security_event(
                    "validation_failed",
                    {"identifier": identifier, "errors": [e.message for e in errors]},
                )
                raise ValidationFailed(errors)

            stage = self._advance(DispatchStage.SANITIZE, identifier)
            clean = self.gate.sanitize(data)
            subject = build_subject(clean)
            html_body = build_html_email(clean)
            text_body = build_text_email(clean)

            stage = self._advance(DispatchStage.SECURITY_SCAN, identifier)
            check = self.gate.perform_security_check(
                self.sender, subject, html_body, text_body, client_ip=client_identifier
            )
            if not check.passed:
                raise SecurityCheckFailed(
                    threats=check.threats,
                    spf_reason=None if check.spf_result.valid else check.spf_result.reason,
                )

            stage = self._advance(DispatchStage.TRANSPORT_SEND, identifier)
            transport = self._resolve_transport()
            message = OutboundMessage(
                sender=self.sender,
                recipient=self.recipient,
                reply_to=clean.email,
                subject=subject,
                text=text_body,
                html=html_body,
                headers={
                    **check.security_headers,
                    "X-Contact-Email": clean.email,
                    "X-Mailer": MAILER_NAME,
                    "X-Application": APPLICATION_NAME,
                    "X-Security-Level": "High",
                    "X-Anti-Abuse": f"Report to: {self.gate.abuse_contact}",
                },
            )
            message_id = await transport.send(message)
        except TransportError as e:
            context = getattr(self._transport, "describe", lambda: {})()
            logger.error(
                "Contact email transport failed kind=%s identifier=%s transport=%s at=%s",
                e.kind,
                identifier,
                context,
                datetime.now(timezone.utc).isoformat(),
            )
            raise
        except (RateLimitExceeded, ValidationFailed, SecurityCheckFailed) as e:
            logger.info(
                "Contact email %s at %s for %s: %s",
                DispatchStage.REJECTED.value,
                stage.value,
                identifier,
                e,
            )
            raise

        self._advance(DispatchStage.LOGGED, identifier)
        logger.info(
            "Contact email sent message_id=%s to=%s timestamp=%s",
            message_id,
            self.recipient,
            datetime.now(timezone.utc).isoformat(),
        )
        return SendResult(
            message_id=message_id,
            recipient=self.recipient,
            security_info=SecurityInfo(security_check=check),
        )
