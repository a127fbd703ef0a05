from __future__ import annotations

import ipaddress
import logging
import re
from datetime import datetime, timezone
from typing import Optional

import dns.asyncresolver
import dns.exception
import dns.resolver

from mailguard.config import Settings
from mailguard.errors import FieldError
from mailguard.middleware.audit import log_security_event
from mailguard.schemas.contact import REQUIRED_FIELDS, ContactEmailData
from mailguard.schemas.security import (
    ContentScanResult,
    SecurityCheckResult,
    SpfResult,
    ValidationReport,
)

logger = logging.getLogger(__name__)

# No address-list or display-name characters; the address is copied into Reply-To
_ADDRESS_CHARS = r"[^\s@,;:<>()\[\]\\\"]+"
EMAIL_PATTERN = re.compile(rf"{_ADDRESS_CHARS}@{_ADDRESS_CHARS}\.{_ADDRESS_CHARS}")
SUSPICIOUS_PATTERN = re.compile(r"(spam|test|example|fake|invalid)", re.IGNORECASE)

# Characters and fragments that are removed from every untrusted field
UNSAFE_INPUT = re.compile(r"[<>]|javascript:|on\w+\s*=", re.IGNORECASE)
MAX_FIELD_LENGTH = 1000

FIELD_LABELS = {
    "name": "Name",
    "email": "Email",
    "message": "Message",
    "company": "Company name",
    "subject": "Subject",
    "service_type": "Service type",
}

# Executable-content patterns checked against rendered HTML
EXECUTABLE_PATTERNS = {
    "script tag": re.compile(r"<script", re.IGNORECASE),
    "javascript URI": re.compile(r"javascript:", re.IGNORECASE),
    "vbscript URI": re.compile(r"vbscript:", re.IGNORECASE),
    "inline event handler": re.compile(r"on\w+\s*=", re.IGNORECASE),
    "iframe tag": re.compile(r"<iframe", re.IGNORECASE),
    "object tag": re.compile(r"<object", re.IGNORECASE),
    "embed tag": re.compile(r"<embed", re.IGNORECASE),
    "applet tag": re.compile(r"<applet", re.IGNORECASE),
    "form tag": re.compile(r"<form", re.IGNORECASE),
    "input tag": re.compile(r"<input", re.IGNORECASE),
    "meta tag": re.compile(r"<meta", re.IGNORECASE),
    "link tag": re.compile(r"<link", re.IGNORECASE),
}
ANCHOR_PATTERN = re.compile(r"<a\s+href=", re.IGNORECASE)
URL_PATTERN = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
SUSPICIOUS_URL_MARKERS = ("fake", "malware", "phish", "spam")


def sanitize_string(value: str, max_length: int = MAX_FIELD_LENGTH) -> str:
    """Strip markup, script URIs and inline handlers, then trim and truncate.

    Removal repeats until nothing matches, so applying this twice gives the
    same result as applying it once.
    """
    cleaned = value
    while True:
        stripped = UNSAFE_INPUT.sub("", cleaned)
        if stripped == cleaned:
            break
        cleaned = stripped
    return cleaned.strip()[:max_length].rstrip()


class ContentSecurityGate:
    """Validation, sanitization and content scanning for outbound contact email."""

    def __init__(
        self,
        allowed_domains: list[str],
        allowed_ips: Optional[list[str]] = None,
        max_email_size: int = 10 * 1024 * 1024,
        max_links: int = 20,
        strict: bool = False,
        max_name_length: int = 100,
        max_company_length: int = 100,
        max_subject_length: int = 200,
        max_message_length: int = 10000,
        dns_check_enabled: bool = False,
        dns_timeout: float = 3.0,
        abuse_contact: str = "security@softwarepros.org",
    ) -> None:
        self.allowed_domains = [d.lower().lstrip(".") for d in allowed_domains]
        self.allowed_ips = set(allowed_ips or [])
        self.max_email_size = max_email_size
        self.max_links = max_links
        self.strict = strict
        self.max_lengths = {
            "name": max_name_length,
            "company": max_company_length,
            "subject": max_subject_length,
            "message": max_message_length,
        }
        self.dns_check_enabled = dns_check_enabled
        self.dns_timeout = dns_timeout
        self.abuse_contact = abuse_contact

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContentSecurityGate":
        return cls(
            allowed_domains=settings.allowed_sender_domains,
            allowed_ips=settings.allowed_sender_ips,
            max_email_size=settings.max_email_size_bytes,
            max_links=settings.max_email_links,
            strict=settings.strict_content_checks,
            dns_check_enabled=settings.email_dns_check_enabled,
            dns_timeout=settings.dns_timeout_seconds,
            abuse_contact=settings.abuse_contact,
        )

    # ------------------------------------------------------------------
    # Input validation and sanitization
    # ------------------------------------------------------------------

    def validate(self, data: ContactEmailData) -> ValidationReport:
        """Check required fields, lengths, email format and, in strict mode, spam words."""
        errors: list[FieldError] = []

        for field in REQUIRED_FIELDS:
            if not getattr(data, field).strip():
                errors.append(FieldError(field, f"{FIELD_LABELS[field]} is required"))

        for field, limit in self.max_lengths.items():
            if len(getattr(data, field)) > limit:
                errors.append(
                    FieldError(field, f"{FIELD_LABELS[field]} too long (max {limit} characters)")
                )

        email = data.email.strip()
        if email and not EMAIL_PATTERN.fullmatch(email):
            errors.append(FieldError("email", "Invalid email format"))

        if self.strict:
            for field in ("name", "company", "message"):
                value = getattr(data, field)
                if value and SUSPICIOUS_PATTERN.search(value):
                    errors.append(
                        FieldError(field, f"{FIELD_LABELS[field]} contains suspicious content")
                    )

        return ValidationReport(valid=not errors, errors=errors)

    def sanitize(self, data: ContactEmailData) -> ContactEmailData:
        values = {}
        for field, value in data.model_dump().items():
            if field == "email":
                values[field] = value.lower().strip()
            elif field == "message":
                values[field] = sanitize_string(value, self.max_lengths["message"])
            else:
                values[field] = sanitize_string(value)
        return ContactEmailData(**values)

    async def verify_email_domain(self, email: str) -> SpfResult:
        """Best-effort MX lookup for the submitter's domain.

        Only a definitive DNS answer can reject; timeouts and resolver failures
        are treated as valid so a DNS outage never blocks a submission.
        """
        if not self.dns_check_enabled:
            return SpfResult(valid=True)
        domain = email.rsplit("@", 1)[-1].strip().lower()
        if not domain:
            return SpfResult(valid=False, reason="Email domain is missing")

        resolver = dns.asyncresolver.Resolver()
        resolver.lifetime = self.dns_timeout
        try:
            answers = await resolver.resolve(domain, "MX")
        except dns.resolver.NXDOMAIN:
            return SpfResult(valid=False, reason=f"Email domain {domain} does not exist")
        except dns.resolver.NoAnswer:
            return SpfResult(valid=False, reason=f"Email domain {domain} does not accept mail")
        except dns.exception.DNSException as e:
            logger.info("MX lookup for %s failed open: %s", domain, e)
            return SpfResult(valid=True)
        if not len(answers):
            return SpfResult(valid=False, reason=f"Email domain {domain} does not accept mail")
        return SpfResult(valid=True)

    # ------------------------------------------------------------------
    # Rendered content and sender policy
    # ------------------------------------------------------------------

    def check_content(self, subject: str, html: str, text: str) -> ContentScanResult:
        """Scan rendered bodies and collect every threat found."""
        threats: list[str] = []
        html = html or ""
        text = text or ""

        total_size = len(html.encode("utf-8")) + len(text.encode("utf-8"))
        if total_size > self.max_email_size:
            threats.append(
                f"Email size {total_size} bytes exceeds limit of {self.max_email_size} bytes"
            )

        if "\r" in (subject or "") or "\n" in (subject or ""):
            threats.append("Header injection attempt in subject")

        for label, pattern in EXECUTABLE_PATTERNS.items():
            if pattern.search(html):
                threats.append(f"Blocked potentially executable content: {label}")

        link_count = len(ANCHOR_PATTERN.findall(html))
        if link_count > self.max_links:
            threats.append(f"Excessive links detected: {link_count} links")

        for url in URL_PATTERN.findall(html + "\n" + text):
            lowered = url.lower()
            if any(marker in lowered for marker in SUSPICIOUS_URL_MARKERS):
                threats.append(f"Suspicious URL detected: {url}")

        return ContentScanResult(valid=not threats, threats=threats)

    def check_sender_policy(self, domain: str, source_ip: str = "") -> SpfResult:
        """Allow-list check of the sending domain; not a DNS-backed SPF evaluation."""
        domain = (domain or "").strip().lower().rstrip(".")
        if source_ip and source_ip in self.allowed_ips:
            return SpfResult(valid=True)
        for allowed in self.allowed_domains:
            if domain == allowed or domain.endswith("." + allowed):
                return SpfResult(valid=True)
        return SpfResult(valid=False, reason=f"Domain {domain or '<empty>'} is not an allowed sender")

    def generate_security_headers(self, client_ip: Optional[str] = None) -> dict[str, str]:
        headers = {
            "X-Security-Scan": "SoftwarePros Email Security v2.0",
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "X-XSS-Protection": "1; mode=block",
            "X-Report-Abuse": f"Report abuse to: {self.abuse_contact}",
        }
        if client_ip and _is_ip_address(client_ip):
            headers["X-Client-IP"] = client_ip
            headers["X-Originating-IP"] = client_ip
        headers["X-Security-Timestamp"] = datetime.now(timezone.utc).isoformat()
        return headers

    def perform_security_check(
        self,
        sender: str,
        subject: str,
        html: str,
        text: str,
        client_ip: Optional[str] = None,
    ) -> SecurityCheckResult:
        """Run sender policy, then the content scan, over one rendered message."""
        domain = sender.rsplit("@", 1)[-1] if "@" in sender else ""
        spf = self.check_sender_policy(domain, client_ip or "")
        if not spf.valid:
            log_security_event(
                "spf_failed",
                {"domain": domain, "client_ip": client_ip or "N/A", "reason": spf.reason},
            )
            return SecurityCheckResult(passed=False, reason=spf.reason, spf_result=spf)

        content = self.check_content(subject, html, text)
        if not content.valid:
            log_security_event(
                "content_threat",
                {"threats": ", ".join(content.threats), "subject": subject},
            )
            return SecurityCheckResult(
                passed=False,
                reason="Content security threats detected",
                threats=content.threats,
                spf_result=spf,
            )

        logger.info("Email security check passed domain=%s client_ip=%s", domain, client_ip)
        return SecurityCheckResult(
            passed=True,
            spf_result=spf,
            security_headers=self.generate_security_headers(client_ip),
        )


def _is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True
