from __future__ import annotations

import dns.exception
import dns.resolver
import pytest

from mailguard.services import content_security
from mailguard.services.content_security import ContentSecurityGate, sanitize_string
from tests.conftest import contact_data


# ===========================================================================
# Sanitization
# ===========================================================================


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("  Jane Doe  ", "Jane Doe"),
        ("<b>Acme</b>", "bAcme/b"),
        ("<script>alert(1)</script>", "scriptalert(1)/script"),
        ("javascript:alert(1)", "alert(1)"),
        ("JaVaScRiPt:alert(1)", "alert(1)"),
        ('img onerror = "x"', 'img  "x"'),
    ],
)
def test_sanitize_string(raw: str, expected: str):
    assert sanitize_string(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "javajavascript:script:alert(1)",
        "oonclick=nclick=x",
        "<<>>< >",
        "  " + "a" * 1500 + "  ",
        "a" * 999 + " <b",
        "hello onload= world",
        "java<script:x",
        "",
    ],
)
def test_sanitize_is_idempotent(raw: str):
    once = sanitize_string(raw)
    assert sanitize_string(once) == once
    assert "<" not in once and ">" not in once
    assert "javascript:" not in once.lower()


def test_sanitize_truncates():
    assert len(sanitize_string("a" * 5000)) == 1000
    assert len(sanitize_string("a" * 5000, max_length=10)) == 10


def test_gate_sanitize_normalizes_fields(gate: ContentSecurityGate):
    data = contact_data(
        name=" <i>Jane</i> ",
        email="  Jane.Doe@ACME.io ",
        message="Hi " + "m" * 5000,
        company="x" * 2000,
    )
    clean = gate.sanitize(data)
    assert clean.name == "iJane/i"
    assert clean.email == "jane.doe@acme.io"
    assert len(clean.message) == 5003
    assert len(clean.company) == 1000


# ===========================================================================
# Validation
# ===========================================================================


def test_valid_submission_passes(gate: ContentSecurityGate):
    report = gate.validate(contact_data())
    assert report.valid is True
    assert report.errors == []


def test_missing_required_fields_are_all_reported(gate: ContentSecurityGate):
    report = gate.validate(contact_data(name="", email="  ", message=""))
    assert report.valid is False
    assert report.messages == [
        "Name is required",
        "Email is required",
        "Message is required",
    ]


def test_long_message_flags_only_message(gate: ContentSecurityGate):
    report = gate.validate(contact_data(message="x" * 10_001))
    assert report.valid is False
    assert [e.field for e in report.errors] == ["message"]
    assert report.messages == ["Message too long (max 10000 characters)"]


def test_length_limits(gate: ContentSecurityGate):
    report = gate.validate(
        contact_data(name="n" * 101, company="c" * 101, subject="s" * 201)
    )
    assert report.messages == [
        "Name too long (max 100 characters)",
        "Company name too long (max 100 characters)",
        "Subject too long (max 200 characters)",
    ]


@pytest.mark.parametrize(
    "email",
    [
        "not-an-email",
        "a@b",
        "a b@c.io",
        "@acme.io",
        "foo,bar@evil.com",
        "jane@acme.io,victim@evil.com",
        "Jane <jane@acme.io>",
        "jane;x@acme.io",
    ],
)
def test_invalid_email_format(gate: ContentSecurityGate, email: str):
    report = gate.validate(contact_data(email=email))
    assert "Invalid email format" in report.messages


def test_suspicious_words_only_rejected_in_strict_mode():
    data = contact_data(company="Test Kitchen", message="This is an example request for a quote.")

    lenient = ContentSecurityGate(allowed_domains=["softwarepros.org"])
    assert lenient.validate(data).valid is True

    strict = ContentSecurityGate(allowed_domains=["softwarepros.org"], strict=True)
    report = strict.validate(data)
    assert report.valid is False
    assert report.messages == [
        "Company name contains suspicious content",
        "Message contains suspicious content",
    ]


# ===========================================================================
# Content scan
# ===========================================================================


def test_script_tag_is_blocked(gate: ContentSecurityGate):
    result = gate.check_content("Hello", "<p>Hi</p><script>alert(1)</script>", "Hi")
    assert result.valid is False
    assert any("script tag" in threat for threat in result.threats)


def test_all_threats_are_collected(gate: ContentSecurityGate):
    html = '<iframe src="x"></iframe><form><input name="a"></form><a href="javascript:x">x</a>'
    result = gate.check_content("Hello", html, "")
    labels = {threat.rsplit(": ", 1)[-1] for threat in result.threats}
    assert {"iframe tag", "form tag", "input tag", "javascript URI"} <= labels


def test_inline_event_handler_is_blocked(gate: ContentSecurityGate):
    result = gate.check_content("Hello", '<img src="x" onerror="steal()">', "")
    assert "Blocked potentially executable content: inline event handler" in result.threats


def test_clean_content_passes(gate: ContentSecurityGate):
    result = gate.check_content(
        "Quote request",
        '<p>See <a href="https://acme.io/about">our site</a></p>',
        "See https://acme.io/about",
    )
    assert result.valid is True
    assert result.threats == []


def test_excessive_links(gate: ContentSecurityGate):
    html = "".join(f'<a href="https://acme.io/{i}">{i}</a>' for i in range(21))
    result = gate.check_content("Links", html, "")
    assert result.threats == ["Excessive links detected: 21 links"]

    html = "".join(f'<a href="https://acme.io/{i}">{i}</a>' for i in range(20))
    assert gate.check_content("Links", html, "").valid is True


def test_suspicious_url_in_text_body(gate: ContentSecurityGate):
    result = gate.check_content("Hello", "<p>Hi</p>", "Log in at http://phish-bank.io/login now")
    assert result.threats == ["Suspicious URL detected: http://phish-bank.io/login"]


def test_size_limit():
    gate = ContentSecurityGate(allowed_domains=["softwarepros.org"], max_email_size=100)
    result = gate.check_content("Big", "h" * 60, "t" * 50)
    assert result.threats == ["Email size 110 bytes exceeds limit of 100 bytes"]


def test_header_injection_in_subject(gate: ContentSecurityGate):
    result = gate.check_content("Hello\r\nBcc: victim@acme.io", "<p>Hi</p>", "Hi")
    assert "Header injection attempt in subject" in result.threats


# ===========================================================================
# Sender policy and combined check
# ===========================================================================


@pytest.mark.parametrize(
    "domain, allowed",
    [
        ("softwarepros.org", True),
        ("SoftwarePros.org", True),
        ("mail.softwarepros.org", True),
        ("evilsoftwarepros.org", False),
        ("softwarepros.org.evil.io", False),
        ("", False),
    ],
)
def test_sender_policy(gate: ContentSecurityGate, domain: str, allowed: bool):
    assert gate.check_sender_policy(domain).valid is allowed


def test_sender_policy_allowed_ip():
    gate = ContentSecurityGate(allowed_domains=["softwarepros.org"], allowed_ips=["192.0.2.10"])
    assert gate.check_sender_policy("elsewhere.io", "192.0.2.10").valid is True
    result = gate.check_sender_policy("elsewhere.io", "192.0.2.11")
    assert result.valid is False
    assert result.reason == "Domain elsewhere.io is not an allowed sender"


def test_generate_security_headers(gate: ContentSecurityGate):
    headers = gate.generate_security_headers("203.0.113.5")
    assert headers["X-Client-IP"] == "203.0.113.5"
    assert headers["X-Originating-IP"] == "203.0.113.5"
    assert headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Security-Timestamp" in headers

    assert "X-Client-IP" not in gate.generate_security_headers("jane.doe@acme.io")
    assert "X-Client-IP" not in gate.generate_security_headers(None)


def test_perform_security_check_passes(gate: ContentSecurityGate):
    result = gate.perform_security_check(
        "no-reply@softwarepros.org", "Hello", "<p>Hi</p>", "Hi", client_ip="203.0.113.5"
    )
    assert result.passed is True
    assert result.spf_result.valid is True
    assert result.security_headers["X-Client-IP"] == "203.0.113.5"


def test_perform_security_check_rejects_sender_first(gate: ContentSecurityGate):
    result = gate.perform_security_check(
        "no-reply@evil.io", "Hello", "<script>x</script>", "Hi"
    )
    assert result.passed is False
    assert result.reason == "Domain evil.io is not an allowed sender"
    assert result.threats == []
    assert result.security_headers == {}


def test_perform_security_check_reports_threats(gate: ContentSecurityGate):
    result = gate.perform_security_check(
        "no-reply@softwarepros.org", "Hello", "<script>x</script>", "Hi"
    )
    assert result.passed is False
    assert result.reason == "Content security threats detected"
    assert result.threats == ["Blocked potentially executable content: script tag"]
    assert result.security_headers == {}


# ===========================================================================
# MX verification
# ===========================================================================


def _resolver_raising(error: Exception):
    class FakeResolver:
        def __init__(self) -> None:
            self.lifetime = None

        async def resolve(self, domain: str, rdtype: str):
            raise error

    return FakeResolver


@pytest.mark.asyncio
async def test_mx_check_disabled_by_default(gate: ContentSecurityGate):
    result = await gate.verify_email_domain("someone@no-such-domain.invalid")
    assert result.valid is True


@pytest.mark.asyncio
async def test_mx_check_fails_open_on_timeout(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        content_security.dns.asyncresolver, "Resolver", _resolver_raising(dns.exception.Timeout())
    )
    gate = ContentSecurityGate(allowed_domains=["softwarepros.org"], dns_check_enabled=True)
    assert (await gate.verify_email_domain("jane@acme.io")).valid is True


@pytest.mark.asyncio
async def test_mx_check_rejects_missing_domain(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        content_security.dns.asyncresolver, "Resolver", _resolver_raising(dns.resolver.NXDOMAIN())
    )
    gate = ContentSecurityGate(allowed_domains=["softwarepros.org"], dns_check_enabled=True)
    result = await gate.verify_email_domain("jane@nowhere-at-all.io")
    assert result.valid is False
    assert result.reason == "Email domain nowhere-at-all.io does not exist"


@pytest.mark.asyncio
async def test_mx_check_accepts_answer(monkeypatch: pytest.MonkeyPatch):
    class FakeResolver:
        lifetime = None

        async def resolve(self, domain: str, rdtype: str):
            assert (domain, rdtype) == ("acme.io", "MX")
            return ["10 mx.acme.io."]

    monkeypatch.setattr(content_security.dns.asyncresolver, "Resolver", FakeResolver)
    gate = ContentSecurityGate(allowed_domains=["softwarepros.org"], dns_check_enabled=True)
    assert (await gate.verify_email_domain("jane@ACME.io")).valid is True
