from __future__ import annotations

import hashlib
import hmac
import math
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from passlib.context import CryptContext

from mailguard.config import settings

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds
)

MIN_PASSWORD_LENGTH = 12

COMMON_PASSWORDS = frozenset({
    "password",
    "password123",
    "123456",
    "123456789",
    "qwerty",
    "abc123",
    "password1",
    "admin",
    "letmein",
    "welcome",
    "monkey",
    "1234567890",
    "password12",
    "qwerty123",
    "admin123",
    "root123",
    "user123",
})

PASSWORD_RULES = [
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
    (
        re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]"),
        "Password must contain at least one special character",
    ),
]


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    errors: list[str] = field(default_factory=list)


SESSION_TOKEN_BYTES = 64
_TOKEN_SHAPE = re.compile(r"[a-f0-9]{%d}" % (SESSION_TOKEN_BYTES * 2))


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)


def validate_password_strength(password: str) -> PasswordCheck:
    """Check every password rule and return all violations."""
    errors: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    for pattern, message in PASSWORD_RULES:
        if not pattern.search(password):
            errors.append(message)
    if is_password_compromised(password):
        errors.append("Password is too common and easily guessable")
    return PasswordCheck(valid=not errors, errors=errors)


def is_password_compromised(password: str) -> bool:
    return password.lower() in COMMON_PASSWORDS


def calculate_password_entropy(password: str) -> float:
    """Rough strength score: ``log2(distinct_chars ** length)``.

    This only looks at the size of the character set actually used, so it is a
    heuristic for UI feedback and not a measure of real entropy.
    """
    distinct = len(set(password))
    if distinct == 0:
        return 0.0
    return len(password) * math.log2(distinct)


def get_password_strength_level(entropy: float) -> str:
    if entropy < 40:
        return "weak"
    if entropy < 60:
        return "fair"
    if entropy < 80:
        return "good"
    return "strong"


def generate_secure_token(length: int = 32) -> str:
    """Return ``length`` random bytes as hex."""
    return secrets.token_hex(length)


def generate_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


def generate_refresh_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


def is_valid_session_token(token: str) -> bool:
    return bool(_TOKEN_SHAPE.fullmatch(token))


def is_valid_refresh_token(token: str) -> bool:
    return bool(_TOKEN_SHAPE.fullmatch(token))


def generate_backup_codes(count: int = 10) -> list[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_codes(codes: list[str]) -> list[str]:
    return [pwd_context.hash(code) for code in codes]


def verify_backup_code(code: str, hashed_codes: list[str]) -> bool:
    """Check a candidate against every stored hash.

    All hashes are verified even after a match so the time taken does not
    reveal which code was used.
    """
    matched = False
    for hashed in hashed_codes:
        if pwd_context.verify(code, hashed):
            matched = True
    return matched


def create_hmac(data: str, key: str) -> str:
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_hmac(data: str, signature: str, key: str) -> bool:
    expected = create_hmac(data, key)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


@dataclass(frozen=True)
class LoginAttempt:
    email: str
    ip_address: str
    user_agent: str
    timestamp: datetime
    success: bool
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class SecurityEvent:
    """An auditable authentication event, ready to be persisted by the caller."""

    id: str
    type: str
    ip_address: str
    user_agent: str
    timestamp: str
    details: dict[str, Any]
    severity: str = "medium"
    user_id: Optional[str] = None
    email: Optional[str] = None
    resolved: bool = False


def detect_suspicious_login(
    email: str,
    ip_address: str,
    user_agent: str,
    previous_attempts: list[LoginAttempt],
    now: Optional[datetime] = None,
) -> bool:
    """Flag an account with too many failed logins inside the monitoring window.

    Only the failure count is considered; ``email``, ``ip_address`` and
    ``user_agent`` are accepted so callers can pass the attempt being judged.
    """
    now = now or datetime.now(timezone.utc)
    window_start = now - timedelta(seconds=settings.suspicious_login_window_seconds)
    failures = [
        attempt for attempt in previous_attempts
        if attempt.timestamp > window_start and not attempt.success
    ]
    return len(failures) >= settings.suspicious_login_threshold


def create_security_event(
    event_type: str,
    user_id: Optional[str],
    email: Optional[str],
    ip_address: str,
    user_agent: str,
    details: dict[str, Any],
    severity: str = "medium",
) -> SecurityEvent:
    return SecurityEvent(
        id=generate_secure_token(16),
        type=event_type,
        user_id=user_id,
        email=email,
        ip_address=ip_address,
        user_agent=user_agent,
        timestamp=datetime.now(timezone.utc).isoformat(),
        details=dict(details),
        severity=severity,
    )


def is_trusted_ip(ip_address: str, trusted_ips: list[str]) -> bool:
    return ip_address in trusted_ips
