from __future__ import annotations

from dataclasses import dataclass


class MailguardError(Exception):
    """Base class for every error surfaced by the dispatch pipeline."""

    retryable = False


class PolicyRejection(MailguardError):
    """A request was refused by policy. Retrying the same request will not help."""


class RateLimitExceeded(PolicyRejection):
    def __init__(self, identifier: str, remaining: int, retry_after_ms: int) -> None:
        self.identifier = identifier
        self.remaining = remaining
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Rate limit exceeded. You can send {remaining} more emails. "
            "Please try again later."
        )

    @property
    def retry_after_seconds(self) -> int:
        return -(-self.retry_after_ms // 1000)


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class ValidationFailed(PolicyRejection):
    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        super().__init__(
            "Validation failed: " + ", ".join(error.message for error in self.errors)
        )

    @property
    def fields(self) -> set[str]:
        return {error.field for error in self.errors}


class SecurityCheckFailed(PolicyRejection):
    """Rendered content or sender policy failed the security scan.

    The message stays generic so it never describes which pattern tripped;
    ``threats`` and ``spf_reason`` keep the details for logging.
    """

    def __init__(
        self,
        threats: list[str] | None = None,
        spf_reason: str | None = None,
    ) -> None:
        self.threats = list(threats or [])
        self.spf_reason = spf_reason
        if spf_reason:
            public = "sender policy rejected the message"
        else:
            public = "content rejected for security reasons"
        super().__init__(f"Security check failed: {public}")


class TransportError(MailguardError):
    """The mail transport failed. Callers may retry with backoff."""

    retryable = True

    def __init__(self, message: str, kind: str = "smtp") -> None:
        self.kind = kind
        super().__init__(message)


class ConfigurationError(MailguardError):
    """Required configuration is missing; raised at startup or first use."""


class DecryptionError(MailguardError):
    """Ciphertext was malformed or failed authentication."""
