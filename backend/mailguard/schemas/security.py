from __future__ import annotations

from pydantic import BaseModel, Field

from mailguard.errors import FieldError


class RateLimitDecision(BaseModel):
    model_config = {"frozen": True}

    allowed: bool
    remaining: int = Field(..., ge=0)
    retry_after_ms: int = Field(0, ge=0)


class SpfResult(BaseModel):
    model_config = {"frozen": True}

    valid: bool
    reason: str | None = None


class ContentScanResult(BaseModel):
    model_config = {"frozen": True}

    valid: bool
    threats: list[str] = []


class ValidationReport(BaseModel):
    model_config = {"frozen": True}

    valid: bool
    errors: list[FieldError] = []

    @property
    def messages(self) -> list[str]:
        return [error.message for error in self.errors]


class SecurityCheckResult(BaseModel):
    """Outcome of scanning one outbound message. Never mutated after creation."""

    model_config = {"frozen": True}

    passed: bool
    reason: str | None = None
    threats: list[str] = []
    spf_result: SpfResult
    security_headers: dict[str, str] = {}


class SecurityInfo(BaseModel):
    rate_limit_passed: bool = True
    input_validated: bool = True
    input_sanitized: bool = True
    secure_transport: bool = True
    security_check_passed: bool = True
    security_check: SecurityCheckResult


class SendResult(BaseModel):
    message_id: str
    recipient: str
    security_info: SecurityInfo
