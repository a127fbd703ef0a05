from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

EVENT_SEVERITY = {
    "rate_limit": "low",
    "validation_failed": "medium",
    "content_threat": "high",
    "spf_failed": "high",
    "transport_failed": "medium",
}


def log_security_event(event: str, details: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Log an email security event for monitoring and return the event record."""
    record = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "severity": EVENT_SEVERITY.get(event, "medium"),
        "details": details or {},
    }
    logger.warning(
        "Email security event %s severity=%s details=%s",
        record["event"],
        record["severity"],
        record["details"],
    )
    return record


def redact(value: Optional[str], keep: int = 2) -> str:
    """Mask a credential for logs, keeping only a short prefix."""
    if not value:
        return "<unset>"
    return value[:keep] + "***"
