from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from mailguard.middleware.rate_limit import RateLimiter
from mailguard.services.mailer import ContactDispatcher


def get_client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def get_dispatcher(request: Request) -> ContactDispatcher:
    """Provide the dispatcher built by the app factory."""
    return request.app.state.dispatcher


def get_api_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.api_rate_limiter


async def enforce_api_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_api_rate_limiter),
) -> None:
    """Apply the general per-client API limit before any route runs."""
    identifier = get_client_ip(request) or "unknown"
    decision = await limiter.check(identifier)
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(-(-decision.retry_after_ms // 1000))},
        )
