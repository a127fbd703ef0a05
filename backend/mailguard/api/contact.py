from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from mailguard.dependencies import get_client_ip, get_dispatcher
from mailguard.errors import (
    ConfigurationError,
    RateLimitExceeded,
    SecurityCheckFailed,
    TransportError,
    ValidationFailed,
)
from mailguard.schemas.contact import ContactRequest, ContactResponse
from mailguard.services.mailer import ContactDispatcher

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/contact", tags=["contact"])


@router.post("", response_model=ContactResponse)
async def submit_contact(
    body: ContactRequest,
    request: Request,
    dispatcher: ContactDispatcher = Depends(get_dispatcher),
    client_ip: Optional[str] = Depends(get_client_ip),
) -> ContactResponse:
    """Send a contact-form submission through the secure dispatch pipeline."""
    timeout = request.app.state.settings.contact_request_timeout_seconds
    try:
        result = await asyncio.wait_for(
            dispatcher.send_contact_email(body.to_email_data(), client_ip),
            timeout=timeout,
        )
    except RateLimitExceeded as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": str(e), "remaining": e.remaining},
            headers={"Retry-After": str(e.retry_after_seconds)},
        )
    except ValidationFailed as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Validation failed",
                "details": [{"field": err.field, "message": err.message} for err in e.errors],
            },
        )
    except SecurityCheckFailed as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": str(e)})
    except TransportError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Email service temporarily unavailable. Please try again later."},
        )
    except ConfigurationError:
        logger.exception("Contact email configuration error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Email configuration error. Please contact support."},
        )
    except asyncio.TimeoutError:
        logger.warning("Contact email timed out after %.0fs for %s", timeout, client_ip)
        raise HTTPException(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            detail={
                "error": "Request timeout. The email is likely being processed. "
                "Please wait a moment before trying again."
            },
        )

    return ContactResponse(message_id=result.message_id)
