from __future__ import annotations

from fastapi import APIRouter, Depends

from mailguard.api import contact
from mailguard.dependencies import enforce_api_rate_limit

api_router = APIRouter(prefix="/api/v1", dependencies=[Depends(enforce_api_rate_limit)])

api_router.include_router(contact.router)
