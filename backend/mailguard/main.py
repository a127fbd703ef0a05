from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from mailguard.api.router import api_router
from mailguard.config import Settings, settings as default_settings
from mailguard.middleware.rate_limit import RateLimiter
from mailguard.redis_client import RedisConnection
from mailguard.services.mailer import ContactDispatcher, MailTransport

logging.basicConfig(
    level=getattr(logging, default_settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)

VERSION = "0.1.0"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    limiters = (app.state.email_rate_limiter, app.state.api_rate_limiter)
    for limiter in limiters:
        await limiter.open()
    try:
        yield
    finally:
        for limiter in limiters:
            await limiter.close()
        await app.state.redis.close()


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[MailTransport] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings
    app = FastAPI(
        title="Mailguard API",
        description="Rate limiting and content security for contact email",
        version=VERSION,
        docs_url="/api/docs" if settings.app_env == "development" else None,
        redoc_url="/api/redoc" if settings.app_env == "development" else None,
        lifespan=lifespan,
    )

    redis = RedisConnection.from_settings(settings)
    email_limiter = RateLimiter.from_settings(
        settings,
        redis,
        window_ms=settings.email_rate_limit_window_ms,
        max_requests=settings.email_rate_limit_max_requests,
    )
    app.state.settings = settings
    app.state.redis = redis
    app.state.email_rate_limiter = email_limiter
    app.state.api_rate_limiter = RateLimiter.from_settings(settings, redis)
    app.state.dispatcher = ContactDispatcher.from_settings(settings, email_limiter, transport)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins.split(","),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    app.include_router(api_router)

    @app.get("/api/v1/health")
    async def health_check():
        store = "redis" if await redis.ping() else "memory"
        return {"status": "healthy", "version": VERSION, "rate_limit_store": store}

    return app


app = create_app()
