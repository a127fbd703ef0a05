from __future__ import annotations

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

REDIS_URL_SCHEMES = ("redis://", "rediss://", "unix://")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        if v and not v.startswith(REDIS_URL_SCHEMES):
            raise ValueError(
                "REDIS_URL must start with one of " + ", ".join(REDIS_URL_SCHEMES)
            )
        return v

    @model_validator(mode="after")
    def validate_production_secrets(self) -> "Settings":
        """Fail fast if production is running without transport credentials."""
        if self.app_env == "production":
            if not (self.smtp_host and self.smtp_user and self.smtp_password):
                raise ValueError(
                    "SMTP_HOST, SMTP_USER and SMTP_PASSWORD must be set in production"
                )
            if not self.data_encryption_key:
                raise ValueError("DATA_ENCRYPTION_KEY must be set in production")
        return self

    # Redis (empty URL disables the durable rate-limit store)
    redis_url: str = ""
    redis_connect_timeout_seconds: float = 10.0
    redis_operation_timeout_seconds: float = 2.0

    # Rate limiting
    rate_limit_window_ms: int = 15 * 60 * 1000
    rate_limit_max_requests: int = 100
    email_rate_limit_window_ms: int = 60 * 60 * 1000
    email_rate_limit_max_requests: int = 10
    rate_limit_fail_closed: bool = False
    rate_limit_sweep_interval_seconds: float = 300.0

    # SMTP transport
    smtp_host: str = ""
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_secure: bool | None = None
    smtp_timeout_seconds: float = 45.0
    smtp_validate_certs: bool = True

    # Contact email routing
    contact_email: str = "contact@softwarepros.org"
    contact_from_email: str = "no-reply@softwarepros.org"
    contact_request_timeout_seconds: float = 50.0

    # Email security
    allowed_sender_domains: list[str] = ["softwarepros.org", "aquareefdirect.com"]
    allowed_sender_ips: list[str] = []
    max_email_size_bytes: int = 10 * 1024 * 1024
    max_email_links: int = 20
    email_dns_check_enabled: bool = False
    dns_timeout_seconds: float = 3.0
    abuse_contact: str = "security@softwarepros.org"

    # Credentials
    data_encryption_key: str = ""
    bcrypt_rounds: int = 12
    two_factor_issuer: str = "SoftwarePros"
    two_factor_window: int = 2
    backup_codes_count: int = 10
    suspicious_login_threshold: int = 3
    suspicious_login_window_seconds: int = 3600

    # App
    app_env: str = "development"
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000"

    @property
    def strict_content_checks(self) -> bool:
        return self.app_env == "production"


settings = Settings()
