from __future__ import annotations

import os

# Keep bcrypt cheap for the test run; must be set before mailguard is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from mailguard.config import Settings
from mailguard.main import create_app
from mailguard.middleware.rate_limit import RateLimiter
from mailguard.redis_client import RedisConnection
from mailguard.schemas.contact import ContactEmailData
from mailguard.services.content_security import ContentSecurityGate
from mailguard.services.mailer import ContactDispatcher, OutboundMessage


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def set(self, ms: float) -> None:
        self.now = ms


class RecordingTransport:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.sent: list[OutboundMessage] = []
        self.error = error

    async def send(self, message: OutboundMessage) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append(message)
        return f"<contact-{len(self.sent)}@softwarepros.org>"


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.ops: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return queue

    async def execute(self) -> list:
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.ops]


class FakeScript:
    """Runs the window record script against the fake's sorted sets."""

    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis

    async def __call__(self, keys, args) -> int:
        key = keys[0]
        now, window, limit = float(args[0]), int(args[1]), int(args[2])
        await self.redis.zremrangebyscore(key, 0, now - window)
        current = await self.redis.zcard(key)
        if current < limit:
            await self.redis.zadd(key, {args[3]: now})
            await self.redis.expire(key, int(args[4]))
        return current


class FakeRedis:
    """Just enough sorted-set behaviour to exercise the Redis window store."""

    def __init__(self) -> None:
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.scripts: list[str] = []

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def register_script(self, script: str) -> FakeScript:
        self.scripts.append(script)
        return FakeScript(self)

    async def zremrangebyscore(self, key, low, high) -> int:
        self._check()
        members = self.zsets.get(key, {})
        doomed = [m for m, score in members.items() if low <= score <= high]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def zcard(self, key) -> int:
        self._check()
        return len(self.zsets.get(key, {}))

    async def zadd(self, key, mapping) -> int:
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrange(self, key, start, end, withscores=False):
        self._check()
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        window = ordered[start:end + 1]
        if withscores:
            return [(member.encode(), score) for member, score in window]
        return [member.encode() for member, _ in window]

    async def expire(self, key, seconds) -> bool:
        self._check()
        self.ttls[key] = seconds
        return True

    async def ping(self) -> bool:
        self._check()
        return True


class FakeRedisConnection(RedisConnection):
    def __init__(self, client: FakeRedis) -> None:
        super().__init__("redis://fake:6379/0")
        self.client = client
        self.resets = 0

    def get(self) -> FakeRedis:
        return self.client

    async def reset(self) -> None:
        self.resets += 1


def make_settings(**overrides) -> Settings:
    values = {
        "app_env": "development",
        "redis_url": "",
        "smtp_host": "",
        "smtp_user": "",
        "smtp_password": "",
        "contact_email": "inbox@softwarepros.org",
        "contact_from_email": "no-reply@softwarepros.org",
        "allowed_sender_domains": ["softwarepros.org"],
        "email_dns_check_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def contact_data(**overrides) -> ContactEmailData:
    values = {
        "name": "Jane Doe",
        "email": "jane.doe@acme.io",
        "message": "We would like a quote for a patient intake portal.",
        "phone": "555-010-2000",
        "company": "Acme Clinics",
        "service_type": "Web Development",
        "budget": "$10k-$25k",
        "best_time_to_reach": "Mornings",
    }
    values.update(overrides)
    return ContactEmailData(**values)


def contact_payload(**overrides) -> dict:
    payload = {
        "name": "Jane Doe",
        "email": "jane.doe@acme.io",
        "phone": "555-010-2000",
        "company": "Acme Clinics",
        "service_type": "Web Development",
        "message": "We would like a quote for a patient intake portal.",
        "budget": "$10k-$25k",
        "best_time_to_reach": "Mornings",
        "website": "",
        "consent": True,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def gate() -> ContentSecurityGate:
    return ContentSecurityGate(allowed_domains=["softwarepros.org"])


@pytest.fixture
def dispatcher(clock: FakeClock, gate: ContentSecurityGate, transport: RecordingTransport):
    limiter = RateLimiter(window_ms=60_000, max_requests=3, clock=clock)
    return ContactDispatcher(
        rate_limiter=limiter,
        gate=gate,
        recipient="inbox@softwarepros.org",
        sender="no-reply@softwarepros.org",
        transport=transport,
    )


@pytest_asyncio.fixture
async def client(transport: RecordingTransport) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP test client over a freshly built app."""
    app = create_app(make_settings(email_rate_limit_max_requests=2), transport=transport)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
