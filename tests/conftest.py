"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database per test (schema created from the models)
- Actors for every role, a frozen clock and a recording observer
- Scriptable delivery provider and a TTL-aware Redis double
- HTTPX AsyncClient over the ASGI app with the database overridden
"""
import asyncio
import os
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator, Generator

# Settings are read at import time; keep tests off real services
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SENTRY_DSN", "")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from concierge.core.deps import get_db
from concierge.core.permissions import Actor
from concierge.core.rate_limit import limiter
from concierge.db.base import Base
from concierge.db.enums import DeliveryMethod, Role
from concierge.db.models import User
from concierge.main import app
from concierge.services.delivery_providers import DeliveryMessage, ProviderResult
from concierge.services.queue_producer import QueueProducer
from concierge.services.workflow_service import DeliveryDetails, WorkflowEngine


# =============================================================================
# Test doubles
# =============================================================================

class FakeClock:
    """Frozen clock; tests move it explicitly."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 9, 30, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []
        self.exceptions: list[tuple[BaseException, dict]] = []

    def event(self, name: str, **fields) -> None:
        self.events.append((name, fields))

    def exception(self, exc: BaseException, **fields) -> None:
        self.exceptions.append((exc, fields))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class FakeProvider:
    """
    Delivery provider driven by a script of outcomes.

    Each entry is a ProviderResult, an error string (failure), an exception
    instance (raised) or None (success). An empty script means success.
    """

    name = "fake"

    def __init__(self, *script, delay: float = 0.0) -> None:
        self.script = list(script)
        self.delay = delay
        self.sent: list[DeliveryMessage] = []

    async def send(self, message: DeliveryMessage) -> ProviderResult:
        self.sent.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.script.pop(0) if self.script else None
        if isinstance(outcome, ProviderResult):
            return outcome
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return ProviderResult(success=False, error=outcome, provider=self.name)
        return ProviderResult(
            success=True, external_id=f"fake-{len(self.sent)}", provider=self.name
        )


class FakeRedis:
    """The subset of redis.Redis used by the lock service, with PX expiry."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.store: dict[str, tuple[str, datetime | None]] = {}

    def _live(self, key: str):
        item = self.store.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self.clock() >= expires_at:
            del self.store[key]
            return None
        return value

    def get(self, key: str):
        return self._live(key)

    def set(self, key, value, nx=False, xx=False, px=None):
        exists = self._live(key) is not None
        if (nx and exists) or (xx and not exists):
            return None
        expires_at = self.clock() + timedelta(milliseconds=px) if px else None
        self.store[key] = (value, expires_at)
        return True

    def delete(self, *keys) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def eval(self, script, numkeys, *keys_and_args):
        """Only the lock release script (compare-and-delete) is supported."""
        (key,), (expected,) = keys_and_args[:numkeys], keys_and_args[numkeys:]
        if self._live(key) != expected:
            return 0
        return self.delete(key)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(db_engine) -> Generator[Session, None, None]:
    session = sessionmaker(bind=db_engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    return FakeRedis(clock)


def make_user(db: Session, role: Role, email: str | None = None) -> Actor:
    user = User(
        id=uuid.uuid4(),
        email=email or f"{role.value}-{uuid.uuid4().hex[:8]}@clinic.test",
        display_name=f"Test {role.value.title()}",
        role=role.value,
    )
    db.add(user)
    db.commit()
    return Actor(user_id=user.id, role=role, email=user.email)


@pytest.fixture
def staff(db) -> Actor:
    return make_user(db, Role.STAFF)


@pytest.fixture
def reviewer(db) -> Actor:
    return make_user(db, Role.REVIEWER)


@pytest.fixture
def doctor(db) -> Actor:
    return make_user(db, Role.DOCTOR)


@pytest.fixture
def auditor(db) -> Actor:
    return make_user(db, Role.AUDITOR)


@pytest.fixture
def admin(db) -> Actor:
    return make_user(db, Role.ADMIN)


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def producer(db, clock, observer) -> QueueProducer:
    return QueueProducer(db, clock=clock, observer=observer)


@pytest.fixture
def workflow(db, clock, observer, producer) -> WorkflowEngine:
    return WorkflowEngine(db, producer=producer, clock=clock, observer=observer)


EMAIL_DELIVERY = DeliveryDetails(method=DeliveryMethod.EMAIL, recipient_email="jane.doe@example.com")
SMS_DELIVERY = DeliveryDetails(method=DeliveryMethod.SMS, recipient_phone="+15555550123")

DRAFT_TEXT = "Hello Jane, your lab results are back and everything looks normal."


@pytest.fixture
def draft(workflow, staff):
    return workflow.record_draft(
        staff,
        patient_name="Jane Doe",
        request_text="Tell Jane her labs are normal",
        generated_draft=DRAFT_TEXT,
        ai_model="draft-model-1",
        tokens_consumed=120,
    )


@pytest.fixture
def pending(workflow, staff, draft):
    return workflow.submit_for_review(
        staff, draft.id, final_message=DRAFT_TEXT, delivery=EMAIL_DELIVERY
    )


@pytest.fixture
def sent_message(workflow, reviewer, pending):
    """Approved email message with its queue entry and delivery job."""
    return workflow.review(reviewer, pending.id, "approve", reviewer_notes="ok")


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient for the webhook endpoints."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    limiter.reset()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
