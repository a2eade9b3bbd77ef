"""Shared test fixtures for the Talent Escrow test suite.

Provides:
    - A file-backed aiosqlite database per test (separate sessions really
      race on the same rows)
    - Services wired to the simulated payment provider
    - A recording notifier and a controllable clock
    - Factory helpers for offers, engagements and signed webhooks
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from talent_escrow.config import Settings
from talent_escrow.domain.offer_actions import AcceptAction
from talent_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_tables,
)
from talent_escrow.infrastructure.payment_provider import (
    SimulatedPaymentProviderClient,
    compute_webhook_signature,
)
from talent_escrow.services import (
    EngagementService,
    EscrowService,
    OfferService,
    WebhookService,
)

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
WEBHOOK_SECRET = "whsec_test"


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class FakeClock:
    now: datetime = T0

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class RecordingNotifier:
    """Collects notifications; set fail=True to make every call raise."""

    sent: list[tuple[str, list[str], dict]] = field(default_factory=list)
    fail: bool = False

    async def notify(self, event_type: str, recipient_ids: list[str], metadata: dict | None = None) -> None:
        if self.fail:
            raise RuntimeError("notification sink down")
        self.sent.append((event_type, list(recipient_ids), metadata or {}))

    def types(self) -> list[str]:
        return [event_type for event_type, _, _ in self.sent]


class FakePipeline:
    def __init__(self, store: dict, ttls: dict) -> None:
        self._store = store
        self._ttls = ttls
        self._ops: list = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._ops.clear()

    def incr(self, key: str) -> None:
        self._ops.append(("incr", key))

    def expire(self, key: str, seconds: int, nx: bool = False) -> None:
        self._ops.append(("expire", key, seconds, nx))

    async def execute(self) -> list:
        results = []
        for op in self._ops:
            if op[0] == "incr":
                self._store[op[1]] = self._store.get(op[1], 0) + 1
                results.append(self._store[op[1]])
            else:
                _, key, seconds, nx = op
                if nx and key in self._ttls:
                    results.append(False)
                else:
                    self._ttls[key] = seconds
                    results.append(True)
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for MULTI/EXEC pipelines."""

    def __init__(self) -> None:
        self.store: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.transactions: list[bool] = []

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        self.transactions.append(transaction)
        return FakePipeline(self.store, self.ttls)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        payment_webhook_secret=WEBHOOK_SECRET,
        provider_retry_max=3,
        provider_timeout_ms=2_000,
        provider_backoff_initial_seconds=0,
        provider_backoff_max_seconds=0,
        rate_limit_enabled=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider() -> SimulatedPaymentProviderClient:
    return SimulatedPaymentProviderClient(decline_methods={"pm_card_declined"})


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def offer_service(session, provider, notifier, settings, clock) -> OfferService:
    return OfferService(session, provider, notifier, settings, clock=clock)


@pytest.fixture
def escrow_service(session, provider, notifier, settings, clock) -> EscrowService:
    return EscrowService(session, provider, notifier, settings, clock=clock)


@pytest.fixture
def engagement_service(session, notifier, settings, clock) -> EngagementService:
    return EngagementService(session, notifier, settings, clock=clock)


@pytest.fixture
def webhook_service(session, provider, notifier, settings, clock) -> WebhookService:
    return WebhookService(session, provider, notifier, settings, clock=clock)


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


def offer_data(**overrides) -> dict:
    data = {
        "request_id": "req-1",
        "talent_profile_id": "talent-1",
        "company_id": "company-1",
        "rate": Decimal("10000"),
    }
    data.update(overrides)
    return data


@pytest_asyncio.fixture
async def pending_offer(offer_service):
    return await offer_service.create_offer(**offer_data())


@pytest_asyncio.fixture
async def staged_engagement(offer_service, pending_offer):
    """Accepted offer whose engagement has no payment yet."""
    result = await offer_service.respond(pending_offer.id, AcceptAction())
    return result.engagement


@pytest_asyncio.fixture
async def held_engagement(offer_service, pending_offer):
    """Accepted offer with a synchronously confirmed hold (engagement active)."""
    result = await offer_service.respond(
        pending_offer.id, AcceptAction(payment_method_ref="pm_card_visa")
    )
    assert result.escrow_payment is not None and result.escrow_payment.status == "held"
    return result.engagement


def webhook_body(event_type: str, obj: dict, event_id: str | None = "auto") -> bytes:
    envelope: dict = {"type": event_type, "data": {"object": obj}}
    if event_id == "auto":
        envelope["id"] = f"evt_{uuid.uuid4().hex}"
    elif event_id is not None:
        envelope["id"] = event_id
    return json.dumps(envelope).encode()


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    return compute_webhook_signature(payload, secret, timestamp)
