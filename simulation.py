#!/usr/bin/env python3
"""Talent Escrow — End-to-End Simulation.

Runs five scenarios against a throwaway SQLite database and the simulated
payment provider:

    Scenario A: Accept
        - Company offers $10,000, talent accepts -> fee $1,500 / net $8,500

    Scenario B: Counter-offer
        - $10,000 offer countered at $12,000 -> new pending row, fee $1,800,
          original offer `countered`, 48h clock restarted

    Scenario C: Duplicate webhook
        - Hold placed (async provider), charge.succeeded delivered twice
          -> payment `held` once, engagement `active` once

    Scenario D: Unverified release
        - Engagement completed without verification -> release() refused,
          no provider call made

    Scenario E: Expiry race
        - Offer created at T0, sweeper runs at T0+49h and expires it,
          an accept right after fails with ExpiredError

Usage:
    uv run python simulation.py
    uv run python simulation.py --scenario C
"""

from __future__ import annotations

import argparse
import asyncio
import json
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from talent_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from talent_escrow.config import Settings  # noqa: E402
from talent_escrow.domain.enums import EntityType, RefundReason  # noqa: E402
from talent_escrow.domain.exceptions import ConflictError, ExpiredError  # noqa: E402
from talent_escrow.domain.offer_actions import (  # noqa: E402
    AcceptAction,
    CounterAction,
    CounterOfferTerms,
)
from talent_escrow.infrastructure.database.engine import (  # noqa: E402
    build_engine,
    build_session_factory,
    create_tables,
)
from talent_escrow.infrastructure.database.repositories import AuditRepository  # noqa: E402
from talent_escrow.infrastructure.payment_provider import (  # noqa: E402
    SimulatedPaymentProviderClient,
    compute_webhook_signature,
)
from talent_escrow.services import (  # noqa: E402
    EngagementService,
    EscrowService,
    ExpirationSweeper,
    LoggingNotificationService,
    OfferService,
    WebhookService,
)

SETTINGS = Settings(provider_backoff_initial_seconds=0.05, provider_backoff_max_seconds=0.2)
NOTIFIER = LoggingNotificationService()


@dataclass
class SimulationClock:
    """Wall clock that scenarios can move forward."""

    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class Marketplace:
    """Wires the services against one database, the way the API does per request."""

    def __init__(self, session_factory, provider: SimulatedPaymentProviderClient, clock=None) -> None:  # noqa: ANN001
        self.session_factory = session_factory
        self.provider = provider
        self.clock = clock or SimulationClock()

    def offers(self, session) -> OfferService:  # noqa: ANN001
        return OfferService(session, self.provider, NOTIFIER, SETTINGS, clock=self.clock)

    def escrow(self, session) -> EscrowService:  # noqa: ANN001
        return EscrowService(session, self.provider, NOTIFIER, SETTINGS, clock=self.clock)

    def engagements(self, session) -> EngagementService:  # noqa: ANN001
        return EngagementService(session, NOTIFIER, SETTINGS, clock=self.clock)

    def webhooks(self, session) -> WebhookService:  # noqa: ANN001
        return WebhookService(session, self.provider, NOTIFIER, SETTINGS, clock=self.clock)


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(path: Path):  # noqa: ANN201
    engine = build_engine(f"sqlite+aiosqlite:///{path}")
    await create_tables(engine)
    logger.info("database.sqlite_initialized", path=str(path))
    return engine, build_session_factory(engine)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    print(f"\n--- {text} ---\n")


def check(condition: bool, message: str) -> None:
    print(f"  {'✅' if condition else '❌'} {message}")
    if not condition:
        raise AssertionError(message)


async def print_audit_trail(session, entity_type: EntityType, entity_id: uuid.UUID) -> None:  # noqa: ANN001
    events = await AuditRepository(session).get_for_entity(entity_type, entity_id)
    print(f"\n  📜 Audit Trail ({entity_type.value}):")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "∅"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_status} (by {evt.actor})")
    print()


def new_pair() -> dict:
    return {
        "request_id": f"req_{uuid.uuid4().hex[:8]}",
        "talent_profile_id": f"talent_{uuid.uuid4().hex[:8]}",
        "company_id": f"company_{uuid.uuid4().hex[:8]}",
    }


def signed_event(event_type: str, obj: dict, event_id: str) -> tuple[bytes, str]:
    payload = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()
    return payload, compute_webhook_signature(payload, SETTINGS.payment_webhook_secret)


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_a(market: Marketplace) -> None:
    banner("SCENARIO A: $10,000 offer accepted")
    async with market.session_factory() as session:
        svc = market.offers(session)
        offer = await svc.create_offer(rate=Decimal("10000"), **new_pair())
        result = await svc.respond(offer.id, AcceptAction(payment_method_ref="pm_card_visa"))

        check(result.offer.status == "accepted", "offer accepted")
        check(result.engagement.platform_fee == Decimal("1500.00"), "platform fee $1,500")
        check(result.engagement.provider_amount == Decimal("8500.00"), "talent net $8,500")
        check(result.escrow_payment is not None and result.escrow_payment.status == "held", "funds held")
        check(result.engagement.status == "active", "engagement active")

        section("Complete, verify, release")
        engagement_id = result.engagement.id
        await market.engagements(session).complete(engagement_id, verified=True, approved_by="company")
        payment = await market.escrow(session).release(engagement_id)
        check(payment.status == "released", "payment released to talent")
        await print_audit_trail(session, EntityType.ESCROW_PAYMENT, payment.id)


async def scenario_b(market: Marketplace) -> None:
    banner("SCENARIO B: $10,000 offer countered at $12,000")
    async with market.session_factory() as session:
        svc = market.offers(session)
        offer = await svc.create_offer(rate=Decimal("10000"), **new_pair())
        market.clock.advance(hours=6)
        result = await svc.respond(
            offer.id,
            CounterAction(CounterOfferTerms(rate=Decimal("12000"), reason="Scope grew")),
        )
        counter = result.counter_offer

        check(result.offer.status == "countered", "original offer countered")
        check(counter.status == "pending", "counter-offer pending")
        check(counter.counter_of == offer.id, "counter linked to original")
        check(counter.platform_fee == Decimal("1800.00"), "fee recomputed to $1,800")
        check(counter.provider_amount == Decimal("10200.00"), "net recomputed to $10,200")
        restarted = market.clock() + timedelta(hours=SETTINGS.offer_expiration_hours)
        check(counter.expires_at.replace(tzinfo=timezone.utc) == restarted, "48h clock restarted")

        chain = await svc.get_counter_chain(counter.id)
        print(f"  Chain: {' → '.join(f'{o.rate} ({o.status})' for o in chain)}")


async def scenario_c(market: Marketplace) -> None:
    banner("SCENARIO C: charge.succeeded delivered twice")
    market.provider.confirm_synchronously = False
    try:
        async with market.session_factory() as session:
            svc = market.offers(session)
            offer = await svc.create_offer(rate=Decimal("5000"), **new_pair())
            result = await svc.respond(offer.id, AcceptAction())
            engagement_id = result.engagement.id

            payment = await market.escrow(session).create_hold(engagement_id, "pm_card_visa")
            check(payment.status == "pending", "hold pending until webhook")

        payload, signature = signed_event(
            "charge.succeeded",
            {"id": payment.provider_charge_ref, "metadata": {"payment_id": str(payment.id)}},
            event_id=f"evt_{uuid.uuid4().hex[:16]}",
        )
        outcomes = []
        for _ in range(2):
            async with market.session_factory() as session:
                outcomes.append(await market.webhooks(session).handle(payload, signature))
        print(f"  Outcomes: {[o.value for o in outcomes]}")
        check([o.value for o in outcomes] == ["processed", "duplicate"], "second delivery deduplicated")

        async with market.session_factory() as session:
            payment = await market.escrow(session).get_payment(engagement_id)
            engagement = await market.engagements(session).get_engagement(engagement_id)
            check(payment.status == "held", "payment held")
            check(engagement.status == "active", "engagement active")
            await print_audit_trail(session, EntityType.ESCROW_PAYMENT, payment.id)
    finally:
        market.provider.confirm_synchronously = True


async def scenario_d(market: Marketplace) -> None:
    banner("SCENARIO D: release without verified completion")
    async with market.session_factory() as session:
        svc = market.offers(session)
        offer = await svc.create_offer(rate=Decimal("2500"), **new_pair())
        result = await svc.respond(offer.id, AcceptAction(payment_method_ref="pm_card_visa"))
        engagement_id = result.engagement.id
        await market.engagements(session).complete(engagement_id, verified=False)

        calls_before = len(market.provider.calls)
        try:
            await market.escrow(session).release(engagement_id)
        except ConflictError as exc:
            print(f"  Refused: {exc.message}")
            check(True, "release rejected with ConflictError")
        else:
            check(False, "release rejected with ConflictError")
        check(len(market.provider.calls) == calls_before, "no provider call made")

        section("Refund instead")
        payment = await market.escrow(session).refund(engagement_id, RefundReason.MUTUAL_AGREEMENT)
        check(payment.status == "refunded", "funds returned to company")


async def scenario_e(market: Marketplace) -> None:
    banner("SCENARIO E: sweeper expires, late accept fails")
    t0 = market.clock()
    async with market.session_factory() as session:
        offer = await market.offers(session).create_offer(rate=Decimal("8000"), **new_pair())

    market.clock.advance(hours=49)
    sweeper = ExpirationSweeper(market.session_factory, NOTIFIER, SETTINGS, clock=market.clock)
    result = await sweeper.sweep_once()
    print(f"  Sweep at T0+49h: scanned={result.scanned} expired={result.expired}")
    check(result.expired >= 1, "sweeper expired the offer")

    market.clock.advance(seconds=1)
    async with market.session_factory() as session:
        try:
            await market.offers(session).respond(offer.id, AcceptAction())
        except ExpiredError as exc:
            check(True, f"late accept refused: {exc.code}")
        else:
            check(False, "late accept refused")
        current = await market.offers(session).get_offer(offer.id)
        check(current.status == "expired", f"offer expired (created {t0:%H:%M} UTC)")


SCENARIOS = {
    "A": scenario_a,
    "B": scenario_b,
    "C": scenario_c,
    "D": scenario_d,
    "E": scenario_e,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(selected: list[str]) -> None:
    with tempfile.TemporaryDirectory() as tmp:
        engine, session_factory = await init_database(Path(tmp) / "simulation.db")
        market = Marketplace(session_factory, SimulatedPaymentProviderClient())
        try:
            print("\n" + "🚀" * 35)
            print("  TALENT ESCROW — SIMULATION")
            print("  Database: SQLite (temporary file), provider: simulated")
            print("🚀" * 35 + "\n")

            for name in selected:
                await SCENARIOS[name](market)

            print("\n" + "=" * 70)
            print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
            print("=" * 70 + "\n")
        finally:
            await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Talent Escrow Simulation")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        help="Run a single scenario (A-E). Default: run all.",
    )
    args = parser.parse_args()
    asyncio.run(run([args.scenario] if args.scenario else sorted(SCENARIOS)))
