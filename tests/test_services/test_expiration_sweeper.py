"""Tests for the expiration sweeper and its race with the respond path."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from conftest import offer_data

from talent_escrow.domain.enums import EntityType, EventType, NotificationType
from talent_escrow.domain.exceptions import ExpiredError
from talent_escrow.domain.offer_actions import AcceptAction
from talent_escrow.infrastructure.database.repositories import AuditRepository
from talent_escrow.services import ExpirationSweeper, OfferService, SweepResult
from talent_escrow.services.expiration_sweeper import SWEEP_JOB_ID


@pytest.fixture
def sweeper(session_factory, notifier, settings, clock) -> ExpirationSweeper:
    return ExpirationSweeper(session_factory, notifier=notifier, settings=settings, clock=clock)


@pytest.mark.asyncio
async def test_sweep_expires_overdue_offers_only(sweeper, offer_service, clock, notifier) -> None:
    overdue = await offer_service.create_offer(**offer_data())
    clock.advance(hours=10)
    live = await offer_service.create_offer(**offer_data(talent_profile_id="talent-2"))
    clock.advance(hours=39)

    result = await sweeper.sweep_once()

    assert result == SweepResult(scanned=1, expired=1)
    assert (await offer_service.get_offer(overdue.id)).status == "expired"
    assert (await offer_service.get_offer(live.id)).status == "pending"
    assert notifier.sent[-1] == (
        NotificationType.OFFER_EXPIRED,
        ["company-1", "talent-1"],
        {"offer_id": str(overdue.id)},
    )


@pytest.mark.asyncio
async def test_accept_after_sweep_is_rejected(sweeper, offer_service, pending_offer, clock) -> None:
    clock.advance(hours=49)
    await sweeper.sweep_once()

    with pytest.raises(ExpiredError):
        await offer_service.respond(pending_offer.id, AcceptAction())


@pytest.mark.asyncio
async def test_nothing_to_do(sweeper, pending_offer) -> None:
    assert await sweeper.sweep_once() == SweepResult(scanned=0, expired=0)


@pytest.mark.asyncio
async def test_sweep_racing_accept_expires_exactly_once(
    sweeper, session_factory, provider, notifier, settings, clock, pending_offer
) -> None:
    offer_id = pending_offer.id
    clock.advance(hours=49)

    async def accept() -> None:
        async with session_factory() as session:
            svc = OfferService(session, provider, notifier, settings, clock=clock)
            await svc.respond(offer_id, AcceptAction())

    results = await asyncio.gather(sweeper.sweep_once(), accept(), return_exceptions=True)

    assert isinstance(results[1], ExpiredError)
    async with session_factory() as session:
        events = await AuditRepository(session).get_for_entity(EntityType.OFFER, offer_id)
    assert [e.event_type for e in events].count(EventType.OFFER_EXPIRED) == 1
    assert [e.event_type for e in events].count(EventType.OFFER_ACCEPTED) == 0


@pytest.mark.asyncio
async def test_one_bad_offer_does_not_stop_the_pass(sweeper, offer_service, clock, monkeypatch) -> None:
    await offer_service.create_offer(**offer_data())
    await offer_service.create_offer(**offer_data(talent_profile_id="talent-2"))
    clock.advance(hours=49)
    monkeypatch.setattr(OfferService, "expire_offer", AsyncMock(side_effect=[RuntimeError("locked"), True]))

    assert await sweeper.sweep_once() == SweepResult(scanned=2, expired=1)


@pytest.mark.asyncio
async def test_run_swallows_pass_failure(sweeper, monkeypatch) -> None:
    monkeypatch.setattr(sweeper, "sweep_once", AsyncMock(side_effect=RuntimeError("db down")))
    assert await sweeper.run() is None


def test_start_registers_single_interval_job(sweeper, settings) -> None:
    scheduler = AsyncIOScheduler(timezone="UTC")
    job = sweeper.start(scheduler)

    interval = settings.expiration_sweep_interval_seconds
    assert job.id == SWEEP_JOB_ID
    assert job.max_instances == 1
    assert job.coalesce is True
    assert job.misfire_grace_time == interval
    assert job.trigger.interval == timedelta(seconds=interval)
