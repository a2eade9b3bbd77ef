"""Expiration Sweeper — periodically expires pending offers past their deadline.

The sweep reuses OfferService.expire_offer, so it races the respond path
through the same conditional UPDATE: whichever writer lands first wins and
the other sees zero rows. Each offer gets its own short session so one
slow or failing row never holds locks for the whole batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from apscheduler.triggers.interval import IntervalTrigger

from talent_escrow.config import Settings, get_settings
from talent_escrow.domain.timeutils import utc_now
from talent_escrow.infrastructure.database.repositories import OfferRepository
from talent_escrow.logging_config import get_logger
from talent_escrow.services.offer_service import OfferService

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from apscheduler.job import Job
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from talent_escrow.domain.notifier_protocol import NotificationService

logger = get_logger(__name__)

SWEEP_JOB_ID = "offer_expiration_sweep"


@dataclass(frozen=True)
class SweepResult:
    scanned: int
    expired: int


class ExpirationSweeper:
    """Finds overdue pending offers and expires them one by one."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: NotificationService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock

    async def sweep_once(self, now: datetime | None = None) -> SweepResult:
        """Run one pass. Offers that lose the race are skipped, not counted."""
        now = now or self._clock()
        async with self._session_factory() as session:
            offer_ids = await OfferRepository(session).find_expired_pending_ids(
                now, self._settings.expiration_sweep_batch_size
            )

        expired = 0
        for offer_id in offer_ids:
            try:
                async with self._session_factory() as session:
                    service = OfferService(
                        session,
                        notifier=self._notifier,
                        settings=self._settings,
                        clock=self._clock,
                    )
                    won = await service.expire_offer(offer_id, now=now)
            except Exception:
                logger.exception("sweeper.offer_failed", offer_id=str(offer_id))
                continue
            if won:
                expired += 1
                logger.info("sweeper.offer_expired", offer_id=str(offer_id))
            else:
                logger.debug("sweeper.offer_skipped", offer_id=str(offer_id))

        result = SweepResult(scanned=len(offer_ids), expired=expired)
        if offer_ids:
            logger.info("sweeper.pass_complete", scanned=result.scanned, expired=result.expired)
        return result

    async def run(self) -> SweepResult | None:
        """Scheduler entry point; a failed pass is logged and the job stays scheduled."""
        try:
            return await self.sweep_once()
        except Exception:
            logger.exception("sweeper.pass_failed")
            return None

    def start(self, scheduler: AsyncIOScheduler) -> Job:
        interval = self._settings.expiration_sweep_interval_seconds
        job = scheduler.add_job(
            self.run,
            trigger=IntervalTrigger(seconds=interval),
            id=SWEEP_JOB_ID,
            name="Offer expiration sweep",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=interval,
            replace_existing=True,
        )
        logger.info("sweeper.scheduled", interval_seconds=interval)
        return job
