"""
Contest Scheduler

Background runner started from the app lifespan. It owns:
- the periodic lifecycle pass (clock transitions for every active contest),
- one leaderboard recompute loop per contest in allocation_locked/live,
- final ranking and settlement of contests that reached ended,
- supervision of the market data stream (restart after a delay).

Every loop catches and logs its own failures and keeps going; stopping the
scheduler cancels all of them.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterable, Callable, Dict, List, Optional, Set
from uuid import UUID

from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arena.core.clock import utcnow
from arena.core.config import settings
from arena.core.errors import ArenaError
from arena.models.contest import RANKED_STATUSES, Contest, ContestStatus
from arena.services.contest_lifecycle import ContestLifecycle, Transition
from arena.services.leaderboard import LeaderboardService
from arena.services.market_data_aggregator import MarketDataAggregator
from arena.services.settlement import SettlementResult, SettlementService

logger = logging.getLogger(__name__)

TickSourceFactory = Callable[[], AsyncIterable[Any]]


async def finalize_contest(
    session: AsyncSession,
    contest_id: UUID,
    redis: Optional[Redis] = None,
    now: Optional[datetime] = None,
) -> Optional[SettlementResult]:
    """
    Final leaderboard pass at end_time, then settlement. Settlement is
    deferred (None) while the final ranking cannot be computed.
    """
    snapshot = await LeaderboardService(session, redis).recompute(contest_id, final=True)
    if snapshot is None:
        logger.warning(f"Final leaderboard for contest {contest_id} unavailable, settlement deferred")
        return None
    return await SettlementService(session).settle(contest_id, now)


class ContestScheduler:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Optional[Redis] = None,
        tick_source: Optional[TickSourceFactory] = None,
        interval: float = settings.SCHEDULER_INTERVAL_SECONDS,
        leaderboard_interval: float = settings.LEADERBOARD_INTERVAL_SECONDS,
        restart_delay: float = 5.0,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.tick_source = tick_source
        self.interval = interval
        self.leaderboard_interval = leaderboard_interval
        self.restart_delay = restart_delay

        self.running = False
        self.tasks: List[asyncio.Task] = []
        self.leaderboard_tasks: Dict[UUID, asyncio.Task] = {}

    async def start(self) -> None:
        self.running = True
        self.tasks = [asyncio.create_task(self._lifecycle_loop())]
        if self.tick_source is not None:
            self.tasks.append(asyncio.create_task(self._market_loop()))
        logger.info("Contest scheduler started")

    async def stop(self) -> None:
        self.running = False
        tasks = self.tasks + list(self.leaderboard_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks = []
        self.leaderboard_tasks.clear()
        logger.info("Contest scheduler stopped")

    # ------------------------------------------------------------------
    # Lifecycle pass
    # ------------------------------------------------------------------

    async def run_pass(self, now: Optional[datetime] = None) -> Dict[UUID, List[Transition]]:
        """One scheduler tick. Returns the transitions made, per contest."""
        now = now or utcnow()
        made: Dict[UUID, List[Transition]] = {}

        async with self.session_factory() as session:
            lifecycle = ContestLifecycle(session)
            for contest in await lifecycle.list_open():
                try:
                    transitions = await lifecycle.advance(contest, now)
                except ArenaError as e:
                    logger.error(f"Advancing contest {contest.id} failed: {e.message}")
                    continue
                if transitions:
                    made[contest.id] = transitions

        # Covers contests that just ended and earlier settlement attempts that failed
        for contest_id in await self._contest_ids(ContestStatus.ENDED):
            await self._finalize(contest_id, now)

        if self.running:
            self._sync_leaderboard_loops(await self._contest_ids(*RANKED_STATUSES))

        return made

    async def _finalize(self, contest_id: UUID, now: datetime) -> None:
        try:
            async with self.session_factory() as session:
                await finalize_contest(session, contest_id, self.redis, now)
        except ArenaError as e:
            logger.error(f"Settlement of contest {contest_id} failed, will retry: {e.message}")

    async def _contest_ids(self, *statuses: ContestStatus) -> Set[UUID]:
        async with self.session_factory() as session:
            result = await session.execute(select(Contest.id).where(Contest.status.in_(statuses)))
            return set(result.scalars().all())

    async def _lifecycle_loop(self) -> None:
        while self.running:
            try:
                await self.run_pass()
            except Exception as e:
                logger.error(f"Scheduler pass failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    # ------------------------------------------------------------------
    # Leaderboard loops
    # ------------------------------------------------------------------

    def _sync_leaderboard_loops(self, ranked: Set[UUID]) -> None:
        for contest_id, task in list(self.leaderboard_tasks.items()):
            if contest_id not in ranked or task.done():
                task.cancel()
                del self.leaderboard_tasks[contest_id]

        for contest_id in ranked - self.leaderboard_tasks.keys():
            self.leaderboard_tasks[contest_id] = asyncio.create_task(self._leaderboard_loop(contest_id))
            logger.info(f"Leaderboard loop started for contest {contest_id}")

    async def _leaderboard_loop(self, contest_id: UUID) -> None:
        while self.running:
            try:
                async with self.session_factory() as session:
                    await LeaderboardService(session, self.redis).recompute(contest_id)
            except Exception as e:
                logger.error(f"Leaderboard recompute for contest {contest_id} failed: {e}", exc_info=True)
            await asyncio.sleep(self.leaderboard_interval)

    # ------------------------------------------------------------------
    # Market data supervision
    # ------------------------------------------------------------------

    async def _market_loop(self) -> None:
        aggregator = MarketDataAggregator(self.session_factory, self.redis)
        while self.running:
            try:
                await aggregator.consume(self.tick_source())
            except Exception as e:
                logger.error(f"Market data stream failed: {e}", exc_info=True)
            if self.running:
                logger.warning(f"Restarting market data stream in {self.restart_delay}s")
                await asyncio.sleep(self.restart_delay)
