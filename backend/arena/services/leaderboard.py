"""
Leaderboard Service

Periodic ranking of a contest's locked participants. Each recompute pass
replaces the contest's snapshot in one transaction, so readers see either
the previous complete snapshot or the new one. Reads never value portfolios
on demand; they return the latest stored snapshot.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID
import logging

from redis.asyncio import Redis
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import amount_to_cents, cents_to_amount, utcnow
from arena.core.config import settings
from arena.core.errors import InternalError, NotFoundError, PriceUnavailableError
from arena.core.redis import leaderboard_channel, publish_json
from arena.models.contest import (
    RANKED_STATUSES,
    Contest,
    ContestStatus,
    LeaderboardEntry,
    Participant,
)
from arena.services.valuation import ValuationEngine

logger = logging.getLogger(__name__)


def rank_participants(valued: Sequence[Tuple[Participant, Decimal]]) -> List[Tuple[int, Participant, Decimal]]:
    """
    Highest value first. Equal values go to whoever locked earlier; the
    participant id keeps the order total when lock times collide too.
    """
    ordered = sorted(valued, key=lambda pv: (-pv[1], pv[0].locked_at, str(pv[0].id)))
    return [(rank, participant, value) for rank, (participant, value) in enumerate(ordered, start=1)]


def snapshot_rows(entries: Sequence[LeaderboardEntry]) -> List[Dict[str, Any]]:
    """Wire format shared by the REST read and the push feed."""
    return [
        {
            "rank": entry.rank,
            "user": str(entry.user_id),
            "value": str(cents_to_amount(entry.portfolio_value)),
        }
        for entry in entries
    ]


class LeaderboardService:

    def __init__(self, session: AsyncSession, redis: Optional[Redis] = None):
        self.session = session
        self.redis = redis

    async def recompute(
        self,
        contest_id: UUID,
        at_time: Optional[datetime] = None,
        final: bool = False,
    ) -> Optional[List[LeaderboardEntry]]:
        """
        Value every locked participant and replace the snapshot.

        The final pass (final=True) runs once the contest has ended and
        values portfolios at end_time. Returns None when the pass was
        skipped; the previous snapshot then stays in place.
        """
        result = await self.session.execute(
            select(Contest).where(Contest.id == contest_id).execution_options(populate_existing=True)
        )
        contest = result.scalar_one_or_none()
        if not contest:
            raise NotFoundError("Contest not found")

        allowed = RANKED_STATUSES + ((ContestStatus.ENDED,) if final else ())
        if contest.status not in allowed:
            logger.debug(f"Leaderboard pass skipped for contest {contest_id} in {contest.status.value}")
            await self.session.rollback()
            return None

        if final:
            at_time = contest.end_time
        else:
            at_time = min(at_time or utcnow(), contest.end_time)

        participants = await self._locked_participants(contest_id)
        engine = ValuationEngine(self.session)
        try:
            valued = await engine.value_many(participants, at_time)
        except PriceUnavailableError as e:
            logger.error(f"Leaderboard pass for contest {contest_id} aborted: {e.message}")
            await self.session.rollback()
            return None

        computed_at = utcnow()
        entries = [
            LeaderboardEntry(
                contest_id=contest_id,
                participant_id=participant.id,
                user_id=participant.user_id,
                rank=rank,
                portfolio_value=amount_to_cents(value),
                computed_at=computed_at,
            )
            for rank, participant, value in rank_participants(valued)
        ]

        try:
            await self.session.execute(
                delete(LeaderboardEntry)
                .where(LeaderboardEntry.contest_id == contest_id)
                .execution_options(synchronize_session=False)
            )
            self.session.add_all(entries)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Leaderboard snapshot write failed for contest {contest_id}: {e}", exc_info=True)
            raise InternalError()

        logger.debug(f"Leaderboard for contest {contest_id}: {len(entries)} ranked at {at_time.isoformat()}")
        await publish_json(self.redis, leaderboard_channel(contest_id), snapshot_rows(entries))
        return entries

    async def top(self, contest_id: UUID, limit: Optional[int] = None) -> List[LeaderboardEntry]:
        limit = limit or settings.LEADERBOARD_DEFAULT_LIMIT
        result = await self.session.execute(
            select(LeaderboardEntry)
            .where(LeaderboardEntry.contest_id == contest_id)
            .order_by(LeaderboardEntry.rank.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def standing(self, contest_id: UUID, user_id: UUID) -> Optional[LeaderboardEntry]:
        result = await self.session.execute(
            select(LeaderboardEntry).where(
                LeaderboardEntry.contest_id == contest_id,
                LeaderboardEntry.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _locked_participants(self, contest_id: UUID) -> List[Participant]:
        result = await self.session.execute(
            select(Participant)
            .where(Participant.contest_id == contest_id, Participant.locked_at.is_not(None))
            .order_by(Participant.locked_at.asc())
        )
        return list(result.scalars().all())
