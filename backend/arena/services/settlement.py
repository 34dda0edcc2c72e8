"""
Settlement Service

Closes out an ended contest: final ranks and values from the last
leaderboard snapshot, prize pool from collected entry fees, payouts from the
configured curve. The ended -> settled compare-and-set opens the same
transaction that credits the payouts, so a contest is either settled with
every credit applied or still ended and safe to retry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Mapping, Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import utcnow
from arena.core.config import settings
from arena.core.errors import ArenaError, InternalError, NotFoundError
from arena.models.contest import Contest, ContestStatus, LeaderboardEntry, Participant
from arena.models.wallet import TransactionKind
from arena.services.contest_lifecycle import compare_and_set_status
from arena.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    contest_id: UUID
    settled_at: datetime
    pool: int                                   # cents
    payouts: Dict[UUID, int] = field(default_factory=dict)   # participant_id -> cents


def compute_payouts(pool: int, ranked: int, curve: Mapping[int, Decimal]) -> Dict[int, int]:
    """
    Split all of `pool` cents over ranks 1..ranked.

    The curve fractions of the ranks that were reached are scaled up to sum
    to 1, so shares meant for ranks nobody reached (or left unassigned by
    the curve) go to the reached ranks pro rata. Each share is floored to
    the cent and the cents lost to flooring go to rank 1.
    """
    if pool <= 0 or ranked <= 0:
        return {}

    fractions = {rank: Decimal(fraction) for rank, fraction in curve.items() if rank <= ranked and fraction > 0}
    total = sum(fractions.values(), Decimal("0"))
    if total <= 0:
        return {}

    payouts = {
        rank: int((pool * fraction / total).to_integral_value(rounding=ROUND_DOWN))
        for rank, fraction in fractions.items()
    }
    remainder = pool - sum(payouts.values())
    if remainder > 0:
        payouts[1] = payouts.get(1, 0) + remainder

    return {rank: amount for rank, amount in payouts.items() if amount > 0}


class SettlementService:

    def __init__(self, session: AsyncSession, payout_curve: Optional[Mapping[int, Decimal]] = None):
        self.session = session
        self.ledger = WalletLedger(session)
        self.payout_curve = payout_curve if payout_curve is not None else settings.PAYOUT_CURVE

    async def settle(self, contest_id: UUID, now: Optional[datetime] = None) -> Optional[SettlementResult]:
        """
        Settle an ended contest. Returns None when the contest is not (or no
        longer) ended, which makes repeated and concurrent calls no-ops.
        """
        now = now or utcnow()

        try:
            claimed = await compare_and_set_status(
                self.session, contest_id, ContestStatus.ENDED, ContestStatus.SETTLED, settled_at=now
            )
            if claimed:
                contest = await self.session.get(Contest, contest_id, populate_existing=True)
                result = await self._distribute(contest, now)
                await self.session.commit()
            else:
                await self.session.rollback()

        except ArenaError as e:
            await self.session.rollback()
            logger.error(f"Settlement of contest {contest_id} failed: {e.message}")
            raise
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Settlement of contest {contest_id} failed: {e}", exc_info=True)
            raise InternalError()

        if not claimed:
            exists = await self.session.scalar(select(Contest.id).where(Contest.id == contest_id))
            if exists is None:
                raise NotFoundError("Contest not found")
            logger.debug(f"Contest {contest_id} not awaiting settlement, skipping")
            return None

        logger.info(
            f"Settled contest {contest_id}: pool={result.pool} "
            f"paid={sum(result.payouts.values())} to {len(result.payouts)} participants"
        )
        return result

    async def _distribute(self, contest: Contest, now: datetime) -> SettlementResult:
        snapshot = await self.session.execute(
            select(LeaderboardEntry)
            .where(LeaderboardEntry.contest_id == contest.id)
            .order_by(LeaderboardEntry.rank.asc())
        )
        standings = {entry.participant_id: entry for entry in snapshot.scalars().all()}

        participants = await self.session.execute(
            select(Participant)
            .where(Participant.contest_id == contest.id)
            .order_by(Participant.joined_at.asc())
        )
        participants: List[Participant] = list(participants.scalars().all())

        pool = await self.ledger.collected_fees(contest.id)
        payouts_by_rank = compute_payouts(pool, len(standings), self.payout_curve)
        result = SettlementResult(contest_id=contest.id, settled_at=now, pool=pool)

        # Never-locked participants rank after everyone in the snapshot
        next_rank = len(standings) + 1
        for participant in participants:
            entry = standings.get(participant.id)
            if entry is not None:
                participant.final_rank = entry.rank
                participant.final_value = entry.portfolio_value
            else:
                participant.final_rank = next_rank
                participant.final_value = 0
                next_rank += 1

            amount = payouts_by_rank.get(participant.final_rank, 0) if entry is not None else 0
            participant.payout = amount
            if amount > 0:
                wallet = await self.ledger.get_wallet(participant.user_id)
                await self.ledger.credit(
                    wallet.id,
                    amount,
                    TransactionKind.PAYOUT,
                    reference_id=contest.id,
                    description=f"Prize for rank {participant.final_rank}: {contest.title}",
                )
                result.payouts[participant.id] = amount

        await self.session.flush()
        return result
