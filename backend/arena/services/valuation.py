"""
Valuation Engine

Computes a participant's portfolio value from their locked allocations and
the candles in PriceStore:

    value = sum(capital * pct/100 * current_price / entry_price)

entry_price is the close of the candle at (or immediately preceding) the
participant's locked_at; current_price is the latest close at or before the
valuation instant. The engine is read-only; persisting values is the
leaderboard's job.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import cents_to_amount
from arena.core.errors import ConflictError, NotFoundError, PriceUnavailableError
from arena.models.contest import Contest, Participant
from arena.services.allocation_store import AllocationStore
from arena.services.price_store import PriceStore

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class ValuationEngine:
    """
    One instance per valuation pass: prices and contest capital are memoised
    so ranking N participants over the same assets reads each price once.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.prices = PriceStore(session)
        self.allocations = AllocationStore(session)
        self._price_cache: Dict[Tuple[UUID, datetime], Optional[Decimal]] = {}
        self._capital_cache: Dict[UUID, Decimal] = {}

    async def value(self, participant: Participant, at_time: datetime) -> Decimal:
        if participant.locked_at is None:
            raise ConflictError("Participant has not locked an allocation")

        capital = await self._virtual_capital(participant.contest_id)
        total = Decimal("0")

        for allocation in await self.allocations.for_participant(participant.id):
            entry_price = await self._price(allocation.asset_id, participant.locked_at)
            current_price = await self._price(allocation.asset_id, at_time)
            total += capital * (Decimal(allocation.percentage) / HUNDRED) * (current_price / entry_price)

        return total

    async def value_many(self, participants: List[Participant], at_time: datetime) -> List[Tuple[Participant, Decimal]]:
        return [(p, await self.value(p, at_time)) for p in participants]

    async def _virtual_capital(self, contest_id: UUID) -> Decimal:
        if contest_id not in self._capital_cache:
            cents = await self.session.scalar(
                select(Contest.virtual_capital).where(Contest.id == contest_id)
            )
            if cents is None:
                raise NotFoundError("Contest not found")
            self._capital_cache[contest_id] = cents_to_amount(cents)
        return self._capital_cache[contest_id]

    async def _price(self, asset_id: UUID, at: datetime) -> Decimal:
        key = (asset_id, at)
        if key not in self._price_cache:
            self._price_cache[key] = await self.prices.close_at_or_before(asset_id, at)

        price = self._price_cache[key]
        if price is None or price <= 0:
            logger.warning(f"No usable price for asset {asset_id} at {at.isoformat()}")
            raise PriceUnavailableError(f"Price unavailable for asset {asset_id}")
        return Decimal(price)
