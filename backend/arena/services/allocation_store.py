"""
Allocation Store

Persistence and invariant enforcement for participant allocations. Allocations are written
once, while the participant is still unlocked, and only read afterwards;
there is no update or delete path.
"""

from decimal import Decimal
from typing import Iterable, List, Sequence, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.errors import ConflictError, NotFoundError, ValidationError
from arena.models.contest import Allocation, AllocationItem, Participant

FULL_ALLOCATION = Decimal("100")

# Allocation.percentage is NUMERIC(7,4)
PCT_STEP = Decimal("0.0001")


class AllocationStore:

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def check_total(items: Sequence[AllocationItem]) -> None:
        """Percentages must sum to exactly 100, no tolerance."""
        for item in items:
            pct = Decimal(item.pct)
            if pct.is_finite() and pct != pct.quantize(PCT_STEP):
                raise ValidationError("Allocation percentages allow at most 4 decimal places")
        total = sum((Decimal(item.pct) for item in items), Decimal("0"))
        if total != FULL_ALLOCATION:
            raise ValidationError("Allocation percentages must sum to 100")

    @staticmethod
    def check_assets(items: Sequence[AllocationItem], allowed_asset_ids: Iterable[UUID]) -> None:
        if not items:
            raise ValidationError("At least one allocation is required")

        allowed: Set[UUID] = set(allowed_asset_ids)
        seen: Set[UUID] = set()
        for item in items:
            if item.pct <= 0:
                raise ValidationError("Allocation percentages must be positive")
            if item.asset_id in seen:
                raise ValidationError(f"Duplicate allocation for asset {item.asset_id}")
            if item.asset_id not in allowed:
                raise ValidationError(f"Asset {item.asset_id} is not part of this contest")
            seen.add(item.asset_id)

    async def save(self, participant_id: UUID, items: Sequence[AllocationItem]) -> List[Allocation]:
        """Insert a full allocation set for a participant that is not yet locked."""
        locked_at = await self.session.execute(
            select(Participant.locked_at).where(Participant.id == participant_id)
        )
        row = locked_at.first()
        if row is None:
            raise NotFoundError("Participant not found")
        if row[0] is not None:
            raise ConflictError("Allocation already locked")

        allocations = [
            Allocation(participant_id=participant_id, asset_id=item.asset_id, percentage=Decimal(item.pct))
            for item in items
        ]
        self.session.add_all(allocations)
        await self.session.flush()
        return allocations

    async def for_participant(self, participant_id: UUID) -> List[Allocation]:
        result = await self.session.execute(
            select(Allocation).where(Allocation.participant_id == participant_id)
        )
        return list(result.scalars().all())
