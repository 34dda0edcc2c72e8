"""
Contest Lifecycle Service

State machine for a contest (upcoming -> joining_open -> allocation_locked
-> live -> ended -> settled) and the participant actions it gates: join and
allocation lock. Every status change goes through compare_and_set_status.
"""

from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from uuid import UUID
import logging

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import amount_to_cents, as_naive_utc, utcnow
from arena.core.errors import (
    ArenaError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from arena.models.contest import (
    ALLOCATION_OPEN_STATUSES,
    CONTEST_TRANSITIONS,
    AllocationItem,
    Contest,
    ContestAsset,
    ContestCreate,
    ContestStatus,
    Participant,
)
from arena.models.market import Asset
from arena.models.wallet import TransactionKind
from arena.services.allocation_store import AllocationStore
from arena.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

Transition = Tuple[ContestStatus, ContestStatus]

ACTIVE_STATUSES = (
    ContestStatus.UPCOMING,
    ContestStatus.JOINING_OPEN,
    ContestStatus.ALLOCATION_LOCKED,
    ContestStatus.LIVE,
)


async def compare_and_set_status(
    session: AsyncSession,
    contest_id: UUID,
    current: ContestStatus,
    target: ContestStatus,
    **values,
) -> bool:
    """
    Move a contest along one edge of the transition table, only if it is
    still in `current`. Returns False when another writer got there first.
    """
    if CONTEST_TRANSITIONS[current] != target:
        raise ValueError(f"Illegal contest transition {current.value} -> {target.value}")

    result = await session.execute(
        update(Contest)
        .where(Contest.id == contest_id, Contest.status == current)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class ContestLifecycle:

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = WalletLedger(session)
        self.allocations = AllocationStore(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_contest(self, contest_id: UUID, for_update: bool = False) -> Contest:
        """for_update takes the row lock that serialises joins (a no-op on SQLite)."""
        stmt = select(Contest).where(Contest.id == contest_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        contest = result.scalar_one_or_none()
        if not contest:
            raise NotFoundError("Contest not found")
        return contest

    async def list_open(self) -> List[Contest]:
        result = await self.session.execute(
            select(Contest)
            .where(Contest.status.in_(ACTIVE_STATUSES))
            .order_by(Contest.start_time.asc())
        )
        return list(result.scalars().all())

    async def contest_assets(self, contest_id: UUID) -> List[Asset]:
        result = await self.session.execute(
            select(Asset)
            .join(ContestAsset, ContestAsset.asset_id == Asset.id)
            .where(ContestAsset.contest_id == contest_id)
            .order_by(Asset.symbol)
        )
        return list(result.scalars().all())

    async def get_participant(self, contest_id: UUID, user_id: UUID) -> Optional[Participant]:
        result = await self.session.execute(
            select(Participant)
            .where(Participant.contest_id == contest_id, Participant.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_contest(self, data: ContestCreate) -> Contest:
        start_time = as_naive_utc(data.start_time)
        end_time = as_naive_utc(data.end_time)
        join_opens_at = as_naive_utc(data.join_opens_at) if data.join_opens_at else None
        allocation_deadline = (
            as_naive_utc(data.allocation_deadline) if data.allocation_deadline else None
        )

        if start_time >= end_time:
            raise ValidationError("start_time must be before end_time")
        if allocation_deadline and allocation_deadline > start_time:
            raise ValidationError("allocation_deadline cannot be after start_time")
        if join_opens_at and join_opens_at > (allocation_deadline or start_time):
            raise ValidationError("join_opens_at cannot be after the allocation deadline")

        asset_ids = list(dict.fromkeys(data.asset_ids))
        found = await self.session.execute(select(Asset.id).where(Asset.id.in_(asset_ids)))
        missing = set(asset_ids) - set(found.scalars().all())
        if missing:
            raise ValidationError(f"Unknown assets: {', '.join(str(a) for a in sorted(missing))}")

        contest = Contest(
            title=data.title,
            track=data.track,
            description=data.description,
            entry_fee=amount_to_cents(data.entry_fee),
            virtual_capital=amount_to_cents(data.virtual_capital),
            max_participants=data.max_participants,
            join_opens_at=join_opens_at,
            allocation_deadline=allocation_deadline,
            start_time=start_time,
            end_time=end_time,
        )
        if contest.virtual_capital <= 0:
            raise ValidationError("virtual_capital must be at least 0.01")

        try:
            self.session.add(contest)
            await self.session.flush()
            self.session.add_all(ContestAsset(contest_id=contest.id, asset_id=a) for a in asset_ids)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Contest creation failed: {e}", exc_info=True)
            raise InternalError()

        logger.info(f"Created contest {contest.id} '{contest.title}' with {len(asset_ids)} assets")
        return contest

    # ------------------------------------------------------------------
    # Participant actions
    # ------------------------------------------------------------------

    async def join(self, contest_id: UUID, user_id: UUID, now: Optional[datetime] = None) -> Tuple[Participant, Contest]:
        """
        Debit the entry fee and enroll the user, as one transaction.
        Either both land or neither does.
        """
        now = now or utcnow()
        contest = await self.get_contest(contest_id, for_update=True)

        try:
            if contest.status != ContestStatus.JOINING_OPEN:
                raise ConflictError("Contest is not open for joining")
            if await self.get_participant(contest_id, user_id):
                raise ConflictError("Already joined this contest")

            wallet = await self.ledger.get_wallet(user_id)
            if contest.entry_fee > 0:
                await self.ledger.debit(
                    wallet.id,
                    contest.entry_fee,
                    TransactionKind.ENTRY_FEE,
                    reference_id=contest.id,
                    description=f"Entry fee: {contest.title}",
                )

            participant = Participant(contest_id=contest.id, user_id=user_id, joined_at=now)
            self.session.add(participant)
            await self.session.flush()

            if contest.max_participants:
                count = await self.session.scalar(
                    select(func.count(Participant.id)).where(Participant.contest_id == contest.id)
                )
                if count > contest.max_participants:
                    raise ConflictError("Contest is full")

            await self.session.commit()

        except ArenaError:
            await self.session.rollback()
            raise
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("Already joined this contest")
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Join failed for user {user_id} contest {contest_id}: {e}", exc_info=True)
            raise InternalError()

        logger.info(f"User {user_id} joined contest {contest_id}")
        return participant, contest

    async def lock_allocation(
        self,
        contest_id: UUID,
        user_id: UUID,
        items: Sequence[AllocationItem],
        now: Optional[datetime] = None,
    ) -> Participant:
        """
        Persist the participant's allocation and set locked_at, as one
        transaction. locked_at is claimed with a compare-and-set so a
        concurrent second lock observes Conflict instead of overwriting.
        """
        now = now or utcnow()
        AllocationStore.check_total(items)

        contest = await self.get_contest(contest_id)
        participant = await self.get_participant(contest_id, user_id)
        if not participant:
            raise NotFoundError("Not a participant of this contest")
        if participant.locked_at is not None:
            raise ConflictError("Allocation already locked")
        if contest.status not in ALLOCATION_OPEN_STATUSES:
            raise ForbiddenError("Contest has already started")

        asset_ids = [asset.id for asset in await self.contest_assets(contest_id)]
        AllocationStore.check_assets(items, asset_ids)

        try:
            await self.allocations.save(participant.id, items)

            claimed = await self.session.execute(
                update(Participant)
                .where(
                    Participant.id == participant.id,
                    Participant.locked_at.is_(None),
                    exists().where(
                        Contest.id == contest_id,
                        Contest.status.in_(ALLOCATION_OPEN_STATUSES),
                    ),
                )
                .values(locked_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise await self._lost_lock_race(contest_id, user_id)

            if contest.status == ContestStatus.JOINING_OPEN and await self._all_slots_locked(contest):
                if await compare_and_set_status(
                    self.session, contest.id, ContestStatus.JOINING_OPEN, ContestStatus.ALLOCATION_LOCKED
                ):
                    logger.info(f"Contest {contest.id}: all slots locked, allocation closed")

            await self.session.commit()

        except ArenaError:
            await self.session.rollback()
            raise
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("Allocation already locked")
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Allocation lock failed for user {user_id} contest {contest_id}: {e}", exc_info=True)
            raise InternalError()

        participant.locked_at = now
        logger.info(f"User {user_id} locked allocation in contest {contest_id}")
        return participant

    async def _lost_lock_race(self, contest_id: UUID, user_id: UUID) -> ArenaError:
        status = await self.session.scalar(select(Contest.status).where(Contest.id == contest_id))
        if status not in ALLOCATION_OPEN_STATUSES:
            return ForbiddenError("Contest has already started")
        logger.warning(f"Concurrent allocation lock lost for user {user_id} contest {contest_id}")
        return ConflictError("Allocation already locked")

    async def _all_slots_locked(self, contest: Contest) -> bool:
        if not contest.max_participants:
            return False
        total, locked = (
            await self.session.execute(
                select(func.count(Participant.id), func.count(Participant.locked_at))
                .where(Participant.contest_id == contest.id)
            )
        ).one()
        return total >= contest.max_participants and locked >= total

    # ------------------------------------------------------------------
    # Clock-driven transitions (scheduler pass)
    # ------------------------------------------------------------------

    async def _clock_due(self, contest: Contest, now: datetime) -> bool:
        """Whether the edge out of the contest's current status is due."""
        status = contest.status
        if status == ContestStatus.UPCOMING:
            return contest.join_opens_at is None or now >= contest.join_opens_at
        if status == ContestStatus.JOINING_OPEN:
            return now >= contest.effective_allocation_deadline or await self._all_slots_locked(contest)
        if status == ContestStatus.ALLOCATION_LOCKED:
            return now >= contest.start_time
        if status == ContestStatus.LIVE:
            return now >= contest.end_time
        # ended -> settled belongs to settlement; settled is terminal
        return False

    async def advance(self, contest: Contest, now: Optional[datetime] = None) -> List[Transition]:
        """
        Apply every clock transition that is due, one edge at a time.
        Each edge is committed on its own.
        """
        now = as_naive_utc(now) if now else utcnow()
        made: List[Transition] = []

        while await self._clock_due(contest, now):
            current = contest.status
            target = CONTEST_TRANSITIONS[current]
            if await compare_and_set_status(self.session, contest.id, current, target):
                await self.session.commit()
                made.append((current, target))
                logger.info(f"Contest {contest.id}: {current.value} -> {target.value}")
            else:
                await self.session.rollback()
            contest = await self.get_contest(contest.id)

        return made
