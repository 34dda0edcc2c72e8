"""
Contest models: Contest, ContestAsset, Participant, Allocation, LeaderboardEntry
Maps to: contests, contest_assets, contest_participants, contest_allocations,
contest_leaderboard tables
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from arena.core.clock import utcnow


# ============================================================================
# STATUS STATE MACHINE
# ============================================================================

class ContestStatus(str, Enum):
    UPCOMING = "upcoming"
    JOINING_OPEN = "joining_open"
    ALLOCATION_LOCKED = "allocation_locked"
    LIVE = "live"
    ENDED = "ended"
    SETTLED = "settled"


# The only legal edges. Each status has at most one successor.
CONTEST_TRANSITIONS: dict[ContestStatus, Optional[ContestStatus]] = {
    ContestStatus.UPCOMING: ContestStatus.JOINING_OPEN,
    ContestStatus.JOINING_OPEN: ContestStatus.ALLOCATION_LOCKED,
    ContestStatus.ALLOCATION_LOCKED: ContestStatus.LIVE,
    ContestStatus.LIVE: ContestStatus.ENDED,
    ContestStatus.ENDED: ContestStatus.SETTLED,
    ContestStatus.SETTLED: None,
}

# Statuses in which a participant may still lock an allocation
ALLOCATION_OPEN_STATUSES = (
    ContestStatus.UPCOMING,
    ContestStatus.JOINING_OPEN,
    ContestStatus.ALLOCATION_LOCKED,
)

# Statuses ranked by the periodic leaderboard pass
RANKED_STATUSES = (ContestStatus.ALLOCATION_LOCKED, ContestStatus.LIVE)


# ============================================================================
# CONTEST MODEL
# ============================================================================

class Contest(SQLModel, table=True):
    """Trading contest/competition"""
    __tablename__ = "contests"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    title: str = Field(index=True, max_length=200)
    track: str = Field(max_length=50)
    description: Optional[str] = Field(default=None)
    status: ContestStatus = Field(default=ContestStatus.UPCOMING, index=True)
    entry_fee: int = Field(default=0, ge=0)          # BIGINT (cents)
    virtual_capital: int = Field(gt=0)               # BIGINT (cents)
    max_participants: Optional[int] = Field(default=None, ge=1)

    join_opens_at: Optional[datetime] = None         # None: open on first scheduler pass
    allocation_deadline: Optional[datetime] = None   # None: start_time
    start_time: datetime
    end_time: datetime
    settled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def effective_allocation_deadline(self) -> datetime:
        return self.allocation_deadline or self.start_time


class ContestAsset(SQLModel, table=True):
    """Fixed asset universe of a contest; written once at creation"""
    __tablename__ = "contest_assets"

    contest_id: UUID = Field(foreign_key="contests.id", primary_key=True)
    asset_id: UUID = Field(foreign_key="assets.id", primary_key=True)


# ============================================================================
# PARTICIPANT / ALLOCATION MODELS
# ============================================================================

class Participant(SQLModel, table=True):
    """One user's enrollment in a contest"""
    __tablename__ = "contest_participants"
    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uq_participant_contest_user"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    contest_id: UUID = Field(foreign_key="contests.id", index=True)
    user_id: UUID = Field(index=True)
    joined_at: datetime = Field(default_factory=utcnow)
    locked_at: Optional[datetime] = None      # set once, by allocation lock

    # Set once, by settlement
    final_rank: Optional[int] = None
    final_value: Optional[int] = None         # BIGINT (cents)
    payout: Optional[int] = None              # BIGINT (cents)


class Allocation(SQLModel, table=True):
    """Percentage of virtual capital placed on one asset"""
    __tablename__ = "contest_allocations"
    __table_args__ = (
        UniqueConstraint("participant_id", "asset_id", name="uq_allocation_participant_asset"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    participant_id: UUID = Field(foreign_key="contest_participants.id", index=True)
    asset_id: UUID = Field(foreign_key="assets.id")
    percentage: Decimal = Field(max_digits=7, decimal_places=4)


# ============================================================================
# LEADERBOARD SNAPSHOT
# ============================================================================

class LeaderboardEntry(SQLModel, table=True):
    """Recomputable ranking row; replaced wholesale on every pass"""
    __tablename__ = "contest_leaderboard"
    __table_args__ = (
        UniqueConstraint("contest_id", "rank", name="uq_leaderboard_contest_rank"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    contest_id: UUID = Field(foreign_key="contests.id", index=True)
    participant_id: UUID = Field(foreign_key="contest_participants.id")
    user_id: UUID = Field(index=True)
    rank: int = Field(ge=1)
    portfolio_value: int                      # BIGINT (cents)
    computed_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class ContestCreate(SQLModel):
    """Contest creation request (amounts in currency units)"""
    title: str = Field(min_length=1, max_length=200)
    track: str = Field(min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=1000)
    entry_fee: Decimal = Field(default=Decimal("0"), ge=0)
    virtual_capital: Decimal = Field(gt=0)
    max_participants: Optional[int] = Field(default=None, ge=1)
    join_opens_at: Optional[datetime] = None
    allocation_deadline: Optional[datetime] = None
    start_time: datetime
    end_time: datetime
    asset_ids: list[UUID] = Field(min_length=1)


class AssetInfo(SQLModel):
    id: UUID
    symbol: str


class ContestListItem(SQLModel):
    id: UUID
    title: str
    track: str
    entry_fee: Decimal
    start_time: datetime
    status: ContestStatus


class ContestDetails(ContestListItem):
    virtual_capital: Decimal
    end_time: datetime
    max_participants: Optional[int] = None
    assets: list[AssetInfo]


class JoinContestResponse(SQLModel):
    participant_id: UUID
    virtual_capital: Decimal


class AllocationItem(SQLModel):
    asset_id: UUID
    pct: Decimal


class AllocationRequest(SQLModel):
    allocations: list[AllocationItem]


class ContestStatusResponse(SQLModel):
    status: ContestStatus
    current_rank: Optional[int] = None
    portfolio_value: Optional[Decimal] = None


class ContestResultsResponse(SQLModel):
    rank: int
    final_value: Decimal
    payout: Optional[Decimal] = None


class LeaderboardRow(SQLModel):
    rank: int
    user: str
    value: Decimal
