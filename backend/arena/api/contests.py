"""
Contest API routes
Listing, joining, allocation lock, live status, results and leaderboard.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import cents_to_amount
from arena.core.config import settings
from arena.core.database import get_session
from arena.core.dependencies import get_current_user_id
from arena.core.errors import ConflictError, NotFoundError
from arena.core.security import limiter
from arena.models.contest import (
    AllocationRequest,
    AssetInfo,
    Contest,
    ContestDetails,
    ContestListItem,
    ContestResultsResponse,
    ContestStatus,
    ContestStatusResponse,
    JoinContestResponse,
    LeaderboardRow,
)
from arena.services.contest_lifecycle import ContestLifecycle
from arena.services.leaderboard import LeaderboardService

router = APIRouter()


def _list_item(contest: Contest) -> ContestListItem:
    return ContestListItem(
        id=contest.id,
        title=contest.title,
        track=contest.track,
        entry_fee=cents_to_amount(contest.entry_fee),
        start_time=contest.start_time,
        status=contest.status,
    )


@router.get("", response_model=List[ContestListItem])
async def list_contests(session: AsyncSession = Depends(get_session)):
    """Contests that have not ended yet, soonest first."""
    contests = await ContestLifecycle(session).list_open()
    return [_list_item(c) for c in contests]


@router.get("/{contest_id}", response_model=ContestDetails)
async def get_contest(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    lifecycle = ContestLifecycle(session)
    contest = await lifecycle.get_contest(contest_id)
    assets = await lifecycle.contest_assets(contest_id)

    return ContestDetails(
        **_list_item(contest).model_dump(),
        virtual_capital=cents_to_amount(contest.virtual_capital),
        end_time=contest.end_time,
        max_participants=contest.max_participants,
        assets=[AssetInfo(id=a.id, symbol=a.symbol) for a in assets],
    )


@router.post("/{contest_id}/join", response_model=JoinContestResponse)
@limiter.limit(settings.RATE_LIMIT_JOIN)
async def join_contest(
    request: Request,
    contest_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Pay the entry fee and enroll."""
    participant, contest = await ContestLifecycle(session).join(contest_id, user_id)
    return JoinContestResponse(
        participant_id=participant.id,
        virtual_capital=cents_to_amount(contest.virtual_capital),
    )


@router.post("/{contest_id}/allocate")
@limiter.limit(settings.RATE_LIMIT_ALLOCATE)
async def allocate(
    request: Request,
    contest_id: UUID,
    body: AllocationRequest,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Lock the participant's allocation. Percentages must sum to exactly 100."""
    await ContestLifecycle(session).lock_allocation(contest_id, user_id, body.allocations)
    return {"locked": True}


@router.get("/{contest_id}/status", response_model=ContestStatusResponse)
async def contest_status(
    contest_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Contest status plus the caller's position in the latest leaderboard snapshot."""
    contest = await ContestLifecycle(session).get_contest(contest_id)
    standing = await LeaderboardService(session).standing(contest_id, user_id)

    return ContestStatusResponse(
        status=contest.status,
        current_rank=standing.rank if standing else None,
        portfolio_value=cents_to_amount(standing.portfolio_value) if standing else None,
    )


@router.get("/{contest_id}/results", response_model=ContestResultsResponse)
async def contest_results(
    contest_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    lifecycle = ContestLifecycle(session)
    contest = await lifecycle.get_contest(contest_id)
    participant = await lifecycle.get_participant(contest_id, user_id)
    if not participant:
        raise NotFoundError("Not a participant of this contest")
    if contest.status != ContestStatus.SETTLED:
        raise ConflictError("Contest has not been settled yet")

    return ContestResultsResponse(
        rank=participant.final_rank,
        final_value=cents_to_amount(participant.final_value),
        payout=cents_to_amount(participant.payout) if participant.payout else None,
    )


@router.get("/{contest_id}/leaderboard", response_model=List[LeaderboardRow])
async def contest_leaderboard(
    contest_id: UUID,
    limit: int = Query(default=settings.LEADERBOARD_DEFAULT_LIMIT, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    """Latest completed snapshot; never computed on request."""
    await ContestLifecycle(session).get_contest(contest_id)
    entries = await LeaderboardService(session).top(contest_id, limit)
    return [
        LeaderboardRow(rank=e.rank, user=str(e.user_id), value=cents_to_amount(e.portfolio_value))
        for e in entries
    ]
