"""
Replay API routes
Creates a replay window; frames are streamed from /ws/replay/{replay_id}.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.database import get_session
from arena.core.dependencies import get_current_user_id
from arena.models.replay import ReplayCreate, ReplayCreateResponse
from arena.services.replay import ReplayService

router = APIRouter()


@router.post("", response_model=ReplayCreateResponse)
async def create_replay(
    body: ReplayCreate,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    replay = await ReplayService(session).create(user_id, body.asset_id, body.start, body.end)
    return ReplayCreateResponse(replay_id=replay.id, ws_url=f"/ws/replay/{replay.id}")
