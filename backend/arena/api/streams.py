"""
WebSocket feeds
Replay price stream and per-contest leaderboard stream. Delivery is
best-effort: nothing is buffered for slow or disconnected clients.
"""

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from arena.core.config import settings
from arena.core.database import get_session_factory
from arena.core.errors import NotFoundError
from arena.core.redis import get_redis_client, leaderboard_channel
from arena.services.contest_lifecycle import ContestLifecycle
from arena.services.leaderboard import LeaderboardService, snapshot_rows
from arena.services.replay import ReplayService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/replay/{replay_id}")
async def replay_stream(websocket: WebSocket, replay_id: UUID):
    """Emit {timestamp, price} per candle at a fixed pace, then close."""
    await websocket.accept()

    try:
        async with get_session_factory()() as session:
            service = ReplayService(session)
            frames = await service.frames(await service.get(replay_id))
    except NotFoundError as e:
        await websocket.send_json({"error": e.message})
        await websocket.close(code=1008)
        return

    try:
        for frame in frames:
            await websocket.send_text(frame.model_dump_json())
            await asyncio.sleep(settings.REPLAY_TICK_INTERVAL_SECONDS)
    except WebSocketDisconnect:
        logger.info(f"Replay {replay_id} client disconnected")
        return

    await websocket.close()


async def _snapshot(contest_id: UUID):
    async with get_session_factory()() as session:
        return await LeaderboardService(session).top(contest_id)


@router.websocket("/ws/contests/{contest_id}/leaderboard")
async def leaderboard_stream(websocket: WebSocket, contest_id: UUID):
    """
    Full ranked array on connect and after every recompute. Relays the
    Redis channel when Redis is up, otherwise polls the stored snapshot.
    """
    await websocket.accept()

    try:
        async with get_session_factory()() as session:
            await ContestLifecycle(session).get_contest(contest_id)
    except NotFoundError as e:
        await websocket.send_json({"error": e.message})
        await websocket.close(code=1008)
        return

    entries = await _snapshot(contest_id)
    last_computed = entries[0].computed_at if entries else None

    try:
        await websocket.send_json(snapshot_rows(entries))

        redis = get_redis_client()
        if redis:
            await relay_channel(websocket, redis, leaderboard_channel(contest_id))
            return

        while True:
            try:
                # Doubles as the poll timer and disconnect detection
                await asyncio.wait_for(websocket.receive_text(), timeout=settings.LEADERBOARD_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass

            entries = await _snapshot(contest_id)
            computed = entries[0].computed_at if entries else None
            if computed != last_computed:
                last_computed = computed
                await websocket.send_json(snapshot_rows(entries))

    except WebSocketDisconnect:
        logger.info(f"Leaderboard client for contest {contest_id} disconnected")


async def relay_channel(websocket: WebSocket, redis, channel: str) -> None:
    """
    Forward every message published on `channel` to the socket until the
    client disconnects or the subscription fails. The socket is read
    concurrently so a disconnect ends the relay even on a silent channel.
    """
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    async def forward() -> None:
        async for message in pubsub.listen():
            if message["type"] == "message":
                await websocket.send_text(message["data"].decode())

    async def drain() -> None:
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, (WebSocketDisconnect, RuntimeError)):
                logger.error(f"Relay of {channel} failed: {error}")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
