import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from arena.api import streams
from arena.core.config import settings
from arena.main import app
from arena.models.contest import AllocationItem, ContestStatus
from arena.services.contest_lifecycle import ContestLifecycle
from arena.services.leaderboard import LeaderboardService

from conftest import NOW

ADMIN = {"X-Admin-Token": "test-admin"}


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


@pytest.fixture
def client(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "test-admin")
    monkeypatch.setattr(settings, "REPLAY_TICK_INTERVAL_SECONDS", 0)
    return TestClient(app)


def _create_contest(client, seed, asset_ids, entry_fee="10.00"):
    response = client.post("/admin/contests", headers=ADMIN, json={
        "title": "Weekly Crypto Cup",
        "track": "crypto",
        "entry_fee": entry_fee,
        "virtual_capital": "1000.00",
        "start_time": (NOW + timedelta(hours=1)).isoformat(),
        "end_time": (NOW + timedelta(hours=2)).isoformat(),
        "asset_ids": [str(a) for a in asset_ids],
    })
    assert response.status_code == 200, response.text
    contest_id = UUID(response.json()["id"])
    asyncio.run(seed.force_status(contest_id, ContestStatus.JOINING_OPEN))
    return contest_id


async def _lock_all_in(session_factory, contest_id, user_id, asset_id):
    async with session_factory() as session:
        await ContestLifecycle(session).lock_allocation(
            contest_id, user_id, [AllocationItem(asset_id=asset_id, pct=Decimal("100"))],
            now=NOW + timedelta(seconds=10),
        )


def test_identity_is_required(client):
    response = client.get("/wallet")
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "UNAUTHORIZED", "message": "Authentication failed"}

    assert client.get("/wallet", headers={"X-User-Id": "not-a-uuid"}).status_code == 401


def test_admin_routes_require_token(client):
    response = client.post("/admin/wallets", json={"user_id": str(uuid4())})
    assert response.status_code == 403
    assert response.json()["error"] == "FORBIDDEN"


def test_wallet_provision_and_read(client):
    user_id = uuid4()
    assert client.get("/wallet", headers=as_user(user_id)).status_code == 404

    response = client.post("/admin/wallets", headers=ADMIN, json={"user_id": str(user_id), "initial_balance": "100.00"})
    assert response.status_code == 200
    assert client.post("/admin/wallets", headers=ADMIN, json={"user_id": str(user_id)}).status_code == 409

    assert client.get("/wallet", headers=as_user(user_id)).json() == {"balance": "100.00", "currency": "VCOIN"}

    adjusted = client.post(f"/admin/wallets/{user_id}/adjust", headers=ADMIN, json={"amount": "-25.50"})
    assert adjusted.json()["amount"] == "-25.50"

    history = client.get("/wallet/transactions", headers=as_user(user_id)).json()
    assert [(t["amount"], t["type"]) for t in history] == [("-25.50", "adjustment"), ("100.00", "initial")]

    audit = client.get(f"/admin/wallets/{user_id}/reconcile", headers=ADMIN).json()
    assert audit["consistent"] is True


def test_join_and_allocate_flow(client, seed):
    btc = asyncio.run(seed.asset("BTC"))
    eth = asyncio.run(seed.asset("ETH"))
    contest_id = _create_contest(client, seed, [btc.id, eth.id])
    user_id = asyncio.run(seed.wallet(10000))
    headers = as_user(user_id)

    listed = client.get("/contests").json()
    assert [c["id"] for c in listed] == [str(contest_id)]
    details = client.get(f"/contests/{contest_id}").json()
    assert {a["symbol"] for a in details["assets"]} == {"BTC", "ETH"}

    joined = client.post(f"/contests/{contest_id}/join", headers=headers)
    assert joined.status_code == 200
    assert joined.json()["virtual_capital"] == "1000.00"
    assert client.post(f"/contests/{contest_id}/join", headers=headers).status_code == 409
    assert client.get("/wallet", headers=headers).json()["balance"] == "90.00"

    bad = client.post(f"/contests/{contest_id}/allocate", headers=headers, json={"allocations": [
        {"asset_id": str(btc.id), "pct": 60}, {"asset_id": str(eth.id), "pct": 39},
    ]})
    assert bad.status_code == 400
    assert bad.json()["error"] == "VALIDATION_ERROR"

    good = client.post(f"/contests/{contest_id}/allocate", headers=headers, json={"allocations": [
        {"asset_id": str(btc.id), "pct": 60}, {"asset_id": str(eth.id), "pct": 40},
    ]})
    assert good.json() == {"locked": True}

    again = client.post(f"/contests/{contest_id}/allocate", headers=headers, json={"allocations": [
        {"asset_id": str(btc.id), "pct": 100},
    ]})
    assert again.status_code == 409

    status = client.get(f"/contests/{contest_id}/status", headers=headers).json()
    assert status == {"status": "joining_open", "current_rank": None, "portfolio_value": None}
    assert client.get(f"/contests/{contest_id}/results", headers=headers).status_code == 409
    assert client.get(f"/contests/{contest_id}/leaderboard").json() == []


def test_join_errors_map_to_status_codes(client, seed):
    btc = asyncio.run(seed.asset("BTC"))
    contest_id = _create_contest(client, seed, [btc.id])
    poor = asyncio.run(seed.wallet(500))

    response = client.post(f"/contests/{contest_id}/join", headers=as_user(poor))
    assert response.status_code == 402
    assert response.json()["error"] == "PAYMENT_REQUIRED"
    assert client.post(f"/contests/{uuid4()}/join", headers=as_user(poor)).status_code == 404

    asyncio.run(seed.force_status(contest_id, ContestStatus.LIVE))
    rich = asyncio.run(seed.wallet(10000))
    assert client.post(f"/contests/{contest_id}/join", headers=as_user(rich)).status_code == 409


def test_allocate_after_start_is_forbidden(client, seed):
    btc = asyncio.run(seed.asset("BTC"))
    contest_id = _create_contest(client, seed, [btc.id])
    user_id = asyncio.run(seed.wallet(10000))
    client.post(f"/contests/{contest_id}/join", headers=as_user(user_id))
    asyncio.run(seed.force_status(contest_id, ContestStatus.LIVE))

    response = client.post(f"/contests/{contest_id}/allocate", headers=as_user(user_id), json={"allocations": [
        {"asset_id": str(btc.id), "pct": 100},
    ]})
    assert response.status_code == 403


def test_results_after_settlement(client, seed, session_factory):
    btc = asyncio.run(seed.asset("BTC"))
    asyncio.run(seed.tick(btc.id, NOW, "100"))
    contest_id = _create_contest(client, seed, [btc.id])
    winner, idle = asyncio.run(seed.wallet(10000)), asyncio.run(seed.wallet(10000))
    for user_id in (winner, idle):
        client.post(f"/contests/{contest_id}/join", headers=as_user(user_id))
    asyncio.run(_lock_all_in(session_factory, contest_id, winner, btc.id))
    asyncio.run(seed.tick(btc.id, NOW + timedelta(minutes=90), "125"))
    asyncio.run(seed.force_status(contest_id, ContestStatus.ENDED))

    settled = client.post(f"/admin/contests/{contest_id}/settle", headers=ADMIN).json()
    assert settled["settled"] is True
    assert client.post(f"/admin/contests/{contest_id}/settle", headers=ADMIN).json()["settled"] is False

    assert client.get(f"/contests/{contest_id}/results", headers=as_user(winner)).json() == {
        "rank": 1, "final_value": "1250.00", "payout": "20.00",
    }
    assert client.get(f"/contests/{contest_id}/results", headers=as_user(idle)).json() == {
        "rank": 2, "final_value": "0.00", "payout": None,
    }
    assert client.get(f"/contests/{contest_id}/results", headers=as_user(uuid4())).status_code == 404

    board = client.get(f"/contests/{contest_id}/leaderboard", params={"limit": 10}).json()
    assert board == [{"rank": 1, "user": str(winner), "value": "1250.00"}]
    assert client.get(f"/contests/{contest_id}/leaderboard", params={"limit": 500}).status_code == 400


def test_market_history_and_latest_price(client, seed):
    btc = asyncio.run(seed.asset("BTC"))
    asyncio.run(seed.tick(btc.id, NOW + timedelta(seconds=5), "100"))
    asyncio.run(seed.tick(btc.id, NOW + timedelta(minutes=1, seconds=5), "102"))

    window = {"from": NOW.isoformat(), "to": (NOW + timedelta(minutes=5)).isoformat()}
    candles = client.get(f"/market/prices/{btc.id}", params=window).json()
    assert [Decimal(c["close"]) for c in candles] == [Decimal("100"), Decimal("102")]

    empty = {"from": (NOW - timedelta(days=2)).isoformat(), "to": (NOW - timedelta(days=1)).isoformat()}
    assert client.get(f"/market/prices/{btc.id}", params=empty).status_code == 404

    latest = client.get(f"/market/prices/{btc.id}/latest").json()
    assert latest["source"] == "candles"
    assert latest["timestamp"] == (NOW + timedelta(minutes=1, seconds=5)).isoformat()


def test_replay_streams_candles_then_closes(client, seed):
    btc = asyncio.run(seed.asset("BTC"))
    asyncio.run(seed.tick(btc.id, NOW, "100"))
    asyncio.run(seed.tick(btc.id, NOW + timedelta(minutes=1), "101.5"))
    user_id = uuid4()

    bad = client.post("/replay", headers=as_user(user_id), json={
        "asset_id": str(btc.id), "from": NOW.isoformat(), "to": NOW.isoformat(),
    })
    assert bad.status_code == 400

    created = client.post("/replay", headers=as_user(user_id), json={
        "asset_id": str(btc.id), "from": NOW.isoformat(), "to": (NOW + timedelta(hours=1)).isoformat(),
    }).json()
    assert created["ws_url"] == f"/ws/replay/{created['replay_id']}"

    with client.websocket_connect(created["ws_url"]) as ws:
        frames = [ws.receive_json(), ws.receive_json()]
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()

    assert frames == [
        {"timestamp": NOW.isoformat(), "price": 100.0},
        {"timestamp": (NOW + timedelta(minutes=1)).isoformat(), "price": 101.5},
    ]


def test_leaderboard_stream_sends_current_snapshot(client, seed, session_factory):
    btc = asyncio.run(seed.asset("BTC"))
    asyncio.run(seed.tick(btc.id, NOW, "100"))
    contest_id = _create_contest(client, seed, [btc.id])
    user_id = asyncio.run(seed.wallet(10000))
    client.post(f"/contests/{contest_id}/join", headers=as_user(user_id))
    asyncio.run(_lock_all_in(session_factory, contest_id, user_id, btc.id))
    asyncio.run(seed.tick(btc.id, NOW + timedelta(minutes=30), "110"))
    asyncio.run(seed.force_status(contest_id, ContestStatus.LIVE))

    async def recompute():
        async with session_factory() as session:
            await LeaderboardService(session).recompute(contest_id)

    asyncio.run(recompute())

    with client.websocket_connect(f"/ws/contests/{contest_id}/leaderboard") as ws:
        assert ws.receive_json() == [{"rank": 1, "user": str(user_id), "value": "1100.00"}]

    with client.websocket_connect(f"/ws/contests/{uuid4()}/leaderboard") as ws:
        assert ws.receive_json() == {"error": "Contest not found"}


class SilentChannel:
    """Pub/sub stand-in: one published message, then nothing ever again."""

    def __init__(self, payload):
        self.payload = payload
        self.subscribed = set()
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed.add(channel)

    async def unsubscribe(self, channel):
        self.subscribed.discard(channel)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        yield {"type": "subscribe", "data": 1}
        yield {"type": "message", "data": self.payload}
        await asyncio.Event().wait()


class FakeRedis:
    def __init__(self, pubsub):
        self._pubsub = pubsub

    def pubsub(self):
        return self._pubsub


def test_leaderboard_relay_ends_when_client_leaves(client, seed, monkeypatch):
    btc = asyncio.run(seed.asset("BTC"))
    contest_id = _create_contest(client, seed, [btc.id])
    channel = SilentChannel(b'[{"rank": 1, "user": "u", "value": "1.00"}]')
    monkeypatch.setattr(streams, "get_redis_client", lambda: FakeRedis(channel))

    with client.websocket_connect(f"/ws/contests/{contest_id}/leaderboard") as ws:
        assert ws.receive_json() == []
        assert ws.receive_json() == [{"rank": 1, "user": "u", "value": "1.00"}]

    # The session only exits once the endpoint has returned
    assert channel.closed is True
    assert channel.subscribed == set()
