import asyncio
from decimal import Decimal

import pytest

from arena.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from arena.models.contest import AllocationItem, ContestStatus
from arena.services.allocation_store import AllocationStore
from arena.services.contest_lifecycle import ContestLifecycle

from conftest import NOW


def split(**pcts):
    """split(a=(asset_id, "60"), ...) -> allocation items"""
    return [AllocationItem(asset_id=asset_id, pct=Decimal(pct)) for asset_id, pct in pcts.values()]


async def _setup(seed, session_factory, **contest_kwargs):
    btc = await seed.asset("BTC")
    eth = await seed.asset("ETH")
    contest = await seed.contest([btc.id, eth.id], **contest_kwargs)
    user_id = await seed.wallet(10000)
    async with session_factory() as session:
        participant, _ = await ContestLifecycle(session).join(contest.id, user_id)
    return btc, eth, contest, user_id, participant


def test_lock_once_then_conflict(seed, session_factory):
    async def _run():
        btc, eth, contest, user_id, participant = await _setup(seed, session_factory)

        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await ContestLifecycle(session).lock_allocation(
                    contest.id, user_id, split(a=(btc.id, "60"), b=(eth.id, "39")), now=NOW
                )

        async with session_factory() as session:
            locked = await ContestLifecycle(session).lock_allocation(
                contest.id, user_id, split(a=(btc.id, "60"), b=(eth.id, "40")), now=NOW
            )

        async with session_factory() as session:
            with pytest.raises(ConflictError):
                await ContestLifecycle(session).lock_allocation(
                    contest.id, user_id, split(a=(btc.id, "100")), now=NOW
                )

        async with session_factory() as session:
            rows = await AllocationStore(session).for_participant(participant.id)
        return locked, {r.asset_id: r.percentage for r in rows}, btc, eth

    locked, rows, btc, eth = asyncio.run(_run())
    assert locked.locked_at == NOW
    assert rows == {btc.id: Decimal("60"), eth.id: Decimal("40")}


def test_fractional_percentages_must_sum_exactly(seed, session_factory):
    async def _run():
        btc, eth, contest, user_id, _ = await _setup(seed, session_factory)
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await ContestLifecycle(session).lock_allocation(
                    contest.id, user_id, split(a=(btc.id, "33.3333"), b=(eth.id, "66.6666"))
                )
        async with session_factory() as session:
            return await ContestLifecycle(session).lock_allocation(
                contest.id, user_id, split(a=(btc.id, "33.3334"), b=(eth.id, "66.6666"))
            )

    assert asyncio.run(_run()).locked_at is not None


def test_percentages_finer_than_storage_are_rejected(seed, session_factory):
    async def _run():
        btc, eth, contest, user_id, participant = await _setup(seed, session_factory)
        async with session_factory() as session:
            # Sums to exactly 100 but would be stored as 33.3333 + 66.6667
            with pytest.raises(ValidationError):
                await ContestLifecycle(session).lock_allocation(
                    contest.id, user_id, split(a=(btc.id, "33.33333"), b=(eth.id, "66.66667"))
                )
        async with session_factory() as session:
            await ContestLifecycle(session).lock_allocation(
                contest.id, user_id, split(a=(btc.id, "33.3333"), b=(eth.id, "66.66670"))
            )
            rows = await AllocationStore(session).for_participant(participant.id)
        return sum((Decimal(r.percentage) for r in rows), Decimal("0"))

    assert asyncio.run(_run()) == Decimal("100")


def test_lock_after_start_is_forbidden(seed, session_factory):
    async def _run():
        btc, eth, contest, user_id, _ = await _setup(seed, session_factory)
        await seed.force_status(contest.id, ContestStatus.LIVE)
        async with session_factory() as session:
            with pytest.raises(ForbiddenError):
                await ContestLifecycle(session).lock_allocation(contest.id, user_id, split(a=(btc.id, "100")))

    asyncio.run(_run())


def test_lock_without_joining_is_not_found(seed, session_factory):
    async def _run():
        btc, eth, contest, _, _ = await _setup(seed, session_factory)
        stranger = await seed.wallet(10000)
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await ContestLifecycle(session).lock_allocation(contest.id, stranger, split(a=(btc.id, "100")))

    asyncio.run(_run())


@pytest.mark.parametrize("shape", ["foreign_asset", "duplicate", "non_positive"])
def test_malformed_allocation_shapes(seed, session_factory, shape):
    async def _run():
        btc, eth, contest, user_id, participant = await _setup(seed, session_factory)
        doge = await seed.asset("DOGE")
        items = {
            "foreign_asset": split(a=(btc.id, "50"), b=(doge.id, "50")),
            "duplicate": split(a=(btc.id, "50"), b=(btc.id, "50")),
            "non_positive": split(a=(btc.id, "110"), b=(eth.id, "-10")),
        }[shape]

        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await ContestLifecycle(session).lock_allocation(contest.id, user_id, items)
            return await AllocationStore(session).for_participant(participant.id)

    assert asyncio.run(_run()) == []


def test_store_refuses_locked_participant(seed, session_factory):
    async def _run():
        btc, eth, contest, user_id, participant = await _setup(seed, session_factory)
        async with session_factory() as session:
            await ContestLifecycle(session).lock_allocation(contest.id, user_id, split(a=(btc.id, "100")))
        async with session_factory() as session:
            with pytest.raises(ConflictError):
                await AllocationStore(session).save(participant.id, split(a=(eth.id, "100")))

    asyncio.run(_run())


def test_last_lock_in_full_contest_closes_allocation(seed, session_factory):
    async def _run():
        btc, eth, contest, first, _ = await _setup(seed, session_factory, max_participants=2)
        second = await seed.wallet(10000)
        async with session_factory() as session:
            await ContestLifecycle(session).join(contest.id, second)

        statuses = []
        for user_id in (first, second):
            async with session_factory() as session:
                lifecycle = ContestLifecycle(session)
                await lifecycle.lock_allocation(contest.id, user_id, split(a=(btc.id, "100")))
                statuses.append((await lifecycle.get_contest(contest.id)).status)
        return statuses

    assert asyncio.run(_run()) == [ContestStatus.JOINING_OPEN, ContestStatus.ALLOCATION_LOCKED]


def test_concurrent_locks_have_one_winner(seed, session_factory):
    async def _run():
        btc, eth, contest, user_id, participant = await _setup(seed, session_factory)

        async def attempt(items):
            async with session_factory() as session:
                try:
                    await ContestLifecycle(session).lock_allocation(contest.id, user_id, items)
                    return "locked"
                except ConflictError:
                    return "conflict"

        outcomes = await asyncio.gather(
            attempt(split(a=(btc.id, "100"))),
            attempt(split(a=(btc.id, "50"), b=(eth.id, "50"))),
            attempt(split(a=(eth.id, "100"))),
        )
        async with session_factory() as session:
            rows = await AllocationStore(session).for_participant(participant.id)
        return outcomes, rows

    outcomes, rows = asyncio.run(_run())
    assert sorted(outcomes) == ["conflict", "conflict", "locked"]
    assert sum(r.percentage for r in rows) == Decimal("100")
