import asyncio
from uuid import uuid4

import pytest

from arena.core.errors import ConflictError, InsufficientFundsError, NotFoundError, ValidationError
from arena.models.wallet import TransactionKind
from arena.services.wallet_ledger import WalletLedger


def test_provision_records_initial_grant(seed, session_factory):
    async def _run():
        user_id = await seed.wallet(10000)
        async with session_factory() as session:
            ledger = WalletLedger(session)
            wallet = await ledger.get_wallet(user_id)
            entries = await ledger.transactions(user_id)
            balance, ledger_sum = await ledger.reconcile(wallet.id)
        return wallet, entries, balance, ledger_sum

    wallet, entries, balance, ledger_sum = asyncio.run(_run())
    assert wallet.balance == 10000
    assert wallet.currency == "VCOIN"
    assert [(e.kind, e.amount, e.balance_after) for e in entries] == [(TransactionKind.INITIAL, 10000, 10000)]
    assert balance == ledger_sum == 10000


def test_provision_twice_conflicts(seed, session_factory):
    async def _run():
        user_id = await seed.wallet(500)
        async with session_factory() as session:
            with pytest.raises(ConflictError):
                await WalletLedger(session).provision(user_id, 500)
            await session.rollback()

    asyncio.run(_run())


def test_zero_grant_writes_no_entry(seed, session_factory):
    async def _run():
        user_id = await seed.wallet(0)
        async with session_factory() as session:
            ledger = WalletLedger(session)
            return (await ledger.get_wallet(user_id)).balance, await ledger.transactions(user_id)

    balance, entries = asyncio.run(_run())
    assert balance == 0
    assert entries == []


def test_debit_beyond_balance_writes_nothing(seed, session_factory):
    async def _run():
        user_id = await seed.wallet(500)
        async with session_factory() as session:
            ledger = WalletLedger(session)
            wallet = await ledger.get_wallet(user_id)
            with pytest.raises(InsufficientFundsError):
                await ledger.debit(wallet.id, 1000, TransactionKind.ADJUSTMENT)
            await session.commit()

        async with session_factory() as session:
            ledger = WalletLedger(session)
            return await seed.balance(user_id), await ledger.transactions(user_id)

    balance, entries = asyncio.run(_run())
    assert balance == 500
    assert len(entries) == 1


def test_debit_unknown_wallet_is_not_found(session_factory):
    async def _run():
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await WalletLedger(session).debit(uuid4(), 100, TransactionKind.ADJUSTMENT)

    asyncio.run(_run())


def test_non_positive_amounts_rejected(seed, session_factory):
    async def _run():
        user_id = await seed.wallet(500)
        async with session_factory() as session:
            ledger = WalletLedger(session)
            wallet = await ledger.get_wallet(user_id)
            with pytest.raises(ValidationError):
                await ledger.credit(wallet.id, 0, TransactionKind.ADJUSTMENT)
            with pytest.raises(ValidationError):
                await ledger.debit(wallet.id, -5, TransactionKind.ADJUSTMENT)
            with pytest.raises(ValidationError):
                await ledger.adjust(user_id, 0)

    asyncio.run(_run())


def test_adjustments_keep_balance_equal_to_ledger(seed, session_factory):
    async def _run():
        user_id = await seed.wallet(1000)
        async with session_factory() as session:
            ledger = WalletLedger(session)
            await ledger.adjust(user_id, 250, "bonus")
            await ledger.adjust(user_id, -400, "correction")
            await session.commit()
            wallet = await ledger.get_wallet(user_id)
            entries = await ledger.transactions(user_id)
            audit = await ledger.reconcile(wallet.id)
        return wallet.balance, entries, audit

    balance, entries, audit = asyncio.run(_run())
    assert balance == 850
    assert audit == (850, 850)
    # newest first
    assert [e.amount for e in entries] == [-400, 250, 1000]
    assert entries[0].balance_after == 850


def test_concurrent_debits_never_overdraw(seed, session_factory):
    async def _run():
        user_id = await seed.wallet(10000)
        async with session_factory() as session:
            wallet_id = (await WalletLedger(session).get_wallet(user_id)).id

        async def attempt():
            async with session_factory() as session:
                try:
                    await WalletLedger(session).debit(wallet_id, 3000, TransactionKind.ADJUSTMENT)
                    await session.commit()
                    return True
                except InsufficientFundsError:
                    await session.rollback()
                    return False

        results = await asyncio.gather(*(attempt() for _ in range(5)))

        async with session_factory() as session:
            audit = await WalletLedger(session).reconcile(wallet_id)
        return results, audit

    results, (balance, ledger_sum) = asyncio.run(_run())
    assert results.count(True) == 3
    assert balance == ledger_sum == 1000
