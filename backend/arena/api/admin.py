"""
Admin API routes
Operator surface: asset catalog, contest creation, wallet provisioning and
adjustments, manual settlement retry. Every route requires X-Admin-Token.
"""

from uuid import UUID
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import amount_to_cents, cents_to_amount
from arena.core.database import get_session
from arena.core.dependencies import require_admin
from arena.core.errors import ConflictError, InternalError
from arena.core.redis import get_redis_client
from arena.models.contest import AssetInfo, ContestCreate, ContestDetails
from arena.models.market import Asset, AssetCreate
from arena.models.wallet import TransactionResponse, WalletAdjustment, WalletProvision
from arena.services.contest_lifecycle import ContestLifecycle
from arena.services.scheduler import finalize_contest
from arena.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


async def _commit(session: AsyncSession, action: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Admin {action} failed: {e}", exc_info=True)
        raise InternalError()


@router.post("/assets")
async def create_asset(body: AssetCreate, session: AsyncSession = Depends(get_session)):
    """Register an asset. instrument_id links it to the tick feed (e.g. binance:BTCUSDT)."""
    asset = Asset(
        symbol=body.symbol.upper(),
        name=body.name,
        asset_type=body.asset_type,
        instrument_id=body.instrument_id,
    )
    session.add(asset)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError("Asset symbol or instrument already registered")

    logger.info(f"Asset {asset.symbol} registered ({asset.instrument_id or 'no feed'})")
    return {"id": asset.id, "symbol": asset.symbol, "instrument_id": asset.instrument_id}


@router.post("/contests", response_model=ContestDetails)
async def create_contest(body: ContestCreate, session: AsyncSession = Depends(get_session)):
    lifecycle = ContestLifecycle(session)
    contest = await lifecycle.create_contest(body)
    assets = await lifecycle.contest_assets(contest.id)

    return ContestDetails(
        id=contest.id,
        title=contest.title,
        track=contest.track,
        entry_fee=cents_to_amount(contest.entry_fee),
        start_time=contest.start_time,
        status=contest.status,
        virtual_capital=cents_to_amount(contest.virtual_capital),
        end_time=contest.end_time,
        max_participants=contest.max_participants,
        assets=[AssetInfo(id=a.id, symbol=a.symbol) for a in assets],
    )


@router.post("/wallets")
async def provision_wallet(body: WalletProvision, session: AsyncSession = Depends(get_session)):
    initial = amount_to_cents(body.initial_balance) if body.initial_balance is not None else None
    wallet = await WalletLedger(session).provision(body.user_id, initial)
    await _commit(session, "wallet provisioning")

    logger.info(f"Wallet provisioned for user {body.user_id} with {wallet.balance}")
    return {
        "user_id": wallet.user_id,
        "balance": cents_to_amount(wallet.balance),
        "currency": wallet.currency,
    }


@router.post("/wallets/{user_id}/adjust", response_model=TransactionResponse)
async def adjust_wallet(
    user_id: UUID,
    body: WalletAdjustment,
    session: AsyncSession = Depends(get_session),
):
    """Signed correction: positive credits, negative debits."""
    entry = await WalletLedger(session).adjust(user_id, amount_to_cents(body.amount), body.description)
    await _commit(session, "wallet adjustment")

    logger.info(f"Wallet of user {user_id} adjusted by {entry.amount}")
    return TransactionResponse(
        id=entry.id,
        amount=cents_to_amount(entry.amount),
        type=entry.kind,
        created_at=entry.created_at,
    )


@router.get("/wallets/{user_id}/reconcile")
async def reconcile_wallet(user_id: UUID, session: AsyncSession = Depends(get_session)):
    ledger = WalletLedger(session)
    wallet = await ledger.get_wallet(user_id)
    balance, ledger_sum = await ledger.reconcile(wallet.id)
    return {
        "balance": cents_to_amount(balance),
        "ledger_sum": cents_to_amount(ledger_sum),
        "consistent": balance == ledger_sum,
    }


@router.post("/contests/{contest_id}/settle")
async def settle_contest(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    """Retry final ranking and settlement of an ended contest. No-op otherwise."""
    result = await finalize_contest(session, contest_id, get_redis_client())
    if result is None:
        contest = await ContestLifecycle(session).get_contest(contest_id)
        return {"settled": False, "status": contest.status}

    return {
        "settled": True,
        "pool": cents_to_amount(result.pool),
        "payouts": {str(pid): cents_to_amount(amount) for pid, amount in result.payouts.items()},
        "settled_at": result.settled_at,
    }
