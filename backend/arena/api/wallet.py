"""
Wallet API routes
Virtual wallet balance and ledger history of the calling user.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import cents_to_amount
from arena.core.database import get_session
from arena.core.dependencies import get_current_user_id
from arena.models.wallet import TransactionResponse, WalletResponse
from arena.services.wallet_ledger import WalletLedger

router = APIRouter()


@router.get("", response_model=WalletResponse)
async def get_wallet(
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    wallet = await WalletLedger(session).get_wallet(user_id)
    return WalletResponse(balance=cents_to_amount(wallet.balance), currency=wallet.currency)


@router.get("/transactions", response_model=List[TransactionResponse])
async def get_transactions(
    limit: int = Query(default=50, ge=1, le=50),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Newest first, at most 50."""
    entries = await WalletLedger(session).transactions(user_id, limit)
    return [
        TransactionResponse(
            id=entry.id,
            amount=cents_to_amount(entry.amount),
            type=entry.kind,
            created_at=entry.created_at,
        )
        for entry in entries
    ]
