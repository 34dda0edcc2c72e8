"""
Wallet Ledger Service

All virtual money movement goes through this module. Every credit/debit
appends a WalletTransaction and moves the cached Wallet.balance in the same
unit of work; the caller owns the transaction and decides when to commit, so
a debit can be bundled with other state changes (e.g. contest join).
"""

from typing import List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import utcnow
from arena.core.config import settings
from arena.core.errors import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from arena.models.wallet import TransactionKind, Wallet, WalletTransaction

logger = logging.getLogger(__name__)


class WalletLedger:
    """
    Append-only ledger with a materialized balance per wallet.

    Balance changes are single conditional UPDATE statements, so the
    insufficient-funds check and the decrement can never be separated by a
    concurrent debit.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def provision(self, user_id: UUID, initial_amount: Optional[int] = None) -> Wallet:
        """Create a user's wallet with its initial grant (cents)."""
        if initial_amount is None:
            initial_amount = settings.WALLET_INITIAL_BALANCE
        if initial_amount < 0:
            raise ValidationError("Initial balance cannot be negative")

        wallet = Wallet(user_id=user_id, balance=0, currency=settings.CURRENCY)
        self.session.add(wallet)
        try:
            await self.session.flush()
        except IntegrityError:
            raise ConflictError("Wallet already exists")

        if initial_amount > 0:
            await self.credit(wallet.id, initial_amount, TransactionKind.INITIAL,
                              description="Initial grant")
            await self.session.refresh(wallet)
        return wallet

    async def get_wallet(self, user_id: UUID) -> Wallet:
        result = await self.session.execute(select(Wallet).where(Wallet.user_id == user_id))
        wallet = result.scalar_one_or_none()
        if not wallet:
            raise NotFoundError("Wallet not found")
        return wallet

    async def credit(
        self,
        wallet_id: UUID,
        amount: int,
        kind: TransactionKind,
        reference_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")

        result = await self.session.execute(
            update(Wallet)
            .where(Wallet.id == wallet_id)
            .values(balance=Wallet.balance + amount, updated_at=utcnow())
            .returning(Wallet.balance)
        )
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
            raise NotFoundError("Wallet not found")

        return await self._append(wallet_id, amount, balance_after, kind, reference_id, description)

    async def debit(
        self,
        wallet_id: UUID,
        amount: int,
        kind: TransactionKind,
        reference_id: Optional[UUID] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        if amount <= 0:
            raise ValidationError("Debit amount must be positive")

        result = await self.session.execute(
            update(Wallet)
            .where(Wallet.id == wallet_id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount, updated_at=utcnow())
            .returning(Wallet.balance)
        )
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
            exists = await self.session.scalar(select(Wallet.id).where(Wallet.id == wallet_id))
            if exists is None:
                raise NotFoundError("Wallet not found")
            raise InsufficientFundsError()

        return await self._append(wallet_id, -amount, balance_after, kind, reference_id, description)

    async def adjust(self, user_id: UUID, amount: int, description: Optional[str] = None) -> WalletTransaction:
        """Manual correction: positive credits, negative debits."""
        if amount == 0:
            raise ValidationError("Adjustment amount must be non-zero")
        wallet = await self.get_wallet(user_id)
        if amount > 0:
            return await self.credit(wallet.id, amount, TransactionKind.ADJUSTMENT, description=description)
        return await self.debit(wallet.id, -amount, TransactionKind.ADJUSTMENT, description=description)

    async def transactions(self, user_id: UUID, limit: int = 50) -> List[WalletTransaction]:
        """Newest first."""
        stmt = (
            select(WalletTransaction)
            .join(Wallet, WalletTransaction.wallet_id == Wallet.id)
            .where(Wallet.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def collected_fees(self, contest_id: UUID) -> int:
        """Prize pool of a contest: every entry fee debited against it (cents)."""
        total = await self.session.scalar(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.kind == TransactionKind.ENTRY_FEE,
                WalletTransaction.reference_id == contest_id,
            )
        )
        return -int(total)

    async def reconcile(self, wallet_id: UUID) -> Tuple[int, int]:
        """(cached balance, sum of ledger entries) for audit."""
        balance = await self.session.scalar(select(Wallet.balance).where(Wallet.id == wallet_id))
        if balance is None:
            raise NotFoundError("Wallet not found")
        ledger_sum = await self.session.scalar(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.wallet_id == wallet_id
            )
        )
        if balance != ledger_sum:
            logger.error(f"Ledger drift on wallet {wallet_id}: balance={balance} ledger={ledger_sum}")
        return int(balance), int(ledger_sum)

    async def _append(
        self,
        wallet_id: UUID,
        amount: int,
        balance_after: int,
        kind: TransactionKind,
        reference_id: Optional[UUID],
        description: Optional[str],
    ) -> WalletTransaction:
        entry = WalletTransaction(
            wallet_id=wallet_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            reference_id=reference_id,
            description=description,
        )
        self.session.add(entry)
        await self.session.flush()
        logger.debug(f"Ledger {kind.value} {amount:+d} on wallet {wallet_id} -> {balance_after}")
        return entry
