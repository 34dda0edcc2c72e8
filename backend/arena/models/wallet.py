"""
Wallet models: Wallet, WalletTransaction
Maps to: wallets, wallet_transactions tables
"""

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4
from enum import Enum

from arena.core.clock import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class TransactionKind(str, Enum):
    INITIAL = "initial"
    ENTRY_FEE = "entry_fee"
    PAYOUT = "payout"
    ADJUSTMENT = "adjustment"


# ============================================================================
# WALLET MODEL
# ============================================================================

class Wallet(SQLModel, table=True):
    """
    User's virtual wallet. The balance is a cache of the ledger:
    balance == sum(wallet_transactions.amount) for the wallet at all times.
    """
    __tablename__ = "wallets"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(unique=True, index=True)
    balance: int = Field(default=0, ge=0)      # BIGINT (cents)
    currency: str = Field(default="VCOIN", max_length=10)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# WALLET TRANSACTION MODEL (append-only ledger)
# ============================================================================

class WalletTransaction(SQLModel, table=True):
    """Immutable record of one money movement"""
    __tablename__ = "wallet_transactions"
    # One entry fee / payout per wallet per contest
    __table_args__ = (
        UniqueConstraint("wallet_id", "kind", "reference_id", name="uq_wallet_tx_kind_ref"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    wallet_id: UUID = Field(foreign_key="wallets.id", index=True)

    kind: TransactionKind
    amount: int                            # BIGINT (cents), signed, non-zero
    balance_after: int                     # BIGINT (cents)

    reference_id: Optional[UUID] = Field(default=None, index=True)
    description: Optional[str] = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=utcnow, index=True)


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class WalletResponse(SQLModel):
    balance: Decimal
    currency: str


class TransactionResponse(SQLModel):
    id: UUID
    amount: Decimal
    type: TransactionKind
    created_at: datetime


class WalletProvision(SQLModel):
    user_id: UUID
    initial_balance: Optional[Decimal] = Field(default=None, ge=0)


class WalletAdjustment(SQLModel):
    amount: Decimal
    description: Optional[str] = Field(default=None, max_length=255)
