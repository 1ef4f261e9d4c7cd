"""
Ledger Models for Stake Ledger

These models describe the system of record: wallets (accounts) and the
immutable ledger entries that explain every change to them.

DESIGN DECISION: Money is always a Decimal with exactly two places.
It is never held as a float, and relational storage keeps it as integer
minor units (cents).

INVARIANTS:
1. balance_after = balance_before + amount on every entry
2. Replaying an account's entries in sequence order from zero
   reproduces its current balance exactly
3. Ledger entries are frozen - once written they never change
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


CENT = Decimal("0.01")

Money = Annotated[Decimal, Field(decimal_places=2)]


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_money(value) -> Decimal:
    """Convert a number or numeric string to a two-place Decimal."""
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1 instead of its binary expansion
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Decimal currency amount -> integer cents."""
    return int(to_money(amount) * 100)


def from_minor_units(minor: int) -> Decimal:
    """Integer cents -> Decimal currency amount."""
    return (Decimal(minor) / 100).quantize(CENT)


# =============================================================================
# ENUMS
# =============================================================================

class TransactionKind(str, Enum):
    """
    Why a balance changed.

    DEPOSIT is how the external payment layer funds a wallet; everything
    else is produced by goal, alarm, collaboration or task settlement.
    """
    STAKE = "stake"
    PENALTY = "penalty"
    REWARD = "reward"
    REFUND = "refund"
    PAYOUT = "payout"
    DEPOSIT = "deposit"


class EntityType(str, Enum):
    """Kinds of entities that can cause a ledger entry."""
    GOAL = "goal"
    ALARM = "alarm"
    COLLABORATION = "collaboration"
    TASK = "task"
    ACCOUNT = "account"


# =============================================================================
# ACCOUNT
# =============================================================================

class Account(BaseModel):
    """
    A user's wallet.

    CRITICAL: Only the balance guard produces new Account versions.
    The version number is the optimistic concurrency token.
    """

    id: UUID = Field(
        default_factory=uuid4,
        description="Account ID (supplied by the identity provider)"
    )
    balance: Money = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Current wallet balance"
    )
    total_earned: Money = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Lifetime rewards and payouts received"
    )
    total_lost: Money = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Lifetime penalties paid"
    )
    version: int = Field(
        default=0,
        ge=0,
        description="Incremented on every committed settlement"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def apply(self, amount: Decimal, kind: TransactionKind) -> "Account":
        """
        Return the next version of this account after a settlement.

        Does not check for negative balances; the guard does that before
        calling, and the field constraint rejects anything that slips by.
        """
        total_earned = self.total_earned
        total_lost = self.total_lost
        if kind in (TransactionKind.REWARD, TransactionKind.PAYOUT) and amount > 0:
            total_earned += amount
        elif kind == TransactionKind.PENALTY and amount < 0:
            total_lost += -amount

        return Account(
            id=self.id,
            balance=self.balance + amount,
            total_earned=total_earned,
            total_lost=total_lost,
            version=self.version + 1,
            created_at=self.created_at,
            updated_at=utc_now(),
        )


# =============================================================================
# LEDGER ENTRIES
# =============================================================================

class RelatedEntity(BaseModel):
    """The goal, alarm, collaboration or task that caused an entry."""
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: UUID

    def __str__(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"


class LedgerEntryDraft(BaseModel):
    """
    A ledger entry before the store has assigned its identity.

    Built by the balance guard with balances taken from the same
    compare-and-commit attempt that mutates the account.
    """
    model_config = ConfigDict(frozen=True)

    account_id: UUID
    amount: Money = Field(
        ...,
        description="Signed amount (+credit / -debit)"
    )
    kind: TransactionKind
    related_entity: RelatedEntity
    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Caller-supplied key; unique across the ledger"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    balance_before: Money = Field(..., ge=0)
    balance_after: Money = Field(..., ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode='after')
    def validate_balance_chain(self):
        """An entry must explain exactly the change it records."""
        if self.balance_before + self.amount != self.balance_after:
            raise ValueError(
                "balance_after must equal balance_before + amount"
            )
        return self


class LedgerEntry(LedgerEntryDraft):
    """
    An immutable, persisted ledger entry.

    `sequence` is assigned by the store and defines creation order.
    """

    id: UUID = Field(default_factory=uuid4)
    sequence: int = Field(
        ...,
        ge=1,
        description="Store-assigned creation order"
    )

    @classmethod
    def from_draft(cls, draft: LedgerEntryDraft, sequence: int) -> "LedgerEntry":
        return cls(sequence=sequence, **draft.model_dump())

    def matches(
        self,
        account_id: UUID,
        amount: Decimal,
        kind: TransactionKind,
        related_entity: RelatedEntity,
    ) -> bool:
        """Is this entry the same settlement as the one described?"""
        return (
            self.account_id == account_id
            and self.amount == amount
            and self.kind == kind
            and self.related_entity == related_entity
        )

    def to_log_dict(self) -> dict:
        return {
            "entry_id": str(self.id),
            "sequence": self.sequence,
            "account_id": str(self.account_id),
            "amount": str(self.amount),
            "kind": self.kind.value,
            "related_entity": str(self.related_entity),
            "idempotency_key": self.idempotency_key,
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
        }


class ReconciliationIssue(BaseModel):
    """One inconsistency found while replaying an account's history."""

    sequence: Optional[int] = None
    entry_id: Optional[UUID] = None
    message: str


class ReconciliationReport(BaseModel):
    """Result of replaying an account's ledger."""

    account_id: UUID
    checked_at: datetime = Field(default_factory=utc_now)
    entry_count: int = Field(ge=0)
    replayed_balance: Money
    stored_balance: Money
    issues: list[ReconciliationIssue] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.issues and self.replayed_balance == self.stored_balance
