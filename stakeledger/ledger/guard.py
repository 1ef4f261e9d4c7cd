"""
Balance Guard

DESIGN DECISION: The balance guard is the ONLY code that changes an
account balance. Every change goes through `settle`, which:

1. Answers repeated calls from the ledger (idempotency key lookup)
2. Reads the account and its version
3. Refuses any debit that would take the balance below zero
4. Compare-and-commits the new account version together with the
   ledger entry that explains it
5. Retries from step 1 with jittered backoff when another settlement
   committed first

There is no lock. Settlements on the same account are linearized by the
version check; settlements on different accounts never wait for each
other.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from stakeledger.audit import AuditLogger
from stakeledger.config import LedgerSettings, get_settings
from stakeledger.errors import (
    ConcurrentUpdateExhausted,
    IdempotencyKeyConflict,
    InsufficientFunds,
    InvalidAmount,
    StoreUnavailable,
)
from stakeledger.ledger.store import LedgerStore
from stakeledger.models.audit import AuditEventBuilder
from stakeledger.models.ledger import (
    Account,
    EntityType,
    LedgerEntry,
    LedgerEntryDraft,
    RelatedEntity,
    TransactionKind,
    to_money,
)
from stakeledger.services.storage import DuplicateError, VersionConflict


logger = structlog.get_logger(__name__)


# Kinds that may only move money out of / into an account
DEBIT_KINDS = frozenset({TransactionKind.STAKE, TransactionKind.PENALTY})
CREDIT_KINDS = frozenset({
    TransactionKind.REWARD,
    TransactionKind.PAYOUT,
    TransactionKind.REFUND,
    TransactionKind.DEPOSIT,
})


def coerce_amount(amount) -> Decimal:
    """Parse an amount into two-place money, raising InvalidAmount if it isn't a finite number."""
    try:
        value = to_money(amount)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidAmount(f"Not a valid amount: {amount!r}") from e
    if not value.is_finite():
        raise InvalidAmount(f"Not a valid amount: {amount!r}")
    return value


class BalanceGuard:
    """
    Sole mutator of account balances.

    Usage:
        guard = BalanceGuard(LedgerStore(storage))
        entry = await guard.settle(
            account_id, Decimal("-40.00"), TransactionKind.STAKE,
            RelatedEntity(entity_type=EntityType.GOAL, entity_id=goal_id),
            idempotency_key=f"goal:{goal_id}:stake",
        )
    """

    def __init__(
        self,
        store: LedgerStore,
        settings: Optional[LedgerSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._settings = settings or get_settings().ledger
        self._audit_logger = audit_logger

    @property
    def store(self) -> LedgerStore:
        return self._store

    async def open_account(
        self,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Account:
        """
        Create an empty wallet for an identity-provider user id.

        Opening an account that already exists returns it unchanged.
        """
        try:
            account = await self._store.create_account(Account(id=account_id))
        except DuplicateError:
            return await self._store.get_account(account_id)

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.account_opened(account_id, correlation_id))
        return account

    async def get_account(self, account_id: UUID) -> Account:
        return await self._store.get_account(account_id)

    async def get_balance(self, account_id: UUID) -> Decimal:
        account = await self._store.get_account(account_id)
        return account.balance

    async def fund(
        self,
        account_id: UUID,
        amount,
        reference: str,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """
        Credit money arriving from the payment layer.

        `reference` identifies the external payment; funding twice with the
        same reference credits once.
        """
        amount = coerce_amount(amount)
        if amount <= 0:
            raise InvalidAmount("Deposits must be positive")
        return await self.settle(
            account_id=account_id,
            amount=amount,
            kind=TransactionKind.DEPOSIT,
            related_entity=RelatedEntity(entity_type=EntityType.ACCOUNT, entity_id=account_id),
            idempotency_key=f"deposit:{account_id}:{reference}",
            description=f"Deposit {reference}",
            correlation_id=correlation_id,
        )

    async def settle(
        self,
        account_id: UUID,
        amount,
        kind: TransactionKind,
        related_entity: RelatedEntity,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """
        Apply a signed amount to an account and record why.

        Args:
            account_id: Account to change
            amount: Signed amount (+credit / -debit); zero records an event
                    without moving money
            kind: Why the balance changes
            related_entity: Goal, alarm, collaboration, task or account behind it
            idempotency_key: Optional. A repeated call with the same key and
                    the same settlement returns the original entry. Keyless
                    calls are not idempotent.
            description: Free text for the entry
            correlation_id: Ties audit events of one operation together

        Returns:
            The ledger entry (new, or the original one for a repeated key)

        Raises:
            InvalidAmount: Amount malformed or of the wrong sign for `kind`
            AccountNotFound: No such account
            InsufficientFunds: The debit would make the balance negative
            IdempotencyKeyConflict: The key was used for a different settlement
            ConcurrentUpdateExhausted: Lost the version race too many times
            StoreUnavailable: The backend failed; retry with the same key
        """
        amount = coerce_amount(amount)
        if kind in DEBIT_KINDS and amount > 0:
            raise InvalidAmount(f"{kind.value} must not be a credit")
        if kind in CREDIT_KINDS and amount < 0:
            raise InvalidAmount(f"{kind.value} must not be a debit")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_settle_attempts),
            wait=wait_random_exponential(
                multiplier=self._settings.retry_wait_max_seconds / 4 or 0.001,
                min=self._settings.retry_wait_min_seconds,
                max=self._settings.retry_wait_max_seconds,
            ),
            retry=retry_if_exception_type(VersionConflict),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._attempt(
                        account_id=account_id,
                        amount=amount,
                        kind=kind,
                        related_entity=related_entity,
                        idempotency_key=idempotency_key,
                        description=description,
                        attempt_number=attempt.retry_state.attempt_number,
                        correlation_id=correlation_id,
                    )
        except RetryError as e:
            attempts = e.last_attempt.attempt_number
            logger.warning(
                "settlement_exhausted",
                account_id=str(account_id),
                attempts=attempts,
                idempotency_key=idempotency_key,
            )
            if self._audit_logger:
                await self._audit_logger.log_settlement_exhausted(account_id, attempts, correlation_id)
            raise ConcurrentUpdateExhausted(account_id, attempts) from e
        except StoreUnavailable as e:
            if self._audit_logger:
                await self._audit_logger.log_store_unavailable("settle", str(e), correlation_id)
            raise

    async def _attempt(
        self,
        account_id: UUID,
        amount: Decimal,
        kind: TransactionKind,
        related_entity: RelatedEntity,
        idempotency_key: Optional[str],
        description: Optional[str],
        attempt_number: int,
        correlation_id: Optional[UUID],
    ) -> LedgerEntry:
        """One read / check / compare-and-commit round."""
        if idempotency_key:
            existing = await self._store.get_entry_by_key(idempotency_key)
            if existing is not None:
                return await self._replay(
                    existing, account_id, amount, kind, related_entity, correlation_id
                )

        account = await self._store.get_account(account_id)
        new_balance = account.balance + amount
        if amount < 0 and new_balance < 0:
            if self._audit_logger:
                await self._audit_logger.log_settlement_rejected(
                    account_id=account_id,
                    amount=str(amount),
                    kind=kind.value,
                    error_code="insufficient_funds",
                    error_message=f"Balance {account.balance} cannot cover {amount}",
                    correlation_id=correlation_id,
                )
            raise InsufficientFunds(account_id, account.balance, amount)

        draft = LedgerEntryDraft(
            account_id=account_id,
            amount=amount,
            kind=kind,
            related_entity=related_entity,
            idempotency_key=idempotency_key,
            description=description,
            balance_before=account.balance,
            balance_after=new_balance,
        )

        try:
            entry = await self._store.commit(
                account.apply(amount, kind),
                expected_version=account.version,
                draft=draft,
            )
        except VersionConflict:
            logger.debug(
                "settlement_conflict",
                account_id=str(account_id),
                attempt=attempt_number,
                expected_version=account.version,
            )
            if self._audit_logger:
                await self._audit_logger.log_settlement_conflict(
                    account_id, attempt_number, account.version, correlation_id
                )
            raise
        except DuplicateError as e:
            # A concurrent caller committed the same key first
            existing = await self._store.get_entry_by_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise StoreUnavailable(f"Duplicate entry reported for {account_id} but none found") from e
            return await self._replay(
                existing, account_id, amount, kind, related_entity, correlation_id
            )

        if self._audit_logger:
            await self._audit_logger.log_settlement_committed(entry, correlation_id)
        return entry

    async def _replay(
        self,
        existing: LedgerEntry,
        account_id: UUID,
        amount: Decimal,
        kind: TransactionKind,
        related_entity: RelatedEntity,
        correlation_id: Optional[UUID],
    ) -> LedgerEntry:
        if not existing.matches(account_id, amount, kind, related_entity):
            if self._audit_logger:
                await self._audit_logger.log_settlement_rejected(
                    account_id=account_id,
                    amount=str(amount),
                    kind=kind.value,
                    error_code="idempotency_key_conflict",
                    error_message=f"Key {existing.idempotency_key} belongs to entry {existing.id}",
                    correlation_id=correlation_id,
                )
            raise IdempotencyKeyConflict(existing.idempotency_key)

        if self._audit_logger:
            await self._audit_logger.log_settlement_replayed(existing, correlation_id)
        return existing
