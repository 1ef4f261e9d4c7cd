"""
Ledger Store

Append-only access to ledger entries plus the account reads the balance
guard needs. This is a thin layer over a LedgerStorageInterface; it adds
no business rules and never computes balances.
"""

from typing import Optional
from uuid import UUID

import structlog

from stakeledger.errors import AccountNotFound
from stakeledger.models.ledger import Account, LedgerEntry, LedgerEntryDraft
from stakeledger.services.storage import LedgerStorageInterface, NotFoundError


logger = structlog.get_logger(__name__)


class LedgerStore:
    """
    The system of record for balance changes.

    Entries are written once and never updated or deleted.
    Backends raise StoreUnavailable when persistence fails; in that case
    the caller must not assume the entry was written.
    """

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    async def append(self, draft: LedgerEntryDraft) -> LedgerEntry:
        """
        Persist one immutable entry and nothing else.

        Raises:
            DuplicateError: The draft's idempotency key is already used
            StoreUnavailable: The backend failed
        """
        entry = await self._storage.append_entry(draft)
        logger.debug("ledger_entry_appended", **entry.to_log_dict())
        return entry

    async def commit(
        self,
        account: Account,
        expected_version: int,
        draft: LedgerEntryDraft,
    ) -> LedgerEntry:
        """
        Store the next account version and its entry as one unit.

        Raises:
            AccountNotFound: The account disappeared
            VersionConflict: Another settlement committed first
            DuplicateError: The draft's idempotency key is already used
            StoreUnavailable: The backend failed
        """
        try:
            entry = await self._storage.commit_settlement(account, expected_version, draft)
        except NotFoundError as e:
            raise AccountNotFound(account.id) from e
        logger.debug("ledger_entry_committed", **entry.to_log_dict())
        return entry

    async def history(
        self,
        account_id: UUID,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> list[LedgerEntry]:
        """
        An account's entries, most recent first by default.

        Re-query to restart; the result is a finite list, not a cursor.
        """
        if limit is not None and limit < 1:
            raise ValueError("limit must be positive")
        return await self._storage.list_entries(account_id, limit=limit, newest_first=newest_first)

    async def get_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        return await self._storage.get_entry_by_key(idempotency_key)

    async def create_account(self, account: Account) -> Account:
        return await self._storage.create_account(account)

    async def get_account(self, account_id: UUID) -> Account:
        account = await self._storage.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account
