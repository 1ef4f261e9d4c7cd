"""Ledger package: the store, the balance guard and reconciliation."""

from stakeledger.ledger.guard import BalanceGuard, coerce_amount
from stakeledger.ledger.reconcile import LedgerReconciler
from stakeledger.ledger.store import LedgerStore

__all__ = ["BalanceGuard", "LedgerReconciler", "LedgerStore", "coerce_amount"]
