"""
Ledger Reconciliation

Replays an account's entries in sequence order from a zero balance and
compares the result with the stored account. Read-only: a failed
reconciliation is reported and audited, never repaired.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from stakeledger.audit import AuditLogger
from stakeledger.ledger.store import LedgerStore
from stakeledger.models.audit import AuditEventBuilder
from stakeledger.models.ledger import ReconciliationIssue, ReconciliationReport


logger = structlog.get_logger(__name__)


class LedgerReconciler:
    """Checks that an account's balance is explained by its ledger."""

    def __init__(
        self,
        store: LedgerStore,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger

    async def reconcile(
        self,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationReport:
        account = await self._store.get_account(account_id)
        entries = await self._store.history(account_id, newest_first=False)

        issues = []
        running = Decimal("0.00")
        last_sequence = 0

        for entry in entries:
            if entry.sequence <= last_sequence:
                issues.append(ReconciliationIssue(
                    sequence=entry.sequence,
                    entry_id=entry.id,
                    message=f"Sequence {entry.sequence} does not follow {last_sequence}",
                ))
            last_sequence = entry.sequence

            if entry.balance_before != running:
                issues.append(ReconciliationIssue(
                    sequence=entry.sequence,
                    entry_id=entry.id,
                    message=f"balance_before {entry.balance_before} but replay is at {running}",
                ))

            running += entry.amount

            if entry.balance_after != running:
                issues.append(ReconciliationIssue(
                    sequence=entry.sequence,
                    entry_id=entry.id,
                    message=f"balance_after {entry.balance_after} but replay gives {running}",
                ))
            if running < 0:
                issues.append(ReconciliationIssue(
                    sequence=entry.sequence,
                    entry_id=entry.id,
                    message=f"Replayed balance went negative ({running})",
                ))

        if running != account.balance:
            issues.append(ReconciliationIssue(
                message=f"Stored balance {account.balance} differs from replayed {running}",
            ))

        report = ReconciliationReport(
            account_id=account_id,
            entry_count=len(entries),
            replayed_balance=running,
            stored_balance=account.balance,
            issues=issues,
        )

        if not report.is_consistent:
            logger.error(
                "reconciliation_failed",
                account_id=str(account_id),
                issues=len(issues),
            )
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.reconciliation_failed(
                    account_id,
                    [issue.message for issue in issues],
                    correlation_id,
                ))

        return report
