"""
Goal State Machine

    active ──► completed   owner gets the stake back (payout)
       │ ──► failed      stake stays forfeited (zero-amount penalty entry)
       └──► cancelled   owner gets the stake back (refund)

DESIGN DECISIONS:
- The stake is deducted when the goal is created, so failing a goal
  never charges the owner again.
- The terminal write is a compare-and-commit on status=active. Exactly
  one caller wins; everyone else gets GoalAlreadyResolved and nothing
  is settled on their behalf.
- Settlements happen after the terminal write and are all keyed. If any
  of them fails (store outage, a collaborator without funds), the goal
  stays terminal and `resume_settlement` re-issues them safely.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Union
from uuid import UUID

import structlog

from stakeledger.audit import AuditLogger
from stakeledger.config import GoalSettings, get_settings
from stakeledger.errors import (
    CancellationNotAllowed,
    ConcurrentUpdateExhausted,
    GoalAlreadyResolved,
    GoalNotFound,
    GoalValidationFailed,
    InvalidAmount,
    LedgerError,
    StoreUnavailable,
    VerificationNotFound,
    VerificationRequired,
)
from stakeledger.goals.collaboration import CollaborationSettlement
from stakeledger.ledger.guard import BalanceGuard, coerce_amount
from stakeledger.models.audit import AuditEventBuilder
from stakeledger.models.goal import (
    CollaborationOutcome,
    CollaborationSettlementResult,
    Goal,
    GoalDraft,
    GoalResolution,
    GoalStatus,
    Verification,
)
from stakeledger.models.ledger import (
    EntityType,
    LedgerEntry,
    RelatedEntity,
    TransactionKind,
    utc_now,
)
from stakeledger.services.storage import (
    DuplicateError,
    GoalStorageInterface,
    NotFoundError,
    VersionConflict,
)
from stakeledger.validation import GoalValidator


logger = structlog.get_logger(__name__)


# Owner settlement per terminal status: (kind, stake multiplier)
OWNER_SETTLEMENT = {
    GoalStatus.COMPLETED: (TransactionKind.PAYOUT, Decimal("1")),
    GoalStatus.FAILED: (TransactionKind.PENALTY, Decimal("0")),
    GoalStatus.CANCELLED: (TransactionKind.REFUND, Decimal("1")),
}

COLLABORATION_OUTCOME = {
    GoalStatus.COMPLETED: CollaborationOutcome.SUCCESS,
    GoalStatus.FAILED: CollaborationOutcome.FAILURE,
}


def stake_key(goal_id: UUID) -> str:
    return f"goal:{goal_id}:stake"


def owner_key(goal_id: UUID, outcome: GoalStatus) -> str:
    return f"goal:{goal_id}:owner:{outcome.value}"


class GoalStateMachine:
    """
    Owns goal lifecycle transitions and the settlements they cause.

    Usage:
        machine = GoalStateMachine(goal_storage, guard, collaboration)
        goal = await machine.create_goal(draft)
        resolution = await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-123")
    """

    def __init__(
        self,
        goal_storage: GoalStorageInterface,
        guard: BalanceGuard,
        collaboration: CollaborationSettlement,
        validator: Optional[GoalValidator] = None,
        settings: Optional[GoalSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._goals = goal_storage
        self._guard = guard
        self._collaboration = collaboration
        self._settings = settings or get_settings().goals
        self._validator = validator or GoalValidator(goal_storage, self._settings)
        self._audit_logger = audit_logger
        self._clock = clock

    async def get_goal(self, goal_id: UUID) -> Goal:
        goal = await self._goals.get_goal(goal_id)
        if goal is None:
            raise GoalNotFound(goal_id)
        return goal

    # =========================================================================
    # CREATION & STAKING
    # =========================================================================

    async def create_goal(
        self,
        draft: GoalDraft,
        correlation_id: Optional[UUID] = None,
    ) -> Goal:
        """
        Validate a draft, take the stake, then persist the goal as active.

        Retrying with the same draft id is safe: the stake is keyed by goal
        id, and an already persisted goal is returned as is.

        Raises:
            GoalValidationFailed: The draft has error-level issues
            InsufficientFunds: The owner cannot cover the stake
        """
        existing = await self._goals.get_goal(draft.id)
        if existing is not None:
            return existing

        result = await self._validator.validate(draft, now=self._clock())
        if not result.is_valid:
            raise GoalValidationFailed(result, self._validator.get_user_friendly_summary(result))

        requires_verification = (
            draft.requires_verification
            if draft.requires_verification is not None
            else self._settings.require_verification_default
        )
        goal = Goal.from_draft(draft, requires_verification)

        await self.stake(goal.owner_id, goal.id, goal.stake_amount, correlation_id)

        try:
            goal = await self._goals.save_goal(goal)
        except DuplicateError:
            # Lost a race with an identical create; the stake entry was shared
            return await self.get_goal(goal.id)

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.goal_created(
                goal.id, goal.owner_id, str(goal.stake_amount), correlation_id
            ))
        return goal

    async def stake(
        self,
        owner_account_id: UUID,
        goal_id: UUID,
        amount,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """Deduct the stake held against a goal."""
        amount = coerce_amount(amount)
        if amount <= 0:
            raise InvalidAmount("Stake must be positive")

        return await self._guard.settle(
            account_id=owner_account_id,
            amount=-amount,
            kind=TransactionKind.STAKE,
            related_entity=RelatedEntity(entity_type=EntityType.GOAL, entity_id=goal_id),
            idempotency_key=stake_key(goal_id),
            description="Stake held against goal",
            correlation_id=correlation_id,
        )

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def submit_verification(
        self,
        goal_id: UUID,
        user_id: UUID,
        evidence,
        verified_value: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Verification:
        """Attach proof to an active goal. `evidence` is any Evidence model or its dict form."""
        goal = await self.get_goal(goal_id)
        if goal.status.is_terminal:
            raise GoalAlreadyResolved(goal_id, goal.status.value)

        verification = Verification(
            goal_id=goal_id,
            user_id=user_id,
            evidence=evidence,
            verified_value=verified_value,
            created_at=self._clock(),
        )
        try:
            verification = await self._goals.add_verification(verification)
        except NotFoundError as e:
            raise GoalNotFound(goal_id) from e
        except VersionConflict as e:
            # Resolved between the read above and the insert
            current = await self.get_goal(goal_id)
            raise GoalAlreadyResolved(goal_id, current.status.value) from e

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.verification_submitted(
                verification.id, goal_id, verification.verification_type.value, correlation_id
            ))
        return verification

    async def review_verification(
        self,
        verification_id: UUID,
        reviewer_id: UUID,
        approved: bool,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Verification:
        verification = await self._goals.get_verification(verification_id)
        if verification is None:
            raise VerificationNotFound(verification_id)

        goal = await self.get_goal(verification.goal_id)
        if goal.status.is_terminal:
            raise GoalAlreadyResolved(goal.id, goal.status.value)

        verification = verification.model_copy(update={
            "is_approved": approved,
            "reviewed_by": reviewer_id,
            "reviewed_at": now or self._clock(),
        })
        try:
            verification = await self._goals.update_verification(verification)
        except NotFoundError as e:
            raise VerificationNotFound(verification_id) from e

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.verification_reviewed(
                verification_id, reviewer_id, approved, correlation_id
            ))
        return verification

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def _check_transition(self, goal: Goal, outcome: GoalStatus, now: datetime) -> None:
        if outcome == GoalStatus.COMPLETED and goal.requires_verification:
            verifications = await self._goals.list_verifications(goal.id)
            if not any(v.is_approved for v in verifications):
                raise VerificationRequired(
                    f"Goal {goal.id} needs an approved verification to complete"
                )

        if outcome == GoalStatus.CANCELLED:
            if goal.is_overdue(now):
                raise CancellationNotAllowed(f"Goal {goal.id} is past its deadline")
            if await self._goals.list_verifications(goal.id):
                raise CancellationNotAllowed(f"Goal {goal.id} already has verification submitted")

    async def _reject(
        self,
        goal_id: UUID,
        outcome: GoalStatus,
        error: LedgerError,
        correlation_id: Optional[UUID],
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.goal_resolution_rejected(
                goal_id, outcome.value, error.kind.value, str(error), correlation_id
            ))

    async def resolve_goal(
        self,
        goal_id: UUID,
        outcome: Union[GoalStatus, str],
        idempotency_key: str,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> GoalResolution:
        """
        Move an active goal to a terminal status and settle everyone.

        Args:
            goal_id: Goal to resolve
            outcome: completed, failed or cancelled
            idempotency_key: Caller's request key, stored as resolution_key
            now: Reference time (defaults to the clock)

        Returns:
            GoalResolution. Collaborators whose settlement failed are listed
            in failed_collaborator_ids; call raise_for_partial() to turn
            that into PartialCollaboratorSettlement.

        Raises:
            GoalNotFound, GoalAlreadyResolved, VerificationRequired,
            CancellationNotAllowed, StoreUnavailable
        """
        outcome = GoalStatus(outcome)
        if not outcome.is_terminal:
            raise ValueError("A goal can only be resolved to a terminal status")
        now = now or self._clock()

        goal = await self.get_goal(goal_id)
        try:
            if goal.status.is_terminal:
                raise GoalAlreadyResolved(
                    goal_id,
                    goal.status.value,
                    same_request=goal.resolution_key == idempotency_key,
                )
            await self._check_transition(goal, outcome, now)
        except LedgerError as e:
            await self._reject(goal_id, outcome, e, correlation_id)
            raise

        resolved = goal.model_copy(update={
            "status": outcome,
            "resolution_key": idempotency_key,
            "resolved_at": now,
            "updated_at": now,
        })
        # Cancelling commits only if no verification slipped in since the check
        expected_count = 0 if outcome == GoalStatus.CANCELLED else None
        try:
            resolved = await self._goals.transition_goal(
                resolved,
                expected_status=GoalStatus.ACTIVE,
                expected_verification_count=expected_count,
            )
        except NotFoundError as e:
            raise GoalNotFound(goal_id) from e
        except VersionConflict as e:
            current = await self.get_goal(goal_id)
            if current.status == GoalStatus.ACTIVE:
                error = CancellationNotAllowed(f"Goal {goal_id} already has verification submitted")
            else:
                error = GoalAlreadyResolved(
                    goal_id,
                    current.status.value,
                    same_request=current.resolution_key == idempotency_key,
                )
            await self._reject(goal_id, outcome, error, correlation_id)
            raise error from e

        logger.info(
            "goal_transitioned",
            goal_id=str(goal_id),
            outcome=outcome.value,
            resolution_key=idempotency_key,
        )
        return await self._settle(resolved, None, correlation_id)

    async def resume_settlement(
        self,
        goal_id: UUID,
        collaborator_ids: Optional[list[UUID]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> GoalResolution:
        """
        Re-issue the settlements of a resolved goal.

        Settlements that already happened are answered from the ledger, so
        this is safe to call after StoreUnavailable or a partial
        collaborator settlement. Pass collaborator_ids to limit which
        collaborators are retried.
        """
        goal = await self.get_goal(goal_id)
        if not goal.status.is_terminal:
            raise ValueError(f"Goal {goal_id} is still active; resolve it first")
        return await self._settle(goal, collaborator_ids, correlation_id)

    async def _settle(
        self,
        goal: Goal,
        collaborator_ids: Optional[list[UUID]],
        correlation_id: Optional[UUID],
    ) -> GoalResolution:
        kind, multiplier = OWNER_SETTLEMENT[goal.status]
        owner_entry = await self._guard.settle(
            account_id=goal.owner_id,
            amount=goal.stake_amount * multiplier,
            kind=kind,
            related_entity=RelatedEntity(entity_type=EntityType.GOAL, entity_id=goal.id),
            idempotency_key=owner_key(goal.id, goal.status),
            description=f"Goal '{goal.title}' {goal.status.value}",
            correlation_id=correlation_id,
        )

        collaboration_outcome = COLLABORATION_OUTCOME.get(goal.status)
        if collaboration_outcome is None:
            collaborators = CollaborationSettlementResult(
                goal_id=goal.id, outcome=CollaborationOutcome.FAILURE
            )
        else:
            collaborators = await self._collaboration.settle(
                goal, collaboration_outcome, collaborator_ids, correlation_id
            )

        resolution = GoalResolution(
            goal_id=goal.id,
            outcome=goal.status,
            owner_entry=owner_entry,
            collaborator_entries=collaborators.entries,
            failed_collaborator_ids=collaborators.failed_collaborator_ids,
        )

        if self._audit_logger:
            await self._audit_logger.log_goal_resolved(
                goal_id=goal.id,
                outcome=goal.status.value,
                collaborator_count=len(collaborators.entries) + len(collaborators.failed_collaborator_ids),
                failed_count=len(collaborators.failed_collaborator_ids),
                correlation_id=correlation_id,
            )
        return resolution

    async def expire_overdue(
        self,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> list[GoalResolution]:
        """
        Fail every active goal past its deadline without an approved verification.

        Goals resolved concurrently by someone else are skipped. A goal whose
        settlement hits StoreUnavailable or ConcurrentUpdateExhausted is
        logged and the sweep moves on.
        """
        now = now or self._clock()
        resolutions = []

        for goal in await self._goals.list_goals(status=GoalStatus.ACTIVE):
            if not goal.is_overdue(now):
                continue
            verifications = await self._goals.list_verifications(goal.id)
            if any(v.is_approved for v in verifications):
                continue
            try:
                resolutions.append(await self.resolve_goal(
                    goal.id,
                    GoalStatus.FAILED,
                    idempotency_key=f"expire:{goal.id}",
                    now=now,
                    correlation_id=correlation_id,
                ))
            except GoalAlreadyResolved:
                logger.info("goal_expiry_skipped", goal_id=str(goal.id))
            except (StoreUnavailable, ConcurrentUpdateExhausted) as e:
                # Leave it for the next sweep or resume_settlement
                logger.error("goal_expiry_failed", goal_id=str(goal.id), error=str(e))
                if self._audit_logger:
                    await self._audit_logger.log_error(
                        "goal_expiry", str(e), {"goal_id": str(goal.id)}, correlation_id
                    )

        return resolutions
