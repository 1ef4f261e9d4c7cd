"""
Collaboration Settlement

Collaborators take a position on someone else's goal:
- will_earn_if_fails=True bets against the owner
- will_earn_if_fails=False bets on the owner

When the goal resolves, the winning side is credited and the losing side
debited, one independent keyed settlement per collaborator. A failed
collaborator settlement never rolls back the others; it is reported so
the caller can retry just those ids (the keys make retries safe).
"""

from decimal import ROUND_DOWN, Decimal
from typing import Optional
from uuid import UUID

import structlog

from stakeledger.audit import AuditLogger
from stakeledger.config import GoalSettings, get_settings
from stakeledger.errors import (
    DuplicateCollaboration,
    GoalAlreadyResolved,
    GoalNotFound,
    InvalidAmount,
    LedgerError,
)
from stakeledger.ledger.guard import BalanceGuard, coerce_amount
from stakeledger.models.audit import AuditEventBuilder
from stakeledger.models.goal import (
    CollaborationOutcome,
    CollaborationSettlementResult,
    Goal,
    GoalCollaboration,
    PoolPolicy,
)
from stakeledger.models.ledger import CENT, EntityType, RelatedEntity, TransactionKind
from stakeledger.services.storage import DuplicateError, GoalStorageInterface


logger = structlog.get_logger(__name__)


def collaborator_key(goal_id: UUID, collaborator_id: UUID, outcome: CollaborationOutcome) -> str:
    return f"goal:{goal_id}:collab:{collaborator_id}:{outcome.value}"


def settlement_amounts(
    collaborations: list[GoalCollaboration],
    outcome: CollaborationOutcome,
    policy: PoolPolicy,
) -> dict[UUID, Decimal]:
    """
    Signed amount per collaboration id.

    Losers always forfeit their full stake. Under UNCAPPED every winner
    gets their own stake back as winnings. Under CAPPED winners share the
    forfeited pool pro rata to their stakes, rounded down to the cent and
    never more than their own stake.

    Amounts are computed over every collaboration on the goal, so a retry
    that settles a subset reproduces exactly the original amounts.
    """
    winners = [c for c in collaborations if c.wins(outcome)]
    losers = [c for c in collaborations if not c.wins(outcome)]

    amounts = {c.id: -c.stake_amount for c in losers}

    if policy == PoolPolicy.UNCAPPED:
        amounts.update({c.id: c.stake_amount for c in winners})
        return amounts

    pool = sum((c.stake_amount for c in losers), Decimal("0.00"))
    winning_stakes = sum((c.stake_amount for c in winners), Decimal("0.00"))
    for c in winners:
        if pool >= winning_stakes:
            amounts[c.id] = c.stake_amount
        else:
            share = (pool * c.stake_amount / winning_stakes).quantize(CENT, rounding=ROUND_DOWN)
            amounts[c.id] = min(share, c.stake_amount)
    return amounts


class CollaborationSettlement:
    """Adds collaborators to goals and settles them when the goal resolves."""

    def __init__(
        self,
        goal_storage: GoalStorageInterface,
        guard: BalanceGuard,
        settings: Optional[GoalSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._goals = goal_storage
        self._guard = guard
        self._settings = settings or get_settings().goals
        self._audit_logger = audit_logger

    async def add_collaborator(
        self,
        goal_id: UUID,
        collaborator_id: UUID,
        stake_amount,
        will_earn_if_fails: bool = True,
        correlation_id: Optional[UUID] = None,
    ) -> GoalCollaboration:
        """
        Record a collaborator's position on an active goal.

        Raises:
            GoalNotFound, GoalAlreadyResolved, InvalidAmount,
            DuplicateCollaboration (already on the goal, or is the owner)
        """
        stake_amount = coerce_amount(stake_amount)
        if stake_amount <= 0:
            raise InvalidAmount("Collaborator stake must be positive")

        goal = await self._goals.get_goal(goal_id)
        if goal is None:
            raise GoalNotFound(goal_id)
        if goal.status.is_terminal:
            raise GoalAlreadyResolved(goal_id, goal.status.value)
        if goal.owner_id == collaborator_id:
            raise DuplicateCollaboration("The goal owner cannot collaborate on their own goal")

        collaboration = GoalCollaboration(
            goal_id=goal_id,
            collaborator_id=collaborator_id,
            stake_amount=stake_amount,
            will_earn_if_fails=will_earn_if_fails,
        )
        try:
            collaboration = await self._goals.add_collaboration(collaboration)
        except DuplicateError as e:
            raise DuplicateCollaboration(
                f"Collaborator {collaborator_id} already has a position on goal {goal_id}"
            ) from e

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.collaboration_joined(
                collaboration.id, goal_id, will_earn_if_fails, correlation_id
            ))
        return collaboration

    async def settle(
        self,
        goal: Goal,
        outcome: CollaborationOutcome,
        collaborator_ids: Optional[list[UUID]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> CollaborationSettlementResult:
        """
        Settle every collaborator (or just `collaborator_ids`) on a goal.

        Each settlement is keyed, so calling this again for ids that
        already settled returns their original entries.
        """
        collaborations = await self._goals.list_collaborations(goal.id)
        amounts = settlement_amounts(
            collaborations, outcome, self._settings.collaboration_pool_policy
        )

        if collaborator_ids is not None:
            wanted = set(collaborator_ids)
            collaborations = [c for c in collaborations if c.collaborator_id in wanted]

        result = CollaborationSettlementResult(goal_id=goal.id, outcome=outcome)

        for collaboration in collaborations:
            amount = amounts[collaboration.id]
            won = collaboration.wins(outcome)
            try:
                entry = await self._guard.settle(
                    account_id=collaboration.collaborator_id,
                    amount=amount,
                    kind=TransactionKind.REWARD if won else TransactionKind.PENALTY,
                    related_entity=RelatedEntity(
                        entity_type=EntityType.COLLABORATION,
                        entity_id=collaboration.id,
                    ),
                    idempotency_key=collaborator_key(goal.id, collaboration.collaborator_id, outcome),
                    description=f"Goal '{goal.title}' {outcome.value}: {'won' if won else 'lost'} bet",
                    correlation_id=correlation_id,
                )
                result.entries.append(entry)
            except LedgerError as e:
                logger.warning(
                    "collaborator_settlement_failed",
                    goal_id=str(goal.id),
                    collaborator_id=str(collaboration.collaborator_id),
                    error_kind=e.kind.value,
                    error=str(e),
                )
                result.failed_collaborator_ids.append(collaboration.collaborator_id)
                result.errors[str(collaboration.collaborator_id)] = e.kind.value

        if self._audit_logger and collaborations:
            await self._audit_logger.log(AuditEventBuilder.collaboration_settled(
                goal.id,
                outcome.value,
                len(result.entries),
                result.failed_collaborator_ids,
                correlation_id,
            ))
        return result
