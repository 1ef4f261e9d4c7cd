"""
Tests for collaborator positions and their settlement.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from stakeledger.errors import (
    DuplicateCollaboration,
    ErrorKind,
    GoalAlreadyResolved,
    GoalNotFound,
    InvalidAmount,
    PartialCollaboratorSettlement,
)
from stakeledger.goals import CollaborationSettlement, GoalStateMachine
from stakeledger.goals.collaboration import collaborator_key, settlement_amounts
from stakeledger.models.goal import (
    CollaborationOutcome,
    GoalCollaboration,
    GoalStatus,
    PoolPolicy,
)
from stakeledger.models.ledger import TransactionKind


def position(stake, against=True):
    return GoalCollaboration(
        goal_id=uuid4(),
        collaborator_id=uuid4(),
        stake_amount=Decimal(stake),
        will_earn_if_fails=against,
    )


class TestSettlementAmounts:
    """Tests for the pure amount calculation."""

    def test_uncapped_winners_get_own_stake(self):
        against = position("10.00", against=True)
        backer = position("25.00", against=False)
        amounts = settlement_amounts([against, backer], CollaborationOutcome.FAILURE, PoolPolicy.UNCAPPED)
        assert amounts == {against.id: Decimal("10.00"), backer.id: Decimal("-25.00")}

    def test_success_flips_sides(self):
        against = position("10.00", against=True)
        backer = position("25.00", against=False)
        amounts = settlement_amounts([against, backer], CollaborationOutcome.SUCCESS, PoolPolicy.UNCAPPED)
        assert amounts == {against.id: Decimal("-10.00"), backer.id: Decimal("25.00")}

    def test_capped_pool_shared_pro_rata(self):
        big = position("30.00", against=True)
        small = position("10.00", against=True)
        loser = position("20.00", against=False)
        amounts = settlement_amounts([big, small, loser], CollaborationOutcome.FAILURE, PoolPolicy.CAPPED)
        assert amounts[big.id] == Decimal("15.00")
        assert amounts[small.id] == Decimal("5.00")
        assert amounts[loser.id] == Decimal("-20.00")

    def test_capped_shares_round_down(self):
        winners = [position("10.00", against=True) for _ in range(3)]
        loser = position("10.00", against=False)
        amounts = settlement_amounts(winners + [loser], CollaborationOutcome.FAILURE, PoolPolicy.CAPPED)
        assert all(amounts[w.id] == Decimal("3.33") for w in winners)
        assert sum(amounts[w.id] for w in winners) <= Decimal("10.00")

    def test_capped_never_exceeds_own_stake(self):
        winner = position("5.00", against=True)
        loser = position("50.00", against=False)
        amounts = settlement_amounts([winner, loser], CollaborationOutcome.FAILURE, PoolPolicy.CAPPED)
        assert amounts[winner.id] == Decimal("5.00")

    def test_capped_with_no_losers_pays_nothing(self):
        winner = position("5.00", against=True)
        amounts = settlement_amounts([winner], CollaborationOutcome.FAILURE, PoolPolicy.CAPPED)
        assert amounts[winner.id] == Decimal("0.00")


class TestAddCollaborator:
    """Tests for joining a goal."""

    async def test_owner_cannot_collaborate(self, machine, collaboration, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        with pytest.raises(DuplicateCollaboration):
            await collaboration.add_collaborator(goal.id, owner, "10.00")

    async def test_duplicate_position_rejected(self, machine, collaboration, open_funded, make_draft):
        owner = await open_funded("100.00")
        friend = await open_funded("50.00")
        goal = await machine.create_goal(make_draft(owner))
        await collaboration.add_collaborator(goal.id, friend, "10.00")
        with pytest.raises(DuplicateCollaboration):
            await collaboration.add_collaborator(goal.id, friend, "5.00", will_earn_if_fails=False)

    async def test_resolved_goal_rejected(self, machine, collaboration, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")
        with pytest.raises(GoalAlreadyResolved):
            await collaboration.add_collaborator(goal.id, uuid4(), "10.00")

    async def test_unknown_goal_and_bad_stake(self, machine, collaboration, open_funded, make_draft):
        with pytest.raises(GoalNotFound):
            await collaboration.add_collaborator(uuid4(), uuid4(), "10.00")

        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        with pytest.raises(InvalidAmount):
            await collaboration.add_collaborator(goal.id, uuid4(), "-1.00")

    async def test_joining_holds_no_funds(self, machine, collaboration, guard, open_funded, make_draft):
        owner = await open_funded("100.00")
        friend = await open_funded("50.00")
        goal = await machine.create_goal(make_draft(owner))
        await collaboration.add_collaborator(goal.id, friend, "10.00")
        assert await guard.get_balance(friend) == Decimal("50.00")


class TestGoalSettlement:
    """Tests for settling collaborators when a goal resolves."""

    async def test_failure_pays_doubters_and_charges_backers(
        self, machine, collaboration, guard, open_funded, make_draft
    ):
        owner = await open_funded("100.00")
        doubter = await open_funded("0")
        backer = await open_funded("30.00")
        goal = await machine.create_goal(make_draft(owner, stake="40.00"))
        await collaboration.add_collaborator(goal.id, doubter, "10.00", will_earn_if_fails=True)
        await collaboration.add_collaborator(goal.id, backer, "10.00", will_earn_if_fails=False)

        resolution = await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")

        assert resolution.is_complete
        assert len(resolution.collaborator_entries) == 2
        assert await guard.get_balance(owner) == Decimal("60.00")
        assert await guard.get_balance(doubter) == Decimal("10.00")
        assert await guard.get_balance(backer) == Decimal("20.00")

        by_account = {e.account_id: e for e in resolution.collaborator_entries}
        assert by_account[doubter].kind == TransactionKind.REWARD
        assert by_account[backer].kind == TransactionKind.PENALTY
        assert by_account[doubter].idempotency_key == collaborator_key(
            goal.id, doubter, CollaborationOutcome.FAILURE
        )

    async def test_success_with_many_collaborators(
        self, machine, collaboration, guard, store, open_funded, make_draft
    ):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, requires_verification=False))
        backers = [await open_funded("0") for _ in range(4)]
        for backer in backers:
            await collaboration.add_collaborator(goal.id, backer, "5.00", will_earn_if_fails=False)

        resolution = await machine.resolve_goal(goal.id, GoalStatus.COMPLETED, "req-1")

        # One owner entry plus one per collaborator
        assert len(resolution.collaborator_entries) == 4
        for backer in backers:
            assert await guard.get_balance(backer) == Decimal("5.00")
            assert len(await store.history(backer)) == 1

    async def test_cancel_leaves_collaborators_untouched(
        self, machine, collaboration, guard, store, open_funded, make_draft
    ):
        owner = await open_funded("100.00")
        friend = await open_funded("20.00")
        goal = await machine.create_goal(make_draft(owner))
        await collaboration.add_collaborator(goal.id, friend, "10.00", will_earn_if_fails=False)

        resolution = await machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")

        assert resolution.collaborator_entries == []
        assert await guard.get_balance(friend) == Decimal("20.00")
        assert len(await store.history(friend)) == 1

    async def test_partial_settlement_and_resume(
        self, machine, collaboration, guard, open_funded, make_draft
    ):
        owner = await open_funded("100.00")
        doubter = await open_funded("0")
        broke_backer = await open_funded("3.00")
        goal = await machine.create_goal(make_draft(owner))
        await collaboration.add_collaborator(goal.id, doubter, "10.00", will_earn_if_fails=True)
        await collaboration.add_collaborator(goal.id, broke_backer, "10.00", will_earn_if_fails=False)

        resolution = await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")

        assert resolution.failed_collaborator_ids == [broke_backer]
        assert await guard.get_balance(doubter) == Decimal("10.00")
        assert await guard.get_balance(broke_backer) == Decimal("3.00")
        with pytest.raises(PartialCollaboratorSettlement) as exc_info:
            resolution.raise_for_partial()
        assert exc_info.value.pending_ids == [broke_backer]
        assert exc_info.value.retryable

        await guard.fund(broke_backer, "20.00", reference="top-up")
        resumed = await machine.resume_settlement(goal.id, collaborator_ids=[broke_backer])

        assert resumed.is_complete
        assert await guard.get_balance(broke_backer) == Decimal("13.00")
        # The doubter was not retried and not paid twice
        assert await guard.get_balance(doubter) == Decimal("10.00")

        # A full resume replays everything without new entries
        replay = await machine.resume_settlement(goal.id)
        assert replay.is_complete
        assert await guard.get_balance(doubter) == Decimal("10.00")
        assert await guard.get_balance(broke_backer) == Decimal("13.00")

    async def test_settle_reports_error_kinds(
        self, machine, collaboration, open_funded, make_draft
    ):
        owner = await open_funded("100.00")
        broke = await open_funded("0")
        goal = await machine.create_goal(make_draft(owner))
        await collaboration.add_collaborator(goal.id, broke, "10.00", will_earn_if_fails=False)

        result = await collaboration.settle(goal, CollaborationOutcome.FAILURE)

        assert not result.is_complete
        assert result.errors == {str(broke): ErrorKind.INSUFFICIENT_FUNDS.value}

    async def test_capped_policy_through_state_machine(
        self, goal_storage, guard, goal_settings, audit_logger, clock, open_funded, make_draft
    ):
        settings = goal_settings.model_copy(update={"collaboration_pool_policy": PoolPolicy.CAPPED})
        collaboration = CollaborationSettlement(goal_storage, guard, settings, audit_logger)
        machine = GoalStateMachine(
            goal_storage, guard, collaboration, settings=settings, audit_logger=audit_logger, clock=clock
        )
        owner = await open_funded("100.00")
        doubter = await open_funded("0")
        backer = await open_funded("50.00")
        goal = await machine.create_goal(make_draft(owner))
        await collaboration.add_collaborator(goal.id, doubter, "30.00", will_earn_if_fails=True)
        await collaboration.add_collaborator(goal.id, backer, "12.00", will_earn_if_fails=False)

        await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")

        assert await guard.get_balance(doubter) == Decimal("12.00")
        assert await guard.get_balance(backer) == Decimal("38.00")
