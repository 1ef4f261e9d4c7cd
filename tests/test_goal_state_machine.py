"""
Tests for the goal lifecycle and the settlements it causes.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from stakeledger.errors import (
    CancellationNotAllowed,
    GoalAlreadyResolved,
    GoalNotFound,
    GoalValidationFailed,
    InsufficientFunds,
    InvalidAmount,
    StoreUnavailable,
    VerificationNotFound,
    VerificationRequired,
)
from stakeledger.models.audit import AuditEventType
from stakeledger.models.goal import GoalStatus, Verification
from stakeledger.models.ledger import TransactionKind
from stakeledger.services.storage import VersionConflict


MANUAL_PROOF = {"verification_type": "manual", "note": "Transcript shows an A"}


class TestCreateGoal:
    """Tests for goal creation and staking."""

    async def test_create_goal_deducts_stake(self, machine, store, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, stake="40.00"))

        assert goal.status == GoalStatus.ACTIVE
        history = await store.history(owner)
        stake = history[0]
        assert stake.kind == TransactionKind.STAKE
        assert stake.amount == Decimal("-40.00")
        assert stake.balance_before == Decimal("100.00")
        assert stake.balance_after == Decimal("60.00")
        assert stake.idempotency_key == f"goal:{goal.id}:stake"
        assert stake.related_entity.entity_id == goal.id

    async def test_create_goal_retry_stakes_once(self, machine, guard, open_funded, make_draft):
        owner = await open_funded("100.00")
        draft = make_draft(owner)
        first = await machine.create_goal(draft)
        second = await machine.create_goal(draft)
        assert first.id == second.id
        assert await guard.get_balance(owner) == Decimal("60.00")

    async def test_create_goal_insufficient_funds(self, machine, goal_storage, guard, open_funded, make_draft):
        owner = await open_funded("10.00")
        draft = make_draft(owner, stake="40.00")
        with pytest.raises(InsufficientFunds):
            await machine.create_goal(draft)
        assert await goal_storage.get_goal(draft.id) is None
        assert await guard.get_balance(owner) == Decimal("10.00")

    async def test_stake_below_minimum_fails_validation(self, machine, guard, open_funded, make_draft):
        owner = await open_funded("100.00")
        with pytest.raises(GoalValidationFailed) as exc_info:
            await machine.create_goal(make_draft(owner, stake="0.50"))
        assert exc_info.value.result.error_count == 1
        assert "below the minimum" in str(exc_info.value)
        assert await guard.get_balance(owner) == Decimal("100.00")

    async def test_deadline_in_past_fails_validation(self, machine, open_funded, make_draft, clock):
        owner = await open_funded("100.00")
        with pytest.raises(GoalValidationFailed):
            await machine.create_goal(make_draft(owner, deadline=clock() - timedelta(minutes=1)))

    async def test_requires_verification_defaults_from_settings(self, machine, open_funded, make_draft):
        owner = await open_funded("100.00")
        default = await machine.create_goal(make_draft(owner, stake="10.00"))
        manual = await machine.create_goal(make_draft(
            owner, stake="10.00", title="Read 5 books", requires_verification=False
        ))
        assert default.requires_verification is True
        assert manual.requires_verification is False

    async def test_stake_requires_positive_amount(self, machine, open_funded):
        owner = await open_funded("100.00")
        with pytest.raises(InvalidAmount):
            await machine.stake(owner, uuid4(), "0")


class TestResolveGoal:
    """Tests for terminal transitions."""

    async def test_failing_goal_charges_nothing_further(self, machine, guard, store, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, stake="40.00"))

        resolution = await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")

        assert resolution.outcome == GoalStatus.FAILED
        assert resolution.owner_entry.kind == TransactionKind.PENALTY
        assert resolution.owner_entry.amount == Decimal("0.00")
        assert await guard.get_balance(owner) == Decimal("60.00")
        assert len(await store.history(owner)) == 3

        stored = await machine.get_goal(goal.id)
        assert stored.status == GoalStatus.FAILED
        assert stored.resolution_key == "req-1"
        assert stored.resolved_at is not None

    async def test_completion_requires_approved_verification(self, machine, guard, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, stake="40.00"))

        with pytest.raises(VerificationRequired):
            await machine.resolve_goal(goal.id, GoalStatus.COMPLETED, "req-1")

        verification = await machine.submit_verification(goal.id, owner, MANUAL_PROOF, verified_value="A")
        with pytest.raises(VerificationRequired):
            await machine.resolve_goal(goal.id, GoalStatus.COMPLETED, "req-2")

        await machine.review_verification(verification.id, reviewer_id=uuid4(), approved=True)
        resolution = await machine.resolve_goal(goal.id, GoalStatus.COMPLETED, "req-3")

        assert resolution.owner_entry.kind == TransactionKind.PAYOUT
        assert resolution.owner_entry.amount == Decimal("40.00")
        assert await guard.get_balance(owner) == Decimal("100.00")

    async def test_manual_override_completion(self, machine, guard, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, requires_verification=False))
        await machine.resolve_goal(goal.id, GoalStatus.COMPLETED, "req-1")
        assert await guard.get_balance(owner) == Decimal("100.00")

    async def test_cancel_refunds_stake(self, machine, guard, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, stake="40.00"))
        resolution = await machine.resolve_goal(goal.id, "cancelled", "req-1")
        assert resolution.owner_entry.kind == TransactionKind.REFUND
        assert await guard.get_balance(owner) == Decimal("100.00")

    async def test_cancel_after_deadline_not_allowed(self, machine, open_funded, make_draft, clock):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        clock.advance(days=8)
        with pytest.raises(CancellationNotAllowed):
            await machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")

    async def test_cancel_after_verification_not_allowed(self, machine, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        await machine.submit_verification(goal.id, owner, MANUAL_PROOF)
        with pytest.raises(CancellationNotAllowed):
            await machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")
        assert (await machine.get_goal(goal.id)).status == GoalStatus.ACTIVE

    async def test_second_resolution_rejected_without_settlement(
        self, machine, store, open_funded, make_draft, audit_storage
    ):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")
        entries_before = len(await store.history(owner))

        with pytest.raises(GoalAlreadyResolved) as other:
            await machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-2")
        with pytest.raises(GoalAlreadyResolved) as repeat:
            await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")

        assert other.value.same_request is False
        assert repeat.value.same_request is True
        assert len(await store.history(owner)) == entries_before
        rejected = [e for e in audit_storage.events if e.event_type == AuditEventType.GOAL_RESOLUTION_REJECTED]
        assert len(rejected) == 2

    async def test_concurrent_resolutions_one_winner(self, machine, store, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))

        results = await asyncio.gather(*[
            machine.resolve_goal(goal.id, GoalStatus.FAILED, f"req-{i}")
            for i in range(4)
        ], return_exceptions=True)

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, GoalAlreadyResolved)]
        assert len(winners) == 1
        assert len(losers) == 3
        owner_entries = [e for e in await store.history(owner) if e.kind == TransactionKind.PENALTY]
        assert len(owner_entries) == 1

    async def test_resolve_unknown_goal(self, machine):
        with pytest.raises(GoalNotFound):
            await machine.resolve_goal(uuid4(), GoalStatus.FAILED, "req-1")

    async def test_resolve_to_active_rejected(self, machine, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        with pytest.raises(ValueError):
            await machine.resolve_goal(goal.id, GoalStatus.ACTIVE, "req-1")


class TestResumeSettlement:
    """Tests for re-issuing settlements after a failure."""

    async def test_resume_after_store_outage(self, machine, guard, ledger_storage, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, stake="40.00"))

        original = ledger_storage.commit_settlement
        outage = {"active": True}

        async def flaky_commit(account, expected_version, draft):
            if outage["active"] and draft.idempotency_key.startswith(f"goal:{goal.id}:owner"):
                outage["active"] = False
                raise StoreUnavailable("connection reset")
            return await original(account, expected_version, draft)

        ledger_storage.commit_settlement = flaky_commit

        with pytest.raises(StoreUnavailable):
            await machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")

        # The transition stuck; the refund did not
        assert (await machine.get_goal(goal.id)).status == GoalStatus.CANCELLED
        assert await guard.get_balance(owner) == Decimal("60.00")

        with pytest.raises(GoalAlreadyResolved) as exc_info:
            await machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")
        assert exc_info.value.same_request

        resolution = await machine.resume_settlement(goal.id)
        again = await machine.resume_settlement(goal.id)

        assert resolution.owner_entry.id == again.owner_entry.id
        assert await guard.get_balance(owner) == Decimal("100.00")

    async def test_resume_requires_terminal_goal(self, machine, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        with pytest.raises(ValueError):
            await machine.resume_settlement(goal.id)


class TestExpireOverdue:
    """Tests for failing goals that passed their deadline."""

    async def test_expire_overdue(self, machine, guard, open_funded, make_draft, clock):
        owner = await open_funded("100.00")
        overdue = await machine.create_goal(make_draft(owner, stake="10.00", title="Short goal",
                                                       deadline=clock() + timedelta(days=1)))
        pending = await machine.create_goal(make_draft(owner, stake="10.00", title="Long goal",
                                                       deadline=clock() + timedelta(days=30)))
        proven = await machine.create_goal(make_draft(owner, stake="10.00", title="Proven goal",
                                                      deadline=clock() + timedelta(days=1)))
        verification = await machine.submit_verification(proven.id, owner, MANUAL_PROOF)
        await machine.review_verification(verification.id, uuid4(), approved=True)

        clock.advance(days=2)
        resolutions = await machine.expire_overdue()

        assert [r.goal_id for r in resolutions] == [overdue.id]
        assert (await machine.get_goal(overdue.id)).status == GoalStatus.FAILED
        assert (await machine.get_goal(pending.id)).status == GoalStatus.ACTIVE
        assert (await machine.get_goal(proven.id)).status == GoalStatus.ACTIVE
        assert await guard.get_balance(owner) == Decimal("70.00")

        # Running again finds nothing new
        assert await machine.expire_overdue() == []

    async def test_sweep_continues_past_contended_goal(
        self, machine, ledger_storage, open_funded, make_draft, clock, audit_storage, monkeypatch
    ):
        owner = await open_funded("100.00")
        contended = await machine.create_goal(make_draft(owner, stake="10.00", title="Contended goal"))
        quiet = await machine.create_goal(make_draft(owner, stake="10.00", title="Quiet goal"))

        original = ledger_storage.commit_settlement

        async def always_conflicts(account, expected_version, draft):
            if draft.idempotency_key.startswith(f"goal:{contended.id}:owner"):
                raise VersionConflict(account.id, expected_version)
            return await original(account, expected_version, draft)

        monkeypatch.setattr(ledger_storage, "commit_settlement", always_conflicts)
        clock.advance(days=8)

        resolutions = await machine.expire_overdue()

        assert [r.goal_id for r in resolutions] == [quiet.id]
        assert (await machine.get_goal(quiet.id)).status == GoalStatus.FAILED
        assert (await machine.get_goal(contended.id)).status == GoalStatus.FAILED
        errors = [e for e in audit_storage.events if e.event_type == AuditEventType.SYSTEM_ERROR]
        assert [e.details["goal_id"] for e in errors] == [str(contended.id)]

        monkeypatch.undo()
        resumed = await machine.resume_settlement(contended.id)
        assert resumed.owner_entry.kind == TransactionKind.PENALTY
        assert resumed.owner_entry.amount == Decimal("0.00")


class TestVerification:
    """Tests for verification submission and review."""

    async def test_submit_on_resolved_goal_rejected(self, machine, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        await machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-1")
        with pytest.raises(GoalAlreadyResolved):
            await machine.submit_verification(goal.id, owner, MANUAL_PROOF)

    async def test_review_unknown_verification(self, machine):
        with pytest.raises(VerificationNotFound):
            await machine.review_verification(uuid4(), uuid4(), approved=True)

    async def test_review_records_reviewer(self, machine, open_funded, make_draft, clock):
        owner = await open_funded("100.00")
        reviewer = uuid4()
        goal = await machine.create_goal(make_draft(owner))
        verification = await machine.submit_verification(
            goal.id, owner, {"verification_type": "photo", "image_url": "https://img.example/a.jpg"}
        )
        reviewed = await machine.review_verification(verification.id, reviewer, approved=False)
        assert reviewed.reviewed_by == reviewer
        assert reviewed.reviewed_at == clock()
        assert reviewed.is_approved is False

    async def test_cancel_and_submit_race_has_one_winner(
        self, machine, goal_storage, guard, open_funded, make_draft
    ):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner, stake="40.00"))

        cancelled, submitted = await asyncio.gather(
            machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1"),
            machine.submit_verification(goal.id, owner, MANUAL_PROOF),
            return_exceptions=True,
        )

        stored = await machine.get_goal(goal.id)
        verifications = await goal_storage.list_verifications(goal.id)
        if isinstance(cancelled, CancellationNotAllowed):
            assert stored.status == GoalStatus.ACTIVE
            assert len(verifications) == 1
            assert await guard.get_balance(owner) == Decimal("60.00")
        else:
            assert isinstance(submitted, GoalAlreadyResolved)
            assert stored.status == GoalStatus.CANCELLED
            assert verifications == []
            assert await guard.get_balance(owner) == Decimal("100.00")

    async def test_cancel_write_requires_no_verifications(self, machine, goal_storage, open_funded, make_draft):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        # Cancellation checked against this snapshot, then a verification lands
        snapshot = await machine.get_goal(goal.id)
        await machine.submit_verification(goal.id, owner, MANUAL_PROOF)

        cancelled = snapshot.model_copy(update={"status": GoalStatus.CANCELLED, "resolution_key": "req-1"})
        with pytest.raises(VersionConflict):
            await goal_storage.transition_goal(
                cancelled, GoalStatus.ACTIVE, expected_verification_count=snapshot.verification_count
            )

        stored = await machine.get_goal(goal.id)
        assert stored.status == GoalStatus.ACTIVE
        assert stored.verification_count == 1

    async def test_verification_rejected_by_storage_once_resolved(
        self, machine, goal_storage, open_funded, make_draft
    ):
        owner = await open_funded("100.00")
        goal = await machine.create_goal(make_draft(owner))
        await machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")

        with pytest.raises(VersionConflict):
            await goal_storage.add_verification(Verification(goal_id=goal.id, user_id=owner, evidence=MANUAL_PROOF))
        assert await goal_storage.list_verifications(goal.id) == []
