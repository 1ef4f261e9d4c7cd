"""
Goal, Collaboration, Alarm and Task Models

These models describe everything that can cause a settlement.
They are owned by the goal storage and referenced from ledger entries
by id only.

DESIGN DECISION: Verification evidence is a tagged union with a fixed
schema per verification type. Nothing at the settlement boundary
accepts an open-ended dict.
"""

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from stakeledger.errors import PartialCollaboratorSettlement
from stakeledger.models.ledger import LedgerEntry, Money, ensure_aware, utc_now


# =============================================================================
# ENUMS
# =============================================================================

class GoalStatus(str, Enum):
    """
    Goal lifecycle status.

    CRITICAL: active is the only non-terminal state.
    A goal leaves it exactly once.
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not GoalStatus.ACTIVE


class GoalType(str, Enum):
    """What kind of target the goal tracks."""
    CANVAS_GRADE = "canvas_grade"
    HOMEWORK_ASSIGNMENT = "homework_assignment"
    SAT_SCORE = "sat_score"
    MCAT_SCORE = "mcat_score"
    COLLEGE_BOARD_EXAM = "college_board_exam"
    CUSTOM = "custom"


class CollaborationOutcome(str, Enum):
    """Outcome collaborators are settled against."""
    SUCCESS = "success"
    FAILURE = "failure"


class PoolPolicy(str, Enum):
    """
    How collaborator winnings relate to the losing side's stakes.

    UNCAPPED: every winner receives exactly their own stake.
    CAPPED: total winnings never exceed what the losing side forfeited.
    """
    UNCAPPED = "uncapped"
    CAPPED = "capped"


class VerificationType(str, Enum):
    """Verification evidence types."""
    PHOTO = "photo"
    DOCUMENT = "document"
    API = "api"
    MANUAL = "manual"


# =============================================================================
# GOALS
# =============================================================================

class GoalDraft(BaseModel):
    """
    A goal as submitted by the user, before validation and staking.

    Field constraints here are structural only; the GoalValidator applies
    the configurable business rules.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    owner_id: UUID
    title: str = Field(..., max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    goal_type: GoalType = GoalType.CUSTOM
    target_value: str = Field(..., max_length=200)
    deadline: datetime
    stake_amount: Money
    requires_verification: Optional[bool] = Field(
        default=None,
        description="None means use the configured default"
    )

    @field_validator('deadline')
    @classmethod
    def deadline_is_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class Goal(BaseModel):
    """A staked commitment."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    owner_id: UUID
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    goal_type: GoalType = GoalType.CUSTOM
    target_value: str = Field(..., max_length=200)
    current_value: Optional[str] = Field(default=None, max_length=200)
    deadline: datetime
    stake_amount: Money = Field(..., gt=0)
    status: GoalStatus = GoalStatus.ACTIVE
    requires_verification: bool = True
    # Bumped by storage with every submitted verification; cancelling
    # commits only while it is still zero
    verification_count: int = Field(default=0, ge=0)

    # Set once, by whichever caller wins the terminal transition
    resolution_key: Optional[str] = None
    resolved_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_draft(cls, draft: GoalDraft, requires_verification: bool) -> "Goal":
        return cls(
            id=draft.id,
            owner_id=draft.owner_id,
            title=draft.title,
            description=draft.description,
            goal_type=draft.goal_type,
            target_value=draft.target_value,
            deadline=draft.deadline,
            stake_amount=draft.stake_amount,
            requires_verification=requires_verification,
        )

    @field_validator('deadline', 'resolved_at')
    @classmethod
    def timestamps_are_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(v) if v is not None else v

    def is_overdue(self, now: datetime) -> bool:
        return now >= self.deadline


class GoalCollaboration(BaseModel):
    """
    A collaborator's position on someone else's goal.

    will_earn_if_fails=True means the collaborator bet against the owner.
    """

    id: UUID = Field(default_factory=uuid4)
    goal_id: UUID
    collaborator_id: UUID
    stake_amount: Money = Field(..., gt=0)
    will_earn_if_fails: bool = True
    created_at: datetime = Field(default_factory=utc_now)

    def wins(self, outcome: CollaborationOutcome) -> bool:
        if outcome == CollaborationOutcome.FAILURE:
            return self.will_earn_if_fails
        return not self.will_earn_if_fails


# =============================================================================
# VERIFICATION EVIDENCE (tagged union)
# =============================================================================

class PhotoEvidence(BaseModel):
    verification_type: Literal["photo"] = "photo"
    image_url: str = Field(..., min_length=1)
    caption: Optional[str] = Field(default=None, max_length=500)


class DocumentEvidence(BaseModel):
    verification_type: Literal["document"] = "document"
    document_url: str = Field(..., min_length=1)
    file_name: Optional[str] = Field(default=None, max_length=200)


class ApiEvidence(BaseModel):
    """Evidence fetched from an external system (e.g. a grade portal)."""
    verification_type: Literal["api"] = "api"
    provider: str = Field(..., min_length=1, max_length=100)
    reference: str = Field(..., min_length=1, max_length=200)


class ManualEvidence(BaseModel):
    verification_type: Literal["manual"] = "manual"
    note: str = Field(..., min_length=1, max_length=1000)


Evidence = Annotated[
    Union[PhotoEvidence, DocumentEvidence, ApiEvidence, ManualEvidence],
    Field(discriminator="verification_type"),
]


class Verification(BaseModel):
    """
    Proof submitted for a goal.

    Only approved verifications allow a goal to complete.
    """

    id: UUID = Field(default_factory=uuid4)
    goal_id: UUID
    user_id: UUID
    evidence: Evidence
    verified_value: Optional[str] = Field(default=None, max_length=200)
    is_approved: bool = False
    reviewed_by: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def verification_type(self) -> VerificationType:
        return VerificationType(self.evidence.verification_type)


# =============================================================================
# ALARMS
# =============================================================================

class AlarmClock(BaseModel):
    """
    A daily accountability checkpoint.

    The user must enter `code` within `window_minutes` of `alarm_time`
    (local to `timezone`) or forfeit `stake_amount`.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    goal_id: Optional[UUID] = None
    title: str = Field(..., min_length=1, max_length=200)
    alarm_time: time
    timezone: str = "UTC"
    code: str = Field(..., min_length=4, max_length=12)
    stake_amount: Money = Field(..., gt=0)
    window_minutes: int = Field(default=5, ge=1, le=720)
    is_active: bool = True
    last_triggered: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    def window_for(self, window_date: date) -> tuple[datetime, datetime]:
        """(start, end) of the alarm window on a local calendar date."""
        start = datetime.combine(window_date, self.alarm_time, tzinfo=ZoneInfo(self.timezone))
        return start, start + timedelta(minutes=self.window_minutes)

    def latest_window(self, now: datetime) -> tuple[date, datetime, datetime]:
        """
        The most recent window that has opened at or before `now`.

        Returns (window_date, start, end).
        """
        local_date = now.astimezone(ZoneInfo(self.timezone)).date()
        start, end = self.window_for(local_date)
        if now < start:
            local_date = local_date - timedelta(days=1)
            start, end = self.window_for(local_date)
        return local_date, start, end

    def pending_windows(self, now: datetime) -> list[tuple[date, datetime]]:
        """
        Windows that have ended but were never closed, oldest first.

        A window counts only if it ended after both the alarm's creation
        and `last_triggered`. Returns (window_date, end) pairs.
        """
        floor = self.created_at
        if self.last_triggered is not None and self.last_triggered > floor:
            floor = self.last_triggered

        window_date = floor.astimezone(ZoneInfo(self.timezone)).date() - timedelta(days=1)
        pending = []
        while True:
            _, end = self.window_for(window_date)
            if end > now:
                break
            if end > floor:
                pending.append((window_date, end))
            window_date += timedelta(days=1)
        return pending


class AlarmLog(BaseModel):
    """One code attempt or one missed-window evaluation."""

    id: UUID = Field(default_factory=uuid4)
    alarm_id: UUID
    user_id: UUID
    window_date: date
    entered_at: Optional[datetime] = None
    code_entered: Optional[str] = None
    was_successful: bool = False
    penalty_applied: Money = Decimal("0.00")
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# TASKS
# =============================================================================

class Task(BaseModel):
    """A small to-do that pays a reward when completed."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    goal_id: Optional[UUID] = None
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    reward_amount: Money = Field(default=Decimal("0.00"), ge=0)
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    due_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'out_of_range', 'in_past')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggestion for how to fix the issue"
    )


class ValidationResult(BaseModel):
    """
    Result of the two-stage goal validation.

    Stage 1: Schema validation (required fields, shapes)
    Stage 2: Semantic validation (stake limits, deadline)
    """

    goal_id: UUID
    validated_at: datetime = Field(default_factory=utc_now)
    schema_valid: bool
    semantic_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.schema_valid and self.semantic_valid and not self.has_errors

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def warnings(self) -> list[str]:
        """Messages of warning-level issues."""
        return [issue.message for issue in self.issues if issue.severity == "warning"]


# =============================================================================
# SETTLEMENT RESULTS
# =============================================================================

class CollaborationSettlementResult(BaseModel):
    """Per-collaborator outcome of settling one goal."""

    goal_id: UUID
    outcome: CollaborationOutcome
    entries: list[LedgerEntry] = Field(default_factory=list)
    failed_collaborator_ids: list[UUID] = Field(default_factory=list)
    errors: dict[str, str] = Field(
        default_factory=dict,
        description="collaborator id -> error kind"
    )

    @property
    def is_complete(self) -> bool:
        return not self.failed_collaborator_ids


class GoalResolution(BaseModel):
    """What resolving a goal did to the ledger."""

    goal_id: UUID
    outcome: GoalStatus
    owner_entry: LedgerEntry
    collaborator_entries: list[LedgerEntry] = Field(default_factory=list)
    failed_collaborator_ids: list[UUID] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_outcome(self) -> 'GoalResolution':
        if not self.outcome.is_terminal:
            raise ValueError("A resolution outcome must be a terminal status")
        return self

    @property
    def is_complete(self) -> bool:
        return not self.failed_collaborator_ids

    def raise_for_partial(self) -> "GoalResolution":
        """Raise PartialCollaboratorSettlement if any collaborator is pending."""
        if self.failed_collaborator_ids:
            raise PartialCollaboratorSettlement(
                goal_id=self.goal_id,
                pending_ids=list(self.failed_collaborator_ids),
                resolution=self,
            )
        return self
