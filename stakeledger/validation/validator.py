"""
Two-Stage Goal Validation

DESIGN DECISION: A goal draft is validated in two distinct stages before
any money moves:

STAGE 1 - SCHEMA VALIDATION:
- Required field presence
- Non-blank titles and targets
- This catches malformed submissions

STAGE 2 - SEMANTIC VALIDATION:
- Stake within configured limits
- Deadline in the future
- Duplicate active goal detection
- This catches goals that cannot be settled fairly

Stage 2 only runs when stage 1 passes. Errors block goal creation;
warnings are reported and do not.

IMPORTANT: Validation NEVER silently fixes issues.
"""

from datetime import datetime, timedelta
from typing import Optional

from stakeledger.config import GoalSettings, get_settings
from stakeledger.models.goal import (
    GoalDraft,
    GoalStatus,
    ValidationIssue,
    ValidationResult,
)
from stakeledger.models.ledger import utc_now
from stakeledger.services.storage import GoalStorageInterface


# Deadlines closer than this are allowed but flagged
SHORT_DEADLINE = timedelta(hours=1)


class GoalValidator:
    """
    Validates goal drafts through a two-stage pipeline.

    Stage 1: Schema validation (can run without storage)
    Stage 2: Semantic validation (uses storage for duplicate checks)
    """

    def __init__(
        self,
        goal_storage: Optional[GoalStorageInterface] = None,
        settings: Optional[GoalSettings] = None,
    ):
        """
        Initialize validator.

        Args:
            goal_storage: Storage interface for duplicate checking.
                         If None, duplicate checking is skipped.
            settings: Goal rules; defaults to the application settings.
        """
        self._storage = goal_storage
        self._settings = settings or get_settings().goals

    def _validate_schema(
        self,
        draft: GoalDraft,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if not draft.title:
            issues.append(ValidationIssue(
                field="title",
                issue_type="missing",
                message="Goal title is required",
                severity="error",
                suggested_fix="Describe what you are committing to",
            ))

        if not draft.target_value:
            issues.append(ValidationIssue(
                field="target_value",
                issue_type="missing",
                message="Goal target is required",
                severity="error",
                suggested_fix="State the grade, score or result that counts as success",
            ))

        if not draft.description:
            issues.append(ValidationIssue(
                field="description",
                issue_type="missing",
                message="Goal has no description",
                severity="info",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_semantic(
        self,
        draft: GoalDraft,
        now: datetime,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Checks:
        - Stake limits
        - Deadline in the future
        - Very short deadlines

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if draft.stake_amount <= 0:
            issues.append(ValidationIssue(
                field="stake_amount",
                issue_type="invalid_value",
                message="Stake must be greater than zero",
                severity="error",
            ))
        elif draft.stake_amount < self._settings.min_stake_amount:
            issues.append(ValidationIssue(
                field="stake_amount",
                issue_type="out_of_range",
                message=f"Stake {draft.stake_amount} is below the minimum of {self._settings.min_stake_amount}",
                severity="error",
                suggested_fix=f"Stake at least {self._settings.min_stake_amount}",
            ))
        elif draft.stake_amount > self._settings.max_stake_amount:
            issues.append(ValidationIssue(
                field="stake_amount",
                issue_type="out_of_range",
                message=f"Stake {draft.stake_amount} exceeds the maximum of {self._settings.max_stake_amount}",
                severity="error",
                suggested_fix=f"Stake at most {self._settings.max_stake_amount}",
            ))

        if draft.deadline <= now:
            issues.append(ValidationIssue(
                field="deadline",
                issue_type="in_past",
                message=f"Deadline ({draft.deadline.isoformat()}) has already passed",
                severity="error",
                suggested_fix="Pick a deadline in the future",
            ))
        elif draft.deadline - now < SHORT_DEADLINE:
            issues.append(ValidationIssue(
                field="deadline",
                issue_type="too_soon",
                message="Deadline is less than an hour away",
                severity="warning",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    async def _check_duplicates(
        self,
        draft: GoalDraft,
    ) -> list[ValidationIssue]:
        """Warn when the owner already has an active goal with the same title."""
        if self._storage is None:
            return []

        active = await self._storage.list_goals(owner_id=draft.owner_id, status=GoalStatus.ACTIVE)
        for goal in active:
            if goal.id != draft.id and goal.title.lower() == draft.title.lower():
                return [ValidationIssue(
                    field="title",
                    issue_type="duplicate",
                    message=f"You already have an active goal titled '{goal.title}'",
                    severity="warning",
                    suggested_fix="Check you are not staking twice on the same goal",
                )]
        return []

    async def validate(
        self,
        draft: GoalDraft,
        now: Optional[datetime] = None,
        check_duplicates: bool = True,
    ) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Args:
            draft: The goal draft to validate
            now: Reference time for deadline checks
            check_duplicates: Whether to check for duplicates (requires storage)

        Returns:
            ValidationResult with all issues found
        """
        now = now or utc_now()
        all_issues = []

        schema_valid, schema_issues = self._validate_schema(draft)
        all_issues.extend(schema_issues)

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(draft, now)
            all_issues.extend(semantic_issues)

            if check_duplicates:
                all_issues.extend(await self._check_duplicates(draft))

        return ValidationResult(
            goal_id=draft.id,
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            issues=all_issues,
        )

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """
        Generate a user-friendly summary of validation results.

        This is what we show to the person creating the goal.
        """
        if result.is_valid and not result.warnings:
            return "All checks passed."

        lines = []

        if result.has_errors:
            lines.append("The goal cannot be created yet:")
            for issue in result.issues:
                if issue.severity == "error":
                    lines.append(f"   • {issue.message}")
                    if issue.suggested_fix:
                        lines.append(f"     ({issue.suggested_fix})")

        if result.warnings:
            if lines:
                lines.append("")
            lines.append("Please double-check:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        return "\n".join(lines)
