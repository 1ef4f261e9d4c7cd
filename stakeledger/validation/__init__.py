"""Goal validation package."""

from stakeledger.validation.validator import GoalValidator

__all__ = ["GoalValidator"]
