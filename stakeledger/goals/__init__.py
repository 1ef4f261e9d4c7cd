"""Goals package: lifecycle, collaboration and task rewards."""

from stakeledger.goals.collaboration import CollaborationSettlement, settlement_amounts
from stakeledger.goals.state_machine import GoalStateMachine
from stakeledger.goals.tasks import TaskRewards

__all__ = [
    "CollaborationSettlement",
    "GoalStateMachine",
    "TaskRewards",
    "settlement_amounts",
]
