"""Alarm penalty package."""

from stakeledger.alarms.trigger import AlarmPenaltyTrigger, generate_code

__all__ = ["AlarmPenaltyTrigger", "generate_code"]
