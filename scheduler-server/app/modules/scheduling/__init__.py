"""Task scheduling engine.

Components are imported from their modules (``resolver``, ``eligibility``,
``dispatcher``, ``cancellation``, ``loop``); only the exceptions are
re-exported here since the infrastructure layer depends on them.
"""

from .exceptions import (
    ConcurrentTransitionConflict,
    DeliveryError,
    DuplicateResultError,
    InvalidCronExpression,
    NoEligibleTargets,
    SchedulingError,
    TargetResolutionError,
)

__all__ = [
    "ConcurrentTransitionConflict",
    "DeliveryError",
    "DuplicateResultError",
    "InvalidCronExpression",
    "NoEligibleTargets",
    "SchedulingError",
    "TargetResolutionError",
]
