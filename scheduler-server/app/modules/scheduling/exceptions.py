"""Scheduling engine exceptions."""


class SchedulingError(Exception):
    """Base class for scheduling engine errors."""


class TargetResolutionError(SchedulingError):
    """Raised when a task's target definition cannot be resolved (e.g. unknown group)."""


class NoEligibleTargets(SchedulingError):
    """Raised when target resolution yields no devices."""


class DeliveryError(SchedulingError):
    """Raised by a delivery channel that could not hand an instruction to a device."""


class DuplicateResultError(SchedulingError):
    """Raised when a result arrives for a record that is already terminal."""


class ConcurrentTransitionConflict(SchedulingError):
    """Raised when the per-task lock is held by another worker."""


class InvalidCronExpression(SchedulingError):
    """Raised when a recurring task carries an unparsable cron expression."""
