"""Execution record module."""

from .models import (
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStats,
    ExecutionStatus,
    generate_instruction_id,
)

__all__ = [
    "ExecutionOutcome",
    "ExecutionRecord",
    "ExecutionStats",
    "ExecutionStatus",
    "generate_instruction_id",
]
