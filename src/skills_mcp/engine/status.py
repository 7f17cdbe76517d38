"""Execution status enums for skill executions and their workflow units."""

from enum import Enum


class SkillExecutionStatus(str, Enum):
    """
    Skill execution lifecycle states.

    Lifecycle: PENDING → RUNNING → {SUCCESS | FAILED | PARTIAL_FAILED}.
    CANCELLED is reached from any state through an explicit stop request.
    """

    PENDING = "pending"
    """Created, top-level job not yet picked up."""

    RUNNING = "running"
    """Levels are being dispatched."""

    SUCCESS = "success"
    """Every dispatched unit succeeded."""

    FAILED = "failed"
    """No unit succeeded."""

    PARTIAL_FAILED = "partial_failed"
    """Some units succeeded, some failed."""

    CANCELLED = "cancelled"
    """Stopped by the user."""

    def is_active(self) -> bool:
        """Check if execution has not reached a final state."""
        return self in (SkillExecutionStatus.PENDING, SkillExecutionStatus.RUNNING)

    def is_cancelled(self) -> bool:
        """Check if execution was cancelled."""
        return self == SkillExecutionStatus.CANCELLED


class UnitStatus(str, Enum):
    """
    Workflow unit lifecycle states.

    Lifecycle: PENDING → QUEUED → RUNNING → {SUCCESS | FAILED | SKIPPED | BLOCKED}.
    A unit scheduled for retry goes back to QUEUED.
    """

    PENDING = "pending"
    """Materialized from the plan, not dispatched."""

    QUEUED = "queued"
    """Job enqueued (first attempt or retry)."""

    RUNNING = "running"
    """Workload engine run in progress."""

    SUCCESS = "success"
    """Workload finished successfully."""

    FAILED = "failed"
    """Retries exhausted, non-retryable error, or cancelled."""

    SKIPPED = "skipped"
    """Dependency condition evaluated to false."""

    BLOCKED = "blocked"
    """An upstream dependency failed."""

    def is_terminal(self) -> bool:
        """Check if unit reached a final state."""
        return self in TERMINAL_UNIT_STATUSES


TERMINAL_UNIT_STATUSES = frozenset(
    {UnitStatus.SUCCESS, UnitStatus.FAILED, UnitStatus.SKIPPED, UnitStatus.BLOCKED}
)

IN_FLIGHT_UNIT_STATUSES = frozenset({UnitStatus.PENDING, UnitStatus.QUEUED, UnitStatus.RUNNING})


class WorkloadStatus(str, Enum):
    """Status reported by the workload engine for a single run."""

    PENDING = "pending"
    EXECUTING = "executing"
    FINISHED = "finished"
    FAILED = "failed"


__all__ = [
    "SkillExecutionStatus",
    "UnitStatus",
    "WorkloadStatus",
    "TERMINAL_UNIT_STATUSES",
    "IN_FLIGHT_UNIT_STATUSES",
]
