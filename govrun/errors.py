"""Exception hierarchy for govrun.

Store adapters raise the transient/conflict/not-found errors; the reconciler
turns them into per-schedule results. Budget errors carry the breach that
caused them so callers can tell ceilings apart.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from govrun.budget.models import BudgetBreach


class GovrunError(Exception):
    """Base exception for govrun."""

    pass


class ConfigLoadError(GovrunError, ValueError):
    """Raised when configuration YAML cannot be parsed."""


class InvalidDesiredStateError(GovrunError, ValueError):
    """Raised when a desired schedule declaration cannot be materialized.

    This is a programming/config error: it is raised before any remote call.
    """

    def __init__(self, schedule_id: str, message: str) -> None:
        self.schedule_id = schedule_id
        super().__init__(f"Invalid desired state for '{schedule_id}': {message}")


class TransientStoreError(GovrunError):
    """Raised by a schedule store on network/service hiccups and timeouts."""

    def __init__(self, operation: str, message: str = "") -> None:
        self.operation = operation
        detail = message or "transient failure"
        super().__init__(f"Schedule store {operation} failed: {detail}")


class StoreUnavailableError(GovrunError):
    """Raised when a store operation keeps failing after all retries."""

    def __init__(self, operation: str, schedule_id: str, attempts: int) -> None:
        self.operation = operation
        self.schedule_id = schedule_id
        self.attempts = attempts
        super().__init__(
            f"Schedule store unavailable during {operation} for '{schedule_id}' "
            f"after {attempts} attempts"
        )


class ScheduleConflictError(GovrunError):
    """Raised by ``create`` when the schedule already exists."""

    def __init__(self, schedule_id: str) -> None:
        self.schedule_id = schedule_id
        super().__init__(f"Schedule already exists: {schedule_id}")


class ScheduleNotFoundError(GovrunError):
    """Raised by ``update``/``pause``/``resume`` when the schedule is missing."""

    def __init__(self, schedule_id: str) -> None:
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}")


class PersistentConflictError(GovrunError):
    """Raised when remote state keeps disagreeing after one reconciliation retry."""

    def __init__(self, schedule_id: str, reason: str) -> None:
        self.schedule_id = schedule_id
        self.reason = reason
        super().__init__(f"Persistent conflict for '{schedule_id}': {reason}")


class BudgetExceededError(GovrunError):
    """Raised inside a run body once its guard has aborted the run."""

    def __init__(self, run_id: str, breach: BudgetBreach) -> None:
        self.run_id = run_id
        self.breach = breach
        super().__init__(f"Run '{run_id}' aborted: {breach.describe()}")


class RunAlreadyActiveError(GovrunError):
    """Raised when a guard is attached twice for the same active run id."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run already has an active budget guard: {run_id}")
