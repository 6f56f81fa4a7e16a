"""Per-run budget guard, guard registry and the run launcher."""

from govrun.budget.guard import RunBudgetGuard
from govrun.budget.launcher import (
    RunContext,
    RunLauncher,
    RunResult,
    RunResultStatus,
    ScheduledRunInput,
    register_scheduled_run,
)
from govrun.budget.models import (
    BudgetBreach,
    Ceiling,
    ModelCall,
    RunBudget,
    RunStatus,
    RunTickState,
    StabilityPolicy,
    TickOutcome,
    TickOutcomeKind,
    TimeElapsed,
    ToolInvocation,
)
from govrun.budget.registry import GuardHandle, GuardRegistry

__all__ = [
    "BudgetBreach",
    "Ceiling",
    "GuardHandle",
    "GuardRegistry",
    "ModelCall",
    "RunBudget",
    "RunBudgetGuard",
    "RunContext",
    "RunLauncher",
    "RunResult",
    "RunResultStatus",
    "RunStatus",
    "RunTickState",
    "ScheduledRunInput",
    "StabilityPolicy",
    "TickOutcome",
    "TickOutcomeKind",
    "TimeElapsed",
    "ToolInvocation",
    "register_scheduled_run",
]
