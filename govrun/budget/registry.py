"""Registry of active run guards."""

from __future__ import annotations

import logging
import threading

from govrun.budget.guard import RunBudgetGuard
from govrun.budget.models import RunBudget
from govrun.errors import RunAlreadyActiveError
from govrun.metrics import GovrunMetrics

logger = logging.getLogger(__name__)

# The launcher only needs observe_tick / complete / abort from a guard.
GuardHandle = RunBudgetGuard


class GuardRegistry:
    """Hand out one guard per active run id; forget guards once terminal."""

    def __init__(self, metrics: GovrunMetrics | None = None) -> None:
        self._metrics = metrics
        self._guards: dict[str, RunBudgetGuard] = {}
        self._lock = threading.Lock()

    def attach_guard(self, run_id: str, budget: RunBudget) -> GuardHandle:
        """Create and register the guard for *run_id*."""
        normalized = str(run_id).strip()
        if not normalized:
            raise ValueError("run_id must be a non-empty string")
        guard = RunBudgetGuard(normalized, budget, metrics=self._metrics)
        with self._lock:
            if normalized in self._guards:
                raise RunAlreadyActiveError(normalized)
            self._guards[normalized] = guard
        guard.add_terminal_listener(self._drop)
        logger.debug("budget_guard_attached run_id=%s", normalized)
        return guard

    def get(self, run_id: str) -> GuardHandle | None:
        with self._lock:
            return self._guards.get(run_id)

    def active_run_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._guards)

    def __len__(self) -> int:
        with self._lock:
            return len(self._guards)

    def abort_all(self, reason: str = "shutdown") -> int:
        """Abort every active guard. Returns how many were aborted."""
        with self._lock:
            guards = list(self._guards.values())
        return sum(1 for guard in guards if guard.abort(reason).is_abort)

    def _drop(self, guard: RunBudgetGuard) -> None:
        with self._lock:
            if self._guards.get(guard.run_id) is guard:
                del self._guards[guard.run_id]
        logger.debug("budget_guard_released run_id=%s status=%s", guard.run_id, guard.status.value)
