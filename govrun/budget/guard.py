"""Per-run budget guard.

The guard is the single owner of a run's :class:`RunTickState`. Counter
updates, ceiling evaluation and the terminal transition happen under one
lock, so ticks may arrive from worker threads and from the event loop.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from govrun.budget.models import (
    ALREADY_TERMINAL,
    CONTINUE,
    BudgetBreach,
    Ceiling,
    ModelCall,
    RunBudget,
    RunStatus,
    RunTickState,
    TickEvent,
    TickOutcome,
    TickOutcomeKind,
    TimeElapsed,
    ToolInvocation,
)
from govrun.metrics import GovrunMetrics

logger = logging.getLogger(__name__)

TerminalListener = Callable[["RunBudgetGuard"], None]


class RunBudgetGuard:
    """Track one run's consumption and abort it at the first exceeded ceiling."""

    def __init__(
        self,
        run_id: str,
        budget: RunBudget,
        *,
        metrics: GovrunMetrics | None = None,
    ) -> None:
        self.run_id = run_id
        self.budget = budget
        self._metrics = metrics
        self._state = RunTickState()
        self._lock = threading.Lock()
        self._listeners: list[TerminalListener] = []

    # -- state access ----------------------------------------------------

    @property
    def state(self) -> RunTickState:
        """Return a copy of the current tick state."""
        with self._lock:
            return self._state.snapshot()

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._state.status

    @property
    def breach(self) -> BudgetBreach | None:
        with self._lock:
            return self._state.breach

    @property
    def is_terminal(self) -> bool:
        with self._lock:
            return self._state.is_terminal

    def add_terminal_listener(self, callback: TerminalListener) -> None:
        """Call *callback* once when the guard turns terminal.

        A listener added after the transition is called immediately.
        """
        with self._lock:
            if not self._state.is_terminal:
                self._listeners.append(callback)
                return
        callback(self)

    # -- transitions -----------------------------------------------------

    def observe_tick(self, event: TickEvent) -> TickOutcome:
        """Account for one event and return whether the run may continue."""
        with self._lock:
            state = self._state
            if state.is_terminal:
                logger.debug(
                    "budget_tick_after_terminal run_id=%s event=%s status=%s",
                    self.run_id,
                    type(event).__name__,
                    state.status.value,
                )
                return ALREADY_TERMINAL
            self._apply(state, event)
            breach = self._first_breach(state)
            if breach is None:
                return CONTINUE
            state.status = RunStatus.ABORTED
            state.breach = breach
            listeners = self._take_listeners()

        logger.warning(
            "budget_abort run_id=%s ceiling=%s observed=%s limit=%s",
            self.run_id,
            breach.ceiling.value,
            breach.observed,
            breach.limit,
        )
        if self._metrics is not None:
            self._metrics.record_abort(breach.ceiling.value)
        self._notify(listeners)
        return TickOutcome(TickOutcomeKind.ABORT, breach)

    def complete(self) -> bool:
        """Mark the run completed. Returns False when it was already terminal."""
        with self._lock:
            if self._state.is_terminal:
                return False
            self._state.status = RunStatus.COMPLETED
            listeners = self._take_listeners()
        logger.info("budget_run_completed run_id=%s", self.run_id)
        self._notify(listeners)
        return True

    def abort(self, reason: str = "cancelled") -> TickOutcome:
        """Abort the run explicitly; at most one abort is ever reported."""
        with self._lock:
            state = self._state
            if state.is_terminal:
                return ALREADY_TERMINAL
            breach = BudgetBreach(
                ceiling=Ceiling.CANCELLED,
                observed=state.model_call_count,
                limit=self.budget.max_model_calls,
                detail=reason,
            )
            state.status = RunStatus.ABORTED
            state.breach = breach
            listeners = self._take_listeners()
        logger.warning("budget_abort run_id=%s ceiling=cancelled reason=%s", self.run_id, reason)
        if self._metrics is not None:
            self._metrics.record_abort(Ceiling.CANCELLED.value)
        self._notify(listeners)
        return TickOutcome(TickOutcomeKind.ABORT, breach)

    # -- internals -------------------------------------------------------

    def _apply(self, state: RunTickState, event: TickEvent) -> None:
        if isinstance(event, ModelCall):
            state.model_call_count += 1
            state.spend_usd_accrued += event.cost
            self._check_prefix(state, event.prompt_prefix_hash)
        elif isinstance(event, ToolInvocation):
            state.tool_invocation_count += 1
        elif isinstance(event, TimeElapsed):
            state.elapsed_seconds += event.seconds
        else:
            raise TypeError(f"Unsupported tick event: {type(event).__name__}")

    def _check_prefix(self, state: RunTickState, prefix_hash: str | None) -> None:
        if prefix_hash is None:
            return
        if state.cached_prefix_hash is None:
            state.cached_prefix_hash = prefix_hash
            return
        if not self.budget.require_stable_cached_prefix or prefix_hash == state.cached_prefix_hash:
            return
        state.stability_violations += 1
        state.stability_penalty = self.budget.stability_policy.penalty(state.stability_violations)
        logger.info(
            "budget_prefix_unstable run_id=%s violations=%d penalty=%.2f",
            self.run_id,
            state.stability_violations,
            state.stability_penalty,
        )

    def _first_breach(self, state: RunTickState) -> BudgetBreach | None:
        budget = self.budget
        effective_calls = state.effective_model_calls
        if effective_calls > budget.max_model_calls:
            observed = state.model_call_count if state.stability_penalty == 0 else effective_calls
            detail = None
            if state.stability_penalty:
                detail = f"{state.stability_violations} prefix stability violations"
            return BudgetBreach(Ceiling.MODEL_CALLS, observed, budget.max_model_calls, detail)
        if state.tool_invocation_count > budget.max_tool_invocations:
            return BudgetBreach(
                Ceiling.TOOL_INVOCATIONS, state.tool_invocation_count, budget.max_tool_invocations
            )
        if state.elapsed_seconds > budget.max_duration_seconds:
            return BudgetBreach(Ceiling.DURATION, state.elapsed_seconds, budget.max_duration_seconds)
        if state.spend_usd_accrued > budget.max_spend_usd:
            return BudgetBreach(Ceiling.SPEND, state.spend_usd_accrued, budget.max_spend_usd)
        return None

    def _take_listeners(self) -> list[TerminalListener]:
        listeners, self._listeners = self._listeners, []
        return listeners

    def _notify(self, listeners: list[TerminalListener]) -> None:
        for callback in listeners:
            try:
                callback(self)
            except Exception:
                logger.exception("budget_listener_failed run_id=%s", self.run_id)
