"""Run launcher: start a run body under a budget guard and honor aborts."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from govrun.budget.guard import RunBudgetGuard
from govrun.budget.models import (
    BudgetBreach,
    ModelCall,
    RunBudget,
    RunStatus,
    RunTickState,
    TickEvent,
    TickOutcome,
    TimeElapsed,
    ToolInvocation,
)
from govrun.budget.registry import GuardRegistry
from govrun.config.models import BudgetConfig
from govrun.errors import BudgetExceededError, RunAlreadyActiveError
from govrun.metrics import GovrunMetrics

logger = logging.getLogger(__name__)

RunBody = Callable[["RunContext"], Awaitable[Any]]


class RunResultStatus(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class RunResult:
    """Terminal outcome of one launched run."""

    run_id: str
    status: RunResultStatus
    entrypoint: str
    output: Any = None
    outputs: list[Any] = field(default_factory=list)
    breach: BudgetBreach | None = None
    error: str | None = None
    state: RunTickState | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status.value,
            "entrypoint": self.entrypoint,
            "outputs": list(self.outputs),
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.breach is not None:
            data["breach"] = {
                "ceiling": self.breach.ceiling.value,
                "observed": str(self.breach.observed),
                "limit": str(self.breach.limit),
                "detail": self.breach.detail,
            }
        if self.state is not None:
            data["usage"] = {
                "model_calls": self.state.model_call_count,
                "tool_invocations": self.state.tool_invocation_count,
                "elapsed_seconds": round(self.state.elapsed_seconds, 3),
                "spend_usd": str(self.state.spend_usd_accrued),
            }
        return data


class RunContext:
    """What a run body sees: its payload and the budget-metered actions.

    Every metered call raises :class:`BudgetExceededError` once the guard has
    aborted the run.
    """

    def __init__(self, run_id: str, entrypoint: str, payload: dict[str, Any], guard: RunBudgetGuard) -> None:
        self.run_id = run_id
        self.entrypoint = entrypoint
        self.payload = payload
        self._guard = guard
        self._outputs: list[Any] = []

    @property
    def model(self) -> str | None:
        return self.payload.get("model")

    @property
    def outputs(self) -> list[Any]:
        return list(self._outputs)

    @property
    def state(self) -> RunTickState:
        return self._guard.state

    def model_call(self, cost: Decimal | float | str = 0, prompt_prefix_hash: str | None = None) -> TickOutcome:
        """Account for one model invocation."""
        return self._observe(ModelCall(cost=Decimal(str(cost)), prompt_prefix_hash=prompt_prefix_hash))

    def tool_invocation(self, name: str) -> TickOutcome:
        """Account for one tool call."""
        return self._observe(ToolInvocation(name=name))

    def commit(self, output: Any) -> None:
        """Record an output that survives a later abort."""
        self._raise_if_aborted()
        self._outputs.append(output)

    def _observe(self, event: TickEvent) -> TickOutcome:
        outcome = self._guard.observe_tick(event)
        if not outcome.is_continue:
            self._raise_if_aborted()
        return outcome

    def _raise_if_aborted(self) -> None:
        breach = self._guard.breach
        if breach is not None and self._guard.status is RunStatus.ABORTED:
            raise BudgetExceededError(self.run_id, breach)


async def _run_body(body: RunBody, ctx: RunContext) -> Any:
    return await body(ctx)


class _CancelOnce:
    """Cancel the run body the first time its guard aborts."""

    def __init__(self, task: asyncio.Task[Any]) -> None:
        self._task = task
        self.fired = False

    def __call__(self, guard: RunBudgetGuard) -> None:
        if self.fired or guard.status is not RunStatus.ABORTED or self._task.done():
            return
        self.fired = True
        self._task.cancel()


class RunLauncher:
    """Launch run bodies under per-run budget guards."""

    def __init__(
        self,
        *,
        registry: GuardRegistry | None = None,
        default_budget: RunBudget | None = None,
        entrypoints: Mapping[str, RunBody] | None = None,
        default_entrypoint: RunBody | None = None,
        metrics: GovrunMetrics | None = None,
    ) -> None:
        self.metrics = metrics or GovrunMetrics()
        self.registry = registry or GuardRegistry(self.metrics)
        self.default_budget = default_budget or RunBudget.from_config(BudgetConfig())
        self._entrypoints: dict[str, RunBody] = dict(entrypoints or {})
        self._default_entrypoint = default_entrypoint

    def register_entrypoint(self, name: str, body: RunBody) -> None:
        self._entrypoints[name] = body

    def resolve(self, entrypoint: str | RunBody) -> RunBody:
        """Return the body for *entrypoint*; unknown names use the default body."""
        if callable(entrypoint):
            return entrypoint
        body = self._entrypoints.get(entrypoint)
        if body is not None:
            return body
        if self._default_entrypoint is not None:
            return self._default_entrypoint
        raise LookupError(f"No run body registered for entrypoint '{entrypoint}'")

    async def launch(
        self,
        run_id: str,
        entrypoint: str | RunBody,
        payload: Mapping[str, Any] | None = None,
        budget: RunBudget | None = None,
        paused: bool = False,
    ) -> RunResult:
        """Run one body to a terminal :class:`RunResult`."""
        name = entrypoint if isinstance(entrypoint, str) else getattr(entrypoint, "__name__", "anonymous")
        if paused:
            logger.info("run_skipped run_id=%s entrypoint=%s reason=paused", run_id, name)
            return self._finish(RunResult(run_id, RunResultStatus.SKIPPED, name))

        try:
            body = self.resolve(entrypoint)
            guard = self.registry.attach_guard(run_id, budget or self.default_budget)
        except (LookupError, RunAlreadyActiveError, ValueError) as exc:
            logger.error("run_not_started run_id=%s entrypoint=%s error=%s", run_id, name, exc)
            return self._finish(RunResult(run_id, RunResultStatus.FAILED, name, error=str(exc)))

        ctx = RunContext(run_id, name, dict(payload or {}), guard)
        loop = asyncio.get_running_loop()
        started = loop.time()
        body_task: asyncio.Task[Any] = asyncio.create_task(_run_body(body, ctx), name=f"govrun-run:{run_id}")
        cancel_once = _CancelOnce(body_task)
        guard.add_terminal_listener(lambda g: loop.call_soon_threadsafe(cancel_once, g))
        ticker = asyncio.create_task(
            self._tick(guard, guard.budget.tick_interval_seconds),
            name=f"govrun-ticker:{run_id}",
        )
        logger.info("run_started run_id=%s entrypoint=%s", run_id, name)

        try:
            await asyncio.wait({body_task})
        except asyncio.CancelledError:
            guard.abort("launcher cancelled")
            body_task.cancel()
            ticker.cancel()
            await asyncio.gather(body_task, ticker, return_exceptions=True)
            raise

        body_error: BaseException | None = None
        output: Any = None
        if body_task.cancelled():
            body_error = asyncio.CancelledError()
        else:
            body_error = body_task.exception()
            if body_error is None:
                output = body_task.result()
        guard.complete()
        ticker.cancel()
        await asyncio.gather(ticker, return_exceptions=True)

        result = RunResult(
            run_id,
            RunResultStatus.COMPLETED,
            name,
            output=output,
            outputs=ctx.outputs,
            state=guard.state,
            duration_seconds=loop.time() - started,
        )
        if guard.status is RunStatus.ABORTED:
            result.status = RunResultStatus.ABORTED
            result.breach = guard.breach
            result.output = None
            result.error = guard.breach.describe() if guard.breach is not None else None
        elif body_error is not None:
            result.status = RunResultStatus.FAILED
            result.error = f"{type(body_error).__name__}: {body_error}"
            logger.error(
                "run_failed run_id=%s entrypoint=%s error=%s",
                run_id,
                name,
                result.error,
                exc_info=body_error,
            )
        return self._finish(result)

    async def _tick(self, guard: RunBudgetGuard, interval: float) -> None:
        loop = asyncio.get_running_loop()
        last = loop.time()
        while True:
            await asyncio.sleep(interval)
            now = loop.time()
            outcome = guard.observe_tick(TimeElapsed(seconds=max(0.0, now - last)))
            last = now
            if not outcome.is_continue:
                return

    def _finish(self, result: RunResult) -> RunResult:
        self.metrics.record_run(result.status.value)
        logger.info(
            "run_finished run_id=%s status=%s outputs=%d",
            result.run_id,
            result.status.value,
            len(result.outputs),
        )
        return result


class ScheduledRunInput(BaseModel):
    """Cron trigger input written by the Hatchet schedule store."""

    schedule_id: str
    entrypoint: str
    time_zone: str = "UTC"
    config_hash: str | None = None
    paused: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)


def register_scheduled_run(client: Any, launcher: RunLauncher, *, name: str = "governance_scheduled_run") -> Callable:
    """Register the Hatchet task every governance cron trigger runs."""

    @client.task(name=name, input_validator=ScheduledRunInput)
    async def governance_scheduled_run(input: ScheduledRunInput, ctx: Any) -> dict[str, Any]:
        run_id = str(getattr(ctx, "workflow_run_id", "") or f"{input.schedule_id}:{uuid.uuid4().hex}")
        result = await launcher.launch(run_id, input.entrypoint, input.payload, paused=input.paused)
        return result.to_dict()

    return governance_scheduled_run
