"""Run budget data models: ceilings, tick events, outcomes and tick state."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Literal, Union

from govrun.config.models import BudgetConfig


def _to_decimal(value: object, name: str) -> Decimal:
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
    if not result.is_finite() or result < 0:
        raise ValueError(f"{name} must be a finite non-negative number")
    return result


class Ceiling(str, Enum):
    """Budget ceilings in evaluation order, plus explicit cancellation."""

    MODEL_CALLS = "max_model_calls"
    TOOL_INVOCATIONS = "max_tool_invocations"
    DURATION = "max_duration_seconds"
    SPEND = "max_spend_usd"
    CANCELLED = "cancelled"


# 2**1023 is the largest power of two a float holds
_MAX_EXPONENT = 1023


@dataclass(frozen=True)
class StabilityPolicy:
    """How cached-prefix stability violations count against the call ceiling.

    ``linear``: each violation adds ``weight``.
    ``exponential``: the n-th violation adds ``weight * 2**(n-1)``.
    """

    weight: float = 1.0
    escalation: Literal["linear", "exponential"] = "linear"

    def __post_init__(self) -> None:
        if not math.isfinite(self.weight) or self.weight < 0:
            raise ValueError("stability weight must be a finite non-negative number")
        if self.escalation not in ("linear", "exponential"):
            raise ValueError("stability escalation must be 'linear' or 'exponential'")

    def penalty(self, violations: int) -> float:
        """Return the total penalty after *violations* violations."""
        n = max(0, int(violations))
        if self.weight == 0 or n == 0:
            return 0.0
        if self.escalation == "exponential":
            return self.weight * (math.ldexp(1.0, min(n, _MAX_EXPONENT)) - 1.0)
        return self.weight * n


@dataclass(frozen=True)
class RunBudget:
    """Immutable per-run resource ceilings."""

    max_model_calls: int
    max_tool_invocations: int
    max_duration_seconds: float
    max_spend_usd: Decimal
    require_stable_cached_prefix: bool = True
    stability_policy: StabilityPolicy = field(default_factory=StabilityPolicy)
    tick_interval_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_model_calls < 0 or self.max_tool_invocations < 0:
            raise ValueError("call ceilings must be non-negative")
        if self.max_duration_seconds < 0:
            raise ValueError("max_duration_seconds must be non-negative")
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be positive")
        object.__setattr__(self, "max_spend_usd", _to_decimal(self.max_spend_usd, "max_spend_usd"))

    @classmethod
    def from_config(cls, config: BudgetConfig) -> RunBudget:
        return cls(
            max_model_calls=config.max_model_calls,
            max_tool_invocations=config.max_tool_invocations,
            max_duration_seconds=config.max_duration_seconds,
            max_spend_usd=Decimal(str(config.max_spend_usd)),
            require_stable_cached_prefix=config.require_stable_cached_prefix,
            stability_policy=StabilityPolicy(
                weight=config.stability.weight,
                escalation=config.stability.escalation,
            ),
            tick_interval_seconds=config.tick_interval_seconds,
        )


@dataclass(frozen=True)
class ModelCall:
    """One model invocation and what it cost."""

    cost: Decimal = Decimal("0")
    prompt_prefix_hash: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "cost", _to_decimal(self.cost, "cost"))


@dataclass(frozen=True)
class ToolInvocation:
    name: str


@dataclass(frozen=True)
class TimeElapsed:
    """Wall time passed since the previous elapsed-time tick."""

    seconds: float

    def __post_init__(self) -> None:
        if not math.isfinite(self.seconds) or self.seconds < 0:
            raise ValueError("elapsed seconds must be a finite non-negative number")


TickEvent = Union[ModelCall, ToolInvocation, TimeElapsed]


@dataclass(frozen=True)
class BudgetBreach:
    """Which ceiling tripped, and by how much."""

    ceiling: Ceiling
    observed: Decimal | float | int
    limit: Decimal | float | int
    detail: str | None = None

    def describe(self) -> str:
        if self.ceiling is Ceiling.CANCELLED:
            return f"cancelled: {self.detail or 'no reason given'}"
        text = f"{self.ceiling.value} exceeded: observed {self.observed} > limit {self.limit}"
        if self.detail:
            text = f"{text} ({self.detail})"
        return text


class TickOutcomeKind(str, Enum):
    CONTINUE = "continue"
    ABORT = "abort"
    ALREADY_TERMINAL = "already_terminal"


@dataclass(frozen=True)
class TickOutcome:
    """Answer to one observed tick."""

    kind: TickOutcomeKind
    breach: BudgetBreach | None = None

    @property
    def is_abort(self) -> bool:
        return self.kind is TickOutcomeKind.ABORT

    @property
    def is_continue(self) -> bool:
        return self.kind is TickOutcomeKind.CONTINUE


CONTINUE = TickOutcome(TickOutcomeKind.CONTINUE)
ALREADY_TERMINAL = TickOutcome(TickOutcomeKind.ALREADY_TERMINAL)


class RunStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RunTickState:
    """Mutable accounting for one run, owned by exactly one guard."""

    model_call_count: int = 0
    tool_invocation_count: int = 0
    elapsed_seconds: float = 0.0
    spend_usd_accrued: Decimal = Decimal("0")
    cached_prefix_hash: str | None = None
    stability_violations: int = 0
    stability_penalty: float = 0.0
    status: RunStatus = RunStatus.ACTIVE
    breach: BudgetBreach | None = None

    @property
    def effective_model_calls(self) -> float:
        """Model calls plus the stability penalty."""
        return self.model_call_count + self.stability_penalty

    @property
    def is_terminal(self) -> bool:
        return self.status is not RunStatus.ACTIVE

    def snapshot(self) -> RunTickState:
        return replace(self)
