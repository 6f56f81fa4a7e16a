"""Schedule data models: desired descriptors, remote state, reconcile results."""

from __future__ import annotations

import copy
import hashlib
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter  # type: ignore[import-untyped]

from govrun.errors import InvalidDesiredStateError

MODEL_PAYLOAD_KEY = "model"


def canonical_json(value: Any) -> str:
    """Serialize *value* with sorted keys and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_config_hash(
    *,
    cron_expression: str,
    time_zone: str,
    entrypoint: str,
    model_id: str,
    input_payload: dict[str, Any],
) -> str:
    """Return the sha256 digest of the semantic schedule fields."""
    document = {
        "cron": cron_expression,
        "entrypoint": entrypoint,
        "input": input_payload,
        "model": model_id,
        "timezone": time_zone,
    }
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


def _require_text(schedule_id: str, name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidDesiredStateError(schedule_id or "<unnamed>", f"{name} must be a non-empty string")
    return value.strip()


@dataclass(frozen=True)
class ScheduleDescriptor:
    """Fully materialized desired configuration of one schedule.

    Instances are immutable values. A changed configuration is a new
    descriptor with a different ``config_hash``.
    """

    schedule_id: str
    cron_expression: str
    time_zone: str
    entrypoint: str
    model_id: str
    input_payload: dict[str, Any]
    config_hash: str = field(init=False, compare=False)

    def __post_init__(self) -> None:
        schedule_id = _require_text(self.schedule_id, "schedule_id", self.schedule_id)
        cron_expression = _require_text(schedule_id, "cron_expression", self.cron_expression)
        time_zone = _require_text(schedule_id, "time_zone", self.time_zone)
        entrypoint = _require_text(schedule_id, "entrypoint", self.entrypoint)
        model_id = _require_text(schedule_id, "model_id", self.model_id)

        if not croniter.is_valid(cron_expression):
            raise InvalidDesiredStateError(schedule_id, f"invalid cron expression '{cron_expression}'")
        try:
            ZoneInfo(time_zone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidDesiredStateError(schedule_id, f"unknown timezone '{time_zone}'") from exc

        if not isinstance(self.input_payload, dict):
            raise InvalidDesiredStateError(schedule_id, "input_payload must be a mapping")
        payload_model = self.input_payload.get(MODEL_PAYLOAD_KEY)
        if payload_model is None:
            raise InvalidDesiredStateError(schedule_id, f"input_payload is missing '{MODEL_PAYLOAD_KEY}'")
        if payload_model != model_id:
            raise InvalidDesiredStateError(
                schedule_id,
                f"input_payload model '{payload_model}' does not match model_id '{model_id}'",
            )

        payload = copy.deepcopy(self.input_payload)
        object.__setattr__(self, "schedule_id", schedule_id)
        object.__setattr__(self, "cron_expression", cron_expression)
        object.__setattr__(self, "time_zone", time_zone)
        object.__setattr__(self, "entrypoint", entrypoint)
        object.__setattr__(self, "model_id", model_id)
        object.__setattr__(self, "input_payload", payload)
        object.__setattr__(
            self,
            "config_hash",
            compute_config_hash(
                cron_expression=cron_expression,
                time_zone=time_zone,
                entrypoint=entrypoint,
                model_id=model_id,
                input_payload=payload,
            ),
        )

    def __hash__(self) -> int:
        return hash((self.schedule_id, self.config_hash))

    def payload_copy(self) -> dict[str, Any]:
        """Return a deep copy of the input payload for handing to a store."""
        return copy.deepcopy(self.input_payload)


@dataclass(frozen=True)
class RemoteScheduleState:
    """Live state of a schedule as reported by a store's describe call."""

    schedule_id: str
    exists: bool
    config_hash: str | None = None
    paused: bool = False
    cron_expression: str | None = None
    time_zone: str | None = None
    entrypoint: str | None = None
    input_payload: dict[str, Any] | None = None

    @classmethod
    def absent(cls, schedule_id: str) -> RemoteScheduleState:
        return cls(schedule_id=schedule_id, exists=False)


class ReconcileOutcome(str, Enum):
    """Per-schedule outcome of one reconciliation."""

    CREATED = "created"
    UPDATED = "updated"
    RESUMED = "resumed"
    UNCHANGED = "unchanged"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class ReconcileResult:
    """Result of reconciling one schedule id."""

    schedule_id: str
    outcome: ReconcileOutcome
    config_hash: str | None = None
    dry_run: bool = False
    error: Exception | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not ReconcileOutcome.ERROR

    @property
    def error_type(self) -> str | None:
        return type(self.error).__name__ if self.error is not None else None

    @classmethod
    def failed(cls, schedule_id: str, error: Exception, *, dry_run: bool = False) -> ReconcileResult:
        return cls(
            schedule_id=schedule_id,
            outcome=ReconcileOutcome.ERROR,
            dry_run=dry_run,
            error=error,
            detail=str(error),
        )


@dataclass
class SweepReport:
    """Per-schedule outcome table of one reconciliation sweep."""

    results: list[ReconcileResult] = field(default_factory=list)
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    def get(self, schedule_id: str) -> ReconcileResult | None:
        for result in self.results:
            if result.schedule_id == schedule_id:
                return result
        return None

    def counts(self) -> dict[str, int]:
        """Return the number of results per outcome value."""
        tally = Counter(result.outcome.value for result in self.results)
        return {outcome.value: tally.get(outcome.value, 0) for outcome in ReconcileOutcome}

    def errors(self) -> list[ReconcileResult]:
        return [result for result in self.results if not result.ok]

    def as_rows(self) -> list[dict[str, Any]]:
        """Return JSON-friendly rows, one per schedule."""
        return [
            {
                "schedule_id": result.schedule_id,
                "outcome": result.outcome.value,
                "config_hash": result.config_hash,
                "error": result.error_type,
                "detail": result.detail,
            }
            for result in self.results
        ]
