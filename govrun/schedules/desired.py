"""Desired-state sources and declaration materialization.

A source hands the reconciler a fresh snapshot of declarations on every
pass. Materialization turns one declaration into an immutable
:class:`ScheduleDescriptor`; anything that cannot be materialized raises
:class:`InvalidDesiredStateError` and never reaches a store.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from govrun.config.loader import YAMLConfigLoader
from govrun.config.models import GovernanceConfig, ScheduleDeclaration
from govrun.errors import ConfigLoadError, InvalidDesiredStateError
from govrun.schedules.models import MODEL_PAYLOAD_KEY, ScheduleDescriptor

ENTRYPOINT_PAYLOAD_KEY = "message"


@runtime_checkable
class DesiredStateSource(Protocol):
    """Re-readable source of schedule declarations."""

    async def load(self) -> list[ScheduleDeclaration]:
        """Return the current declarations, defaults already applied."""
        ...


def declaration_id(declaration: ScheduleDeclaration, schedule_prefix: str) -> str:
    """Return the schedule id a declaration materializes to.

    An explicit ``schedule_id`` wins; otherwise the id is the prefix plus the
    lower-cased charter name (``governance:community``).
    """
    if declaration.schedule_id and declaration.schedule_id.strip():
        return declaration.schedule_id.strip()
    if declaration.charter and declaration.charter.strip():
        return f"{schedule_prefix}{declaration.charter.strip().lower()}"
    raise InvalidDesiredStateError("<unnamed>", "declaration needs schedule_id or charter")


def materialize(declaration: ScheduleDeclaration, schedule_prefix: str) -> ScheduleDescriptor:
    """Build the immutable descriptor for one declaration."""
    schedule_id = declaration_id(declaration, schedule_prefix)
    if not declaration.model:
        raise InvalidDesiredStateError(schedule_id, "model is required")
    if not declaration.timezone:
        raise InvalidDesiredStateError(schedule_id, "timezone is required")
    extra = dict(declaration.input)
    for reserved in (ENTRYPOINT_PAYLOAD_KEY, MODEL_PAYLOAD_KEY):
        if reserved in extra:
            raise InvalidDesiredStateError(schedule_id, f"input must not override '{reserved}'")
    payload = {
        ENTRYPOINT_PAYLOAD_KEY: declaration.entrypoint,
        MODEL_PAYLOAD_KEY: declaration.model,
        **extra,
    }
    return ScheduleDescriptor(
        schedule_id=schedule_id,
        cron_expression=declaration.cron,
        time_zone=declaration.timezone,
        entrypoint=declaration.entrypoint,
        model_id=declaration.model,
        input_payload=payload,
    )


def apply_defaults(
    declarations: Iterable[ScheduleDeclaration],
    *,
    default_model: str,
    default_timezone: str,
) -> list[ScheduleDeclaration]:
    """Fill in model and timezone where a declaration leaves them out."""
    out: list[ScheduleDeclaration] = []
    for declaration in declarations:
        updates: dict[str, str] = {}
        if not declaration.model:
            updates["model"] = default_model
        if not declaration.timezone:
            updates["timezone"] = default_timezone
        out.append(declaration.model_copy(update=updates) if updates else declaration)
    return out


class StaticDesiredStateSource:
    """In-process declaration list."""

    def __init__(
        self,
        declarations: Iterable[ScheduleDeclaration | dict] = (),
        *,
        default_model: str = "deepseek-v3.2",
        default_timezone: str = "UTC",
    ) -> None:
        self._declarations = [
            item if isinstance(item, ScheduleDeclaration) else ScheduleDeclaration.model_validate(item)
            for item in declarations
        ]
        self.default_model = default_model
        self.default_timezone = default_timezone

    def replace(self, declarations: Iterable[ScheduleDeclaration | dict]) -> None:
        """Swap the declared set; the next ``load`` returns the new snapshot."""
        self._declarations = [
            item if isinstance(item, ScheduleDeclaration) else ScheduleDeclaration.model_validate(item)
            for item in declarations
        ]

    async def load(self) -> list[ScheduleDeclaration]:
        return apply_defaults(
            list(self._declarations),
            default_model=self.default_model,
            default_timezone=self.default_timezone,
        )


class YAMLDesiredStateSource:
    """Read the ``governance`` section of govrun.yaml on every load."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else YAMLConfigLoader.resolve_path()

    async def load(self) -> list[ScheduleDeclaration]:
        data = YAMLConfigLoader.load_dict(self.path)
        raw = data.get("governance") or {}
        try:
            governance = GovernanceConfig.model_validate(raw)
        except ValidationError as exc:
            raise ConfigLoadError(f"Invalid governance section in {self.path}: {exc}") from exc
        return apply_defaults(
            governance.schedules,
            default_model=governance.default_model,
            default_timezone=governance.default_timezone,
        )
