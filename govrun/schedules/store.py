"""Schedule store protocol and the in-memory implementation."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from govrun.errors import ScheduleConflictError, ScheduleNotFoundError, TransientStoreError
from govrun.schedules.models import RemoteScheduleState, ScheduleDescriptor

logger = logging.getLogger(__name__)


@runtime_checkable
class ScheduleStore(Protocol):
    """Remote durable scheduler as seen by the reconciler.

    Implementations raise :class:`TransientStoreError` for retryable
    failures, :class:`ScheduleConflictError` from ``create`` when the id is
    taken and :class:`ScheduleNotFoundError` from ``update``/``pause``/
    ``resume`` when it is missing. ``delete`` of a missing id is a no-op.
    """

    async def describe(self, schedule_id: str) -> RemoteScheduleState: ...

    async def create(self, descriptor: ScheduleDescriptor) -> None: ...

    async def update(self, descriptor: ScheduleDescriptor) -> None: ...

    async def pause(self, schedule_id: str) -> None: ...

    async def resume(self, schedule_id: str) -> None: ...

    async def delete(self, schedule_id: str) -> None: ...

    async def list_schedule_ids(self, prefix: str = "") -> list[str]: ...


@dataclass
class StoredSchedule:
    """One schedule record held by :class:`InMemoryScheduleStore`."""

    schedule_id: str
    cron_expression: str
    time_zone: str
    entrypoint: str
    input_payload: dict[str, Any]
    config_hash: str
    paused: bool = False

    def to_state(self) -> RemoteScheduleState:
        return RemoteScheduleState(
            schedule_id=self.schedule_id,
            exists=True,
            config_hash=self.config_hash,
            paused=self.paused,
            cron_expression=self.cron_expression,
            time_zone=self.time_zone,
            entrypoint=self.entrypoint,
            input_payload=copy.deepcopy(self.input_payload),
        )


@dataclass
class _FaultPlan:
    transient: Counter[str] = field(default_factory=Counter)
    delays: dict[str, float] = field(default_factory=dict)


class InMemoryScheduleStore:
    """Dict-backed store for tests and local dry runs.

    ``calls`` counts every operation by name. ``fail_next`` and
    ``delay`` inject transient failures and slow responses per operation.
    """

    def __init__(self) -> None:
        self._schedules: dict[str, StoredSchedule] = {}
        self._lock = asyncio.Lock()
        self._faults = _FaultPlan()
        self.calls: Counter[str] = Counter()

    # -- fault injection -------------------------------------------------

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next *times* calls of *operation* raise TransientStoreError."""
        self._faults.transient[operation] += times

    def delay(self, operation: str, seconds: float) -> None:
        """Sleep *seconds* before answering every call of *operation*."""
        self._faults.delays[operation] = seconds

    def clear_faults(self) -> None:
        self._faults = _FaultPlan()

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        delay = self._faults.delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        if self._faults.transient[operation] > 0:
            self._faults.transient[operation] -= 1
            raise TransientStoreError(operation, "injected failure")

    # -- direct seeding, bypasses counters -------------------------------

    def seed(
        self,
        schedule_id: str,
        *,
        cron_expression: str = "0 * * * *",
        time_zone: str = "UTC",
        entrypoint: str = "",
        input_payload: dict[str, Any] | None = None,
        config_hash: str = "",
        paused: bool = False,
    ) -> None:
        """Place a schedule directly, as if written by another process."""
        self._schedules[schedule_id] = StoredSchedule(
            schedule_id=schedule_id,
            cron_expression=cron_expression,
            time_zone=time_zone,
            entrypoint=entrypoint,
            input_payload=dict(input_payload or {}),
            config_hash=config_hash,
            paused=paused,
        )

    def seed_descriptor(self, descriptor: ScheduleDescriptor, *, paused: bool = False) -> None:
        self._schedules[descriptor.schedule_id] = _record_from(descriptor, paused=paused)

    def remove(self, schedule_id: str) -> None:
        """Drop a schedule without going through ``delete``."""
        self._schedules.pop(schedule_id, None)

    def get(self, schedule_id: str) -> StoredSchedule | None:
        return self._schedules.get(schedule_id)

    def __contains__(self, schedule_id: object) -> bool:
        return schedule_id in self._schedules

    def __len__(self) -> int:
        return len(self._schedules)

    @property
    def write_count(self) -> int:
        return sum(self.calls[op] for op in ("create", "update", "pause", "resume", "delete"))

    # -- ScheduleStore ---------------------------------------------------

    async def describe(self, schedule_id: str) -> RemoteScheduleState:
        await self._enter("describe")
        async with self._lock:
            record = self._schedules.get(schedule_id)
            if record is None:
                return RemoteScheduleState.absent(schedule_id)
            return record.to_state()

    async def create(self, descriptor: ScheduleDescriptor) -> None:
        await self._enter("create")
        async with self._lock:
            if descriptor.schedule_id in self._schedules:
                raise ScheduleConflictError(descriptor.schedule_id)
            self._schedules[descriptor.schedule_id] = _record_from(descriptor)

    async def update(self, descriptor: ScheduleDescriptor) -> None:
        await self._enter("update")
        async with self._lock:
            existing = self._schedules.get(descriptor.schedule_id)
            if existing is None:
                raise ScheduleNotFoundError(descriptor.schedule_id)
            self._schedules[descriptor.schedule_id] = _record_from(descriptor, paused=existing.paused)

    async def pause(self, schedule_id: str) -> None:
        await self._enter("pause")
        async with self._lock:
            record = self._schedules.get(schedule_id)
            if record is None:
                raise ScheduleNotFoundError(schedule_id)
            record.paused = True

    async def resume(self, schedule_id: str) -> None:
        await self._enter("resume")
        async with self._lock:
            record = self._schedules.get(schedule_id)
            if record is None:
                raise ScheduleNotFoundError(schedule_id)
            record.paused = False

    async def delete(self, schedule_id: str) -> None:
        await self._enter("delete")
        async with self._lock:
            self._schedules.pop(schedule_id, None)

    async def list_schedule_ids(self, prefix: str = "") -> list[str]:
        await self._enter("list")
        async with self._lock:
            return sorted(sid for sid in self._schedules if sid.startswith(prefix))


def _record_from(descriptor: ScheduleDescriptor, *, paused: bool = False) -> StoredSchedule:
    return StoredSchedule(
        schedule_id=descriptor.schedule_id,
        cron_expression=descriptor.cron_expression,
        time_zone=descriptor.time_zone,
        entrypoint=descriptor.entrypoint,
        input_payload=descriptor.payload_copy(),
        config_hash=descriptor.config_hash,
        paused=paused,
    )
