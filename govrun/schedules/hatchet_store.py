"""Schedule store backed by Hatchet cron triggers.

One cron trigger per schedule, named after the schedule id. Hatchet cron
triggers are immutable and cannot be paused, so ``update``, ``pause`` and
``resume`` delete the trigger and create it again. The paused flag travels
in the run envelope; the scheduled-run task skips paused runs.
Only UTC schedules are accepted because triggers carry no time zone.
"""

from __future__ import annotations

import logging
from typing import Any

from govrun.errors import (
    InvalidDesiredStateError,
    ScheduleConflictError,
    ScheduleNotFoundError,
    TransientStoreError,
)
from govrun.integrations.hatchet import HatchetClient
from govrun.schedules.models import RemoteScheduleState, ScheduleDescriptor

logger = logging.getLogger(__name__)

META_MANAGED = "govrun_managed"
META_CONFIG_HASH = "govrun_config_hash"
META_PAUSED = "govrun_paused"
META_TIMEZONE = "govrun_timezone"
META_ENTRYPOINT = "govrun_entrypoint"

# cron triggers fire on the engine clock, which runs in UTC
SUPPORTED_TIME_ZONES = frozenset({"UTC", "Etc/UTC"})


def require_utc(descriptor: ScheduleDescriptor) -> None:
    if descriptor.time_zone not in SUPPORTED_TIME_ZONES:
        raise InvalidDesiredStateError(
            descriptor.schedule_id,
            f"Hatchet cron triggers run in UTC; time_zone '{descriptor.time_zone}' is not supported",
        )


def build_envelope(descriptor: ScheduleDescriptor, *, paused: bool = False) -> dict[str, Any]:
    """Return the cron trigger input handed to every scheduled run."""
    return {
        "schedule_id": descriptor.schedule_id,
        "entrypoint": descriptor.entrypoint,
        "time_zone": descriptor.time_zone,
        "config_hash": descriptor.config_hash,
        "paused": paused,
        "payload": descriptor.payload_copy(),
    }


def build_metadata(
    *, config_hash: str, paused: bool, time_zone: str, entrypoint: str
) -> dict[str, str]:
    return {
        META_MANAGED: "true",
        META_CONFIG_HASH: config_hash,
        META_PAUSED: "true" if paused else "false",
        META_TIMEZONE: time_zone,
        META_ENTRYPOINT: entrypoint,
    }


class HatchetScheduleStore:
    """:class:`~govrun.schedules.store.ScheduleStore` over a :class:`HatchetClient`."""

    def __init__(self, client: HatchetClient, *, workflow_name: str = "governance_scheduled_run") -> None:
        self._client = client
        self.workflow_name = workflow_name

    async def _guard(self, operation: str, coro: Any) -> Any:
        try:
            return await coro
        except ConnectionError as exc:
            raise TransientStoreError(operation, str(exc)) from exc

    async def _find(self, operation: str, schedule_id: str) -> dict[str, Any] | None:
        crons = await self._guard(operation, self._client.list_crons(self.workflow_name))
        matches = [c for c in crons if c["name"] == schedule_id]
        if len(matches) > 1:
            logger.warning("hatchet_duplicate_cron schedule_id=%s count=%d", schedule_id, len(matches))
        return matches[0] if matches else None

    async def _create(
        self,
        operation: str,
        schedule_id: str,
        expression: str,
        envelope: dict[str, Any],
        metadata: dict[str, str],
    ) -> None:
        await self._guard(
            operation,
            self._client.create_cron(
                self.workflow_name,
                schedule_id,
                expression,
                envelope,
                additional_metadata=metadata,
            ),
        )

    async def describe(self, schedule_id: str) -> RemoteScheduleState:
        cron = await self._find("describe", schedule_id)
        if cron is None:
            return RemoteScheduleState.absent(schedule_id)
        meta = cron["additional_metadata"]
        envelope = cron["input"]
        return RemoteScheduleState(
            schedule_id=schedule_id,
            exists=True,
            config_hash=meta.get(META_CONFIG_HASH) or envelope.get("config_hash"),
            paused=str(meta.get(META_PAUSED, "false")).lower() == "true",
            cron_expression=cron["expression"] or None,
            time_zone=meta.get(META_TIMEZONE) or envelope.get("time_zone"),
            entrypoint=meta.get(META_ENTRYPOINT) or envelope.get("entrypoint"),
            input_payload=envelope.get("payload"),
        )

    async def create(self, descriptor: ScheduleDescriptor) -> None:
        require_utc(descriptor)
        if await self._find("create", descriptor.schedule_id) is not None:
            raise ScheduleConflictError(descriptor.schedule_id)
        await self._create(
            "create",
            descriptor.schedule_id,
            descriptor.cron_expression,
            build_envelope(descriptor),
            build_metadata(
                config_hash=descriptor.config_hash,
                paused=False,
                time_zone=descriptor.time_zone,
                entrypoint=descriptor.entrypoint,
            ),
        )
        logger.info("hatchet_cron_created schedule_id=%s", descriptor.schedule_id)

    async def update(self, descriptor: ScheduleDescriptor) -> None:
        require_utc(descriptor)
        existing = await self._find("update", descriptor.schedule_id)
        if existing is None:
            raise ScheduleNotFoundError(descriptor.schedule_id)
        paused = str(existing["additional_metadata"].get(META_PAUSED, "false")).lower() == "true"
        await self._guard("update", self._client.delete_cron(existing["id"]))
        await self._create(
            "update",
            descriptor.schedule_id,
            descriptor.cron_expression,
            build_envelope(descriptor, paused=paused),
            build_metadata(
                config_hash=descriptor.config_hash,
                paused=paused,
                time_zone=descriptor.time_zone,
                entrypoint=descriptor.entrypoint,
            ),
        )
        logger.info("hatchet_cron_replaced schedule_id=%s", descriptor.schedule_id)

    async def _set_paused(self, operation: str, schedule_id: str, paused: bool) -> None:
        existing = await self._find(operation, schedule_id)
        if existing is None:
            raise ScheduleNotFoundError(schedule_id)
        meta = dict(existing["additional_metadata"])
        if str(meta.get(META_PAUSED, "false")).lower() == ("true" if paused else "false"):
            return
        meta[META_PAUSED] = "true" if paused else "false"
        envelope = dict(existing["input"])
        envelope["paused"] = paused
        await self._guard(operation, self._client.delete_cron(existing["id"]))
        await self._create(operation, schedule_id, existing["expression"], envelope, meta)
        logger.info("hatchet_cron_%s schedule_id=%s", operation, schedule_id)

    async def pause(self, schedule_id: str) -> None:
        await self._set_paused("pause", schedule_id, True)

    async def resume(self, schedule_id: str) -> None:
        await self._set_paused("resume", schedule_id, False)

    async def delete(self, schedule_id: str) -> None:
        existing = await self._find("delete", schedule_id)
        if existing is None:
            return
        await self._guard("delete", self._client.delete_cron(existing["id"]))
        logger.info("hatchet_cron_deleted schedule_id=%s", schedule_id)

    async def list_schedule_ids(self, prefix: str = "") -> list[str]:
        crons = await self._guard("list", self._client.list_crons(self.workflow_name))
        return sorted({c["name"] for c in crons if c["name"].startswith(prefix)})
