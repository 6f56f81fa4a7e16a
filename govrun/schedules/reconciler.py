"""Schedule reconciliation controller.

Converges the remote scheduler to the declared schedule set: create what is
missing, update what drifted, resume what was paused and pause (never
delete) what is no longer declared. Every pass re-reads both sides.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import TypeVar

from govrun.config.models import ReconcilerConfig
from govrun.errors import (
    GovrunError,
    InvalidDesiredStateError,
    PersistentConflictError,
    ScheduleConflictError,
    ScheduleNotFoundError,
)
from govrun.metrics import GovrunMetrics
from govrun.schedules.desired import DesiredStateSource, materialize
from govrun.schedules.models import (
    ReconcileOutcome,
    ReconcileResult,
    RemoteScheduleState,
    ScheduleDescriptor,
    SweepReport,
)
from govrun.schedules.retry import RetryPolicy
from govrun.schedules.store import ScheduleStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScheduleReconciler:
    """Reconcile desired schedule descriptors against a :class:`ScheduleStore`.

    Calls for one schedule id are serialized by a per-id lock; distinct ids
    run concurrently up to ``config.max_concurrent``. Store calls are bounded
    by ``config.store_timeout_seconds`` and retried with exponential backoff.
    """

    def __init__(
        self,
        store: ScheduleStore,
        source: DesiredStateSource | None = None,
        *,
        config: ReconcilerConfig | None = None,
        metrics: GovrunMetrics | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self.config = config or ReconcilerConfig()
        self.metrics = metrics or GovrunMetrics()
        self._retry = retry_policy or RetryPolicy.from_config(self.config)
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._inflight: set[asyncio.Future[ReconcileResult]] = set()

    # -- public API ------------------------------------------------------

    async def reconcile(self, desired: ScheduleDescriptor, *, dry_run: bool = False) -> ReconcileResult:
        """Converge one schedule and return its result; errors are captured."""
        result = await self._limited(
            desired.schedule_id,
            lambda: self._reconcile_one(desired, dry_run),
            dry_run,
        )
        self._record(result)
        return result

    async def sweep(
        self,
        *,
        dry_run: bool = False,
        desired: Iterable[ScheduleDescriptor] | None = None,
    ) -> SweepReport:
        """Reconcile every desired schedule and prune removed ones.

        ``desired`` overrides the configured source for this pass. A source
        that cannot be read fails the whole pass; everything after that is
        reported per schedule id.
        """
        report = SweepReport(dry_run=dry_run)
        started = time.monotonic()
        if not self.config.enabled:
            logger.info("reconcile_sweep_disabled")
            report.finished_at = datetime.now(timezone.utc)
            return report

        descriptors, keep_ids, rejected = await self._desired_snapshot(desired, dry_run)
        report.results.extend(rejected)

        results = await asyncio.gather(
            *(self._limited(d.schedule_id, self._bind_reconcile(d, dry_run), dry_run) for d in descriptors)
        )
        report.results.extend(results)

        if self.config.prune_removed:
            report.results.extend(await self._prune(keep_ids, dry_run))

        for result in report.results:
            self._record(result)
        report.finished_at = datetime.now(timezone.utc)
        self.metrics.record_sweep_duration(time.monotonic() - started)
        counts = report.counts()
        logger.info(
            "reconcile_sweep_finished dry_run=%s total=%d %s",
            dry_run,
            len(report.results),
            " ".join(f"{name}={count}" for name, count in counts.items()),
        )
        return report

    async def wait_idle(self) -> None:
        """Wait for in-flight per-schedule operations to finish."""
        pending = list(self._inflight)
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    # -- desired snapshot ------------------------------------------------

    async def _desired_snapshot(
        self,
        desired: Iterable[ScheduleDescriptor] | None,
        dry_run: bool,
    ) -> tuple[list[ScheduleDescriptor], set[str], list[ReconcileResult]]:
        rejected: list[ReconcileResult] = []
        candidates: list[ScheduleDescriptor] = []
        if desired is not None:
            candidates = list(desired)
        elif self._source is not None:
            for declaration in await self._source.load():
                try:
                    candidates.append(materialize(declaration, self.config.schedule_prefix))
                except InvalidDesiredStateError as exc:
                    logger.warning("desired_state_invalid schedule_id=%s error=%s", exc.schedule_id, exc)
                    rejected.append(ReconcileResult.failed(exc.schedule_id, exc, dry_run=dry_run))

        keep_ids = {d.schedule_id for d in candidates}
        keep_ids.update(r.schedule_id for r in rejected)
        occurrences = Counter(d.schedule_id for d in candidates)
        accepted: list[ScheduleDescriptor] = []
        reported_duplicates: set[str] = set()
        for descriptor in candidates:
            sid = descriptor.schedule_id
            if occurrences[sid] == 1:
                accepted.append(descriptor)
                continue
            if sid in reported_duplicates:
                continue
            reported_duplicates.add(sid)
            error = InvalidDesiredStateError(sid, f"declared {occurrences[sid]} times")
            logger.warning("desired_state_duplicate schedule_id=%s count=%d", sid, occurrences[sid])
            rejected.append(ReconcileResult.failed(sid, error, dry_run=dry_run))
        return accepted, keep_ids, rejected

    # -- per-id execution ------------------------------------------------

    def _bind_reconcile(
        self, desired: ScheduleDescriptor, dry_run: bool
    ) -> Callable[[], Awaitable[ReconcileResult]]:
        return lambda: self._reconcile_one(desired, dry_run)

    def _acquire_lock_ref(self, schedule_id: str) -> asyncio.Lock:
        lock = self._locks.get(schedule_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[schedule_id] = lock
        self._lock_users[schedule_id] += 1
        return lock

    def _release_lock_ref(self, schedule_id: str) -> None:
        self._lock_users[schedule_id] -= 1
        if self._lock_users[schedule_id] <= 0:
            # nobody holds or waits for it
            del self._lock_users[schedule_id]
            self._locks.pop(schedule_id, None)

    async def _limited(
        self,
        schedule_id: str,
        work: Callable[[], Awaitable[ReconcileResult]],
        dry_run: bool,
    ) -> ReconcileResult:
        async with self._semaphore:
            inner = asyncio.ensure_future(self._locked(schedule_id, work, dry_run))
            self._inflight.add(inner)
            inner.add_done_callback(self._inflight.discard)
            try:
                return await asyncio.shield(inner)
            except asyncio.CancelledError:
                # let the started operation finish before propagating
                await asyncio.wait({inner})
                raise

    async def _locked(
        self,
        schedule_id: str,
        work: Callable[[], Awaitable[ReconcileResult]],
        dry_run: bool,
    ) -> ReconcileResult:
        lock = self._acquire_lock_ref(schedule_id)
        try:
            async with lock:
                return await work()
        except GovrunError as exc:
            logger.warning(
                "schedule_reconcile_failed schedule_id=%s error=%s detail=%s",
                schedule_id,
                type(exc).__name__,
                exc,
            )
            return ReconcileResult.failed(schedule_id, exc, dry_run=dry_run)
        except Exception as exc:
            logger.exception("schedule_reconcile_crashed schedule_id=%s", schedule_id)
            return ReconcileResult.failed(schedule_id, exc, dry_run=dry_run)
        finally:
            self._release_lock_ref(schedule_id)

    async def _call(
        self,
        operation: str,
        schedule_id: str,
        factory: Callable[[], Awaitable[T]],
        verify: Callable[[], Awaitable[bool]] | None = None,
    ) -> T | None:
        return await self._retry.call(
            operation,
            schedule_id,
            factory,
            on_retry=lambda op, _attempt, _exc: self.metrics.record_retry(op),
            verify=verify,
        )

    async def _describe(self, schedule_id: str) -> RemoteScheduleState:
        return await self._call("describe", schedule_id, lambda: self._store.describe(schedule_id))

    def _holds(self, desired: ScheduleDescriptor) -> Callable[[], Awaitable[bool]]:
        async def check() -> bool:
            remote = await self._store.describe(desired.schedule_id)
            return remote.exists and remote.config_hash == desired.config_hash

        return check

    def _paused_is(self, schedule_id: str, paused: bool) -> Callable[[], Awaitable[bool]]:
        async def check() -> bool:
            remote = await self._store.describe(schedule_id)
            return remote.exists and remote.paused is paused

        return check

    async def _reconcile_one(self, desired: ScheduleDescriptor, dry_run: bool) -> ReconcileResult:
        sid = desired.schedule_id
        remote = await self._describe(sid)
        if remote.exists:
            return await self._converge(desired, remote, dry_run, allow_retry=True)

        if dry_run:
            return self._result(desired, ReconcileOutcome.CREATED, dry_run, detail="would create")
        try:
            await self._call("create", sid, lambda: self._store.create(desired), self._holds(desired))
        except ScheduleConflictError:
            logger.info("schedule_create_conflict schedule_id=%s", sid)
            remote = await self._describe(sid)
            if not remote.exists:
                raise PersistentConflictError(sid, "create reported a conflict but the schedule is absent")
            return await self._converge(desired, remote, dry_run, allow_retry=False)
        return self._result(desired, ReconcileOutcome.CREATED, dry_run)

    async def _converge(
        self,
        desired: ScheduleDescriptor,
        remote: RemoteScheduleState,
        dry_run: bool,
        *,
        allow_retry: bool,
    ) -> ReconcileResult:
        sid = desired.schedule_id
        drifted = remote.config_hash != desired.config_hash
        if drifted and not dry_run:
            try:
                await self._call("update", sid, lambda: self._store.update(desired), self._holds(desired))
            except ScheduleNotFoundError:
                if not allow_retry:
                    raise PersistentConflictError(sid, "schedule disappeared during update") from None
                logger.info("schedule_update_missing schedule_id=%s", sid)
                return await self._retry_after_vanish(desired, dry_run)

        resumed = False
        if remote.paused and self.config.resume_paused:
            if not dry_run:
                try:
                    await self._call(
                        "resume", sid, lambda: self._store.resume(sid), self._paused_is(sid, False)
                    )
                except ScheduleNotFoundError:
                    raise PersistentConflictError(sid, "schedule disappeared during resume") from None
            resumed = True

        if drifted:
            return self._result(
                desired,
                ReconcileOutcome.UPDATED,
                dry_run,
                detail=f"config_hash {remote.config_hash} -> {desired.config_hash}",
            )
        if resumed:
            return self._result(desired, ReconcileOutcome.RESUMED, dry_run)
        return self._result(desired, ReconcileOutcome.UNCHANGED, dry_run)

    async def _retry_after_vanish(self, desired: ScheduleDescriptor, dry_run: bool) -> ReconcileResult:
        sid = desired.schedule_id
        remote = await self._describe(sid)
        if remote.exists:
            return await self._converge(desired, remote, dry_run, allow_retry=False)
        try:
            await self._call("create", sid, lambda: self._store.create(desired), self._holds(desired))
        except ScheduleConflictError:
            raise PersistentConflictError(sid, "schedule flapped between absent and present") from None
        return self._result(desired, ReconcileOutcome.CREATED, dry_run)

    # -- prune -----------------------------------------------------------

    async def _prune(self, keep_ids: set[str], dry_run: bool) -> list[ReconcileResult]:
        prefix = self.config.schedule_prefix
        try:
            remote_ids = await self._call("list", prefix, lambda: self._store.list_schedule_ids(prefix))
        except GovrunError as exc:
            logger.warning("schedule_prune_list_failed prefix=%s error=%s", prefix, exc)
            return [ReconcileResult.failed(f"{prefix}*", exc, dry_run=dry_run)]

        stale = [sid for sid in remote_ids if sid.startswith(prefix) and sid not in keep_ids]
        if not stale:
            return []
        return list(
            await asyncio.gather(
                *(self._limited(sid, self._bind_prune(sid, dry_run), dry_run) for sid in stale)
            )
        )

    def _bind_prune(self, schedule_id: str, dry_run: bool) -> Callable[[], Awaitable[ReconcileResult]]:
        return lambda: self._prune_one(schedule_id, dry_run)

    async def _prune_one(self, schedule_id: str, dry_run: bool) -> ReconcileResult:
        remote = await self._describe(schedule_id)
        if not remote.exists:
            logger.info("schedule_prune_already_deleted schedule_id=%s", schedule_id)
            return ReconcileResult(
                schedule_id, ReconcileOutcome.UNCHANGED, dry_run=dry_run, detail="deleted externally"
            )
        if remote.paused:
            return ReconcileResult(
                schedule_id,
                ReconcileOutcome.UNCHANGED,
                config_hash=remote.config_hash,
                dry_run=dry_run,
                detail="already paused",
            )
        if not dry_run:
            try:
                await self._call(
                    "pause",
                    schedule_id,
                    lambda: self._store.pause(schedule_id),
                    self._paused_is(schedule_id, True),
                )
            except ScheduleNotFoundError:
                logger.info("schedule_prune_already_deleted schedule_id=%s", schedule_id)
                return ReconcileResult(
                    schedule_id, ReconcileOutcome.UNCHANGED, dry_run=dry_run, detail="deleted externally"
                )
        logger.warning("schedule_pruned schedule_id=%s dry_run=%s", schedule_id, dry_run)
        return ReconcileResult(
            schedule_id,
            ReconcileOutcome.PAUSED,
            config_hash=remote.config_hash,
            dry_run=dry_run,
            detail="no longer declared",
        )

    # -- bookkeeping -----------------------------------------------------

    @staticmethod
    def _result(
        desired: ScheduleDescriptor,
        outcome: ReconcileOutcome,
        dry_run: bool,
        *,
        detail: str | None = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            schedule_id=desired.schedule_id,
            outcome=outcome,
            config_hash=desired.config_hash,
            dry_run=dry_run,
            detail=detail,
        )

    def _record(self, result: ReconcileResult) -> None:
        self.metrics.record_reconcile(result.outcome.value)
        if result.ok:
            logger.info(
                "schedule_reconciled schedule_id=%s outcome=%s dry_run=%s",
                result.schedule_id,
                result.outcome.value,
                result.dry_run,
            )
