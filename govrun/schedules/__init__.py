"""Schedule reconciliation: desired state, stores and the controller."""

from govrun.schedules.desired import (
    DesiredStateSource,
    StaticDesiredStateSource,
    YAMLDesiredStateSource,
    declaration_id,
    materialize,
)
from govrun.schedules.hatchet_store import HatchetScheduleStore
from govrun.schedules.models import (
    RemoteScheduleState,
    ReconcileOutcome,
    ReconcileResult,
    ScheduleDescriptor,
    SweepReport,
    compute_config_hash,
)
from govrun.schedules.reconciler import ScheduleReconciler
from govrun.schedules.retry import RetryPolicy
from govrun.schedules.store import InMemoryScheduleStore, ScheduleStore
from govrun.schedules.watch import SyncWatcher

__all__ = [
    "DesiredStateSource",
    "HatchetScheduleStore",
    "InMemoryScheduleStore",
    "ReconcileOutcome",
    "ReconcileResult",
    "RemoteScheduleState",
    "RetryPolicy",
    "ScheduleDescriptor",
    "ScheduleReconciler",
    "ScheduleStore",
    "StaticDesiredStateSource",
    "SweepReport",
    "SyncWatcher",
    "YAMLDesiredStateSource",
    "compute_config_hash",
    "declaration_id",
    "materialize",
]
