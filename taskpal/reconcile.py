# FILE: taskpal/reconcile.py
"""
Reconciliation: turn freshly observed task completions into points.

Semantics:

    new_tasks   = {t.id for t in snapshot} - ledger.counted_tasks
    delta       = |new_tasks| * points_per_task
    if delta > 0:
        ledger.points          += delta
        ledger.lifetime_points += delta
        ledger.counted_tasks   |= new_tasks
        persist

Properties:
  - idempotent under retry: replaying the same snapshot yields delta == 0
    and no write;
  - at-most-once per task id for the lifetime of the ledger, across process
    restarts, because counted_tasks is persisted in the same write as the
    credit.

The network fetch happens before and outside the per-user lock; only the
load / diff / persist step is serialized.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import PersistenceFailure
from .metrics import LedgerMetrics
from .storage import LedgerLocks, LedgerSeed, LedgerStore, UserLedger
from .task_source import TaskRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncStats:
    total_completed_tasks: int = 0
    newly_counted_tasks: int = 0
    points_gained_this_sync: int = 0
    source_ok: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "totalCompletedTasks": self.total_completed_tasks,
            "newlyCountedTasks": self.newly_counted_tasks,
            "pointsGainedThisSync": self.points_gained_this_sync,
            "sourceOk": self.source_ok,
        }


def new_task_ids(ledger: UserLedger, completed_tasks: Iterable[TaskRecord]) -> List[str]:
    """Ids not yet counted, in snapshot order, each listed once."""
    out: List[str] = []
    seen = set()
    for t in completed_tasks:
        if t.id in seen or ledger.has_counted(t.id):
            continue
        seen.add(t.id)
        out.append(t.id)
    return out


def reconcile(
    ledger: UserLedger,
    completed_tasks: Iterable[TaskRecord],
    points_per_task: int,
) -> Tuple[UserLedger, SyncStats]:
    """
    Pure reconciliation step.

    Returns a new ledger when points were gained; otherwise the input ledger
    object itself, so callers can skip the write with an identity check.

    With points_per_task == 0 nothing is written, so task ids are not
    recorded either: every sync reports the same tasks as newly counted, and
    raising points_per_task later credits all of them. Zero means "counting
    paused", not "count without reward".
    """
    if points_per_task < 0:
        raise ValueError("points_per_task must be non-negative")
    tasks = list(completed_tasks)
    fresh = new_task_ids(ledger, tasks)
    delta = len(fresh) * points_per_task
    stats = SyncStats(
        total_completed_tasks=len({t.id for t in tasks}),
        newly_counted_tasks=len(fresh),
        points_gained_this_sync=delta,
    )
    if delta <= 0:
        return ledger, stats

    updated = ledger.copy()
    updated.points += delta
    updated.lifetime_points += delta
    updated.add_counted(fresh)
    return updated, stats


class ReconciliationEngine:
    """
    Applies reconcile() against a store under the per-user lock.
    """

    def __init__(
        self,
        store: LedgerStore,
        locks: LedgerLocks,
        *,
        seed: LedgerSeed,
        points_per_task: int,
        metrics: Optional[LedgerMetrics] = None,
        normalize: Optional[Callable[[UserLedger], UserLedger]] = None,
    ) -> None:
        if points_per_task < 0:
            raise ValueError("points_per_task must be non-negative")
        self.store = store
        self.locks = locks
        self.seed = seed
        self.points_per_task = int(points_per_task)
        self.metrics = metrics or LedgerMetrics(enabled=False)
        self.normalize = normalize or (lambda ledger: ledger)

    def _load(self, user_id: str) -> UserLedger:
        return self.normalize(self.store.load_or_seed(user_id, self.seed))

    def sync(self, user_id: str, completed_tasks: Iterable[TaskRecord]) -> Tuple[UserLedger, SyncStats]:
        tasks = list(completed_tasks)
        with self.locks.hold(user_id):
            ledger = self._load(user_id)
            updated, stats = reconcile(ledger, tasks, self.points_per_task)
            if updated is not ledger:
                try:
                    self.store.put(user_id, updated)
                except PersistenceFailure:
                    self.metrics.record_persistence_failure()
                    self.metrics.record_sync("persist_failed")
                    raise
                logger.info(
                    "ledger credited",
                    extra={
                        "user_id": user_id,
                        "op": "sync",
                        "newly_counted": stats.newly_counted_tasks,
                        "points_gained": stats.points_gained_this_sync,
                        "balance": updated.points,
                    },
                )
        self.metrics.record_sync(
            "credited" if stats.points_gained_this_sync > 0 else "unchanged",
            newly_counted=stats.newly_counted_tasks,
            points=stats.points_gained_this_sync,
        )
        return updated, stats

    def degraded(self, user_id: str) -> Tuple[UserLedger, SyncStats]:
        """Cached ledger with zero-delta stats, for when the source is down."""
        with self.locks.hold(user_id):
            ledger = self._load(user_id)
        self.metrics.record_sync("source_unavailable")
        return ledger, SyncStats(source_ok=False)


__all__ = ["SyncStats", "new_task_ids", "reconcile", "ReconciliationEngine"]
