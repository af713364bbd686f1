import threading

import pytest

from taskpal.errors import PersistenceFailure
from taskpal.reconcile import ReconciliationEngine, SyncStats, new_task_ids, reconcile
from taskpal.storage import InMemoryLedgerStore, LedgerLocks, LedgerSeed, UserLedger
from taskpal.task_source import TaskRecord


def _tasks(*ids):
    return [TaskRecord(i) for i in ids]


def test_counts_only_new_tasks():
    ledger = UserLedger(points=0, counted_tasks=["t1"])
    updated, stats = reconcile(ledger, _tasks("t1", "t2", "t3"), points_per_task=10)
    assert stats.newly_counted_tasks == 2
    assert stats.points_gained_this_sync == 20
    assert stats.total_completed_tasks == 3
    assert set(updated.counted_tasks) == {"t1", "t2", "t3"}
    assert updated.points == 20
    assert updated.lifetime_points == 20
    # input untouched
    assert ledger.counted_tasks == ["t1"]
    assert ledger.points == 0


def test_idempotent_on_same_snapshot():
    snapshot = _tasks("a", "b")
    first, s1 = reconcile(UserLedger(), snapshot, 10)
    second, s2 = reconcile(first, snapshot, 10)
    assert s1.points_gained_this_sync == 20
    assert s2.points_gained_this_sync == 0
    assert s2.newly_counted_tasks == 0
    assert second is first


def test_duplicate_ids_in_snapshot_credited_once():
    updated, stats = reconcile(UserLedger(), _tasks("a", "a", "b"), 5)
    assert stats.newly_counted_tasks == 2
    assert stats.total_completed_tasks == 2
    assert updated.points == 10
    assert updated.counted_tasks == ["a", "b"]


def test_at_most_once_across_growing_snapshots():
    ledger = UserLedger()
    for snap in (["x"], ["x", "y"], ["y", "x"], ["x", "y", "z"]):
        ledger, _ = reconcile(ledger, _tasks(*snap), 10)
    assert ledger.points == 30
    assert ledger.counted_tasks == ["x", "y", "z"]


def test_task_dropped_from_source_is_not_debited():
    ledger, _ = reconcile(UserLedger(), _tasks("a", "b"), 10)
    ledger, stats = reconcile(ledger, _tasks("a"), 10)
    assert ledger.points == 20
    assert stats.total_completed_tasks == 1


def test_zero_points_per_task_never_writes():
    ledger = UserLedger()
    updated, stats = reconcile(ledger, _tasks("a"), 0)
    assert updated is ledger
    assert stats.newly_counted_tasks == 1
    assert stats.points_gained_this_sync == 0


def test_negative_points_per_task_rejected():
    with pytest.raises(ValueError):
        reconcile(UserLedger(), _tasks("a"), -1)


def test_new_task_ids_order():
    ledger = UserLedger(counted_tasks=["b"])
    assert new_task_ids(ledger, _tasks("c", "b", "a", "c")) == ["c", "a"]


def test_stats_payload():
    assert SyncStats(3, 2, 20).to_payload() == {
        "totalCompletedTasks": 3,
        "newlyCountedTasks": 2,
        "pointsGainedThisSync": 20,
        "sourceOk": True,
    }


class _CountingStore(InMemoryLedgerStore):
    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.puts = 0

    def put(self, user_id, ledger):
        self.puts += 1
        super().put(user_id, ledger)


def _engine(store, ppt=10, seed=None):
    return ReconciliationEngine(store, LedgerLocks(), seed=seed or LedgerSeed(), points_per_task=ppt)


def test_engine_writes_only_on_gain():
    store = _CountingStore()
    engine = _engine(store)
    engine.sync("u", _tasks("a"))
    engine.sync("u", _tasks("a"))
    engine.sync("u", [])
    assert store.puts == 1
    assert store.get("u").points == 10


def test_engine_seeds_new_users():
    store = InMemoryLedgerStore()
    engine = _engine(store, seed=LedgerSeed(points=100, owned=("hat_basic",), equipped=("hat_basic",)))
    ledger, stats = engine.sync("new", [])
    assert ledger.points == 100
    assert ledger.equipped_accessories == ["hat_basic"]
    assert stats.points_gained_this_sync == 0
    # nothing gained, so nothing persisted yet
    assert store.get("new") is None


def test_engine_persistence_failure_leaves_store_untouched():
    class Broken(InMemoryLedgerStore):
        def put(self, user_id, ledger):
            raise PersistenceFailure(user_id=user_id)

    store = Broken({"u": UserLedger(points=5, lifetime_points=5)})
    engine = _engine(store)
    with pytest.raises(PersistenceFailure):
        engine.sync("u", _tasks("a"))
    assert store.get("u") == UserLedger(points=5, lifetime_points=5)
    # retry after the store recovers still credits the task exactly once
    healthy = InMemoryLedgerStore({"u": store.get("u")})
    ledger, stats = _engine(healthy).sync("u", _tasks("a"))
    assert stats.points_gained_this_sync == 10
    assert ledger.points == 15


def test_degraded_returns_cached_state():
    store = InMemoryLedgerStore({"u": UserLedger(points=42, lifetime_points=42)})
    ledger, stats = _engine(store).degraded("u")
    assert ledger.points == 42
    assert stats == SyncStats(source_ok=False)


def test_concurrent_syncs_credit_once():
    store = InMemoryLedgerStore()
    engine = _engine(store)
    snapshot = _tasks(*[f"t{i}" for i in range(50)])
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        engine.sync("shared", snapshot)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ledger = store.get("shared")
    assert ledger.points == 500
    assert len(ledger.counted_tasks) == 50


def test_zero_points_per_task_pauses_counting():
    store = InMemoryLedgerStore()
    paused = _engine(store, ppt=0)
    for _ in range(2):
        ledger, stats = paused.sync("u", _tasks("a", "b"))
        assert stats.newly_counted_tasks == 2
        assert stats.points_gained_this_sync == 0
        assert ledger.counted_tasks == []
    assert store.get("u") is None

    ledger, stats = _engine(store, ppt=10).sync("u", _tasks("a", "b"))
    assert stats.points_gained_this_sync == 20
    assert ledger.counted_tasks == ["a", "b"]
