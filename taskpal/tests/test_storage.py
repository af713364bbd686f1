# taskpal/tests/test_storage.py
import json
import os
import threading

import pytest

from taskpal.errors import PersistenceFailure
from taskpal.storage import (
    InMemoryLedgerStore,
    JsonFileLedgerStore,
    LedgerLocks,
    LedgerSeed,
    SQLiteLedgerStore,
    UserLedger,
    make_ledger_store,
)


def _sample():
    return UserLedger(
        points=30,
        lifetime_points=50,
        owned_accessories=["hat_basic"],
        equipped_accessories=["hat_basic"],
        counted_tasks=["t1", "t2"],
    )


def test_ledger_dedups_and_tracks_membership():
    ledger = UserLedger(owned_accessories=["a", "a", "b"], counted_tasks=["t", "t"])
    assert ledger.owned_accessories == ["a", "b"]
    assert ledger.counted_tasks == ["t"]
    ledger.add_owned("a")
    ledger.add_counted(["t", "u"])
    assert ledger.owned_accessories == ["a", "b"]
    assert ledger.has_counted("u")


def test_copy_is_independent():
    a = _sample()
    b = a.copy()
    b.add_owned("cape_red")
    b.points = 0
    assert not a.owns("cape_red")
    assert a.points == 30


def test_from_json_defaults_and_repairs():
    ledger = UserLedger.from_json({
        "points": 40,
        "ownedAccessories": ["hat_basic"],
        "equippedAccessories": ["hat_basic", "cape_red"],
    })
    assert ledger.lifetime_points == 40
    assert ledger.equipped_accessories == ["hat_basic"]
    assert ledger.counted_tasks == []

    broken = UserLedger.from_json({"points": -5, "lifetimePoints": "x"})
    assert broken.points == 0
    assert broken.lifetime_points == 0


def test_to_json_keys():
    assert set(_sample().to_json()) == {
        "points",
        "lifetimePoints",
        "ownedAccessories",
        "equippedAccessories",
        "countedTasks",
    }


def test_seed_validation():
    with pytest.raises(ValueError):
        LedgerSeed(points=-1)
    with pytest.raises(ValueError):
        LedgerSeed(owned=(), equipped=("hat_basic",))
    ledger = LedgerSeed(points=5, owned=("hat_basic",)).new_ledger()
    assert ledger.points == 5 and ledger.lifetime_points == 5
    assert ledger.owned_accessories == ["hat_basic"]


def test_memory_store_returns_copies():
    store = InMemoryLedgerStore()
    assert store.get("u") is None
    store.put("u", _sample())
    got = store.get("u")
    got.points = 0
    assert store.get("u").points == 30
    assert store.user_ids() == ["u"]


def test_load_or_seed_does_not_persist():
    store = InMemoryLedgerStore()
    ledger = store.load_or_seed("new", LedgerSeed(points=7))
    assert ledger.points == 7
    assert store.get("new") is None


def test_json_store_round_trip(tmp_path):
    path = tmp_path / "data" / "userState.json"
    store = JsonFileLedgerStore(str(path))
    store.put("default", _sample())
    store.put("alice", UserLedger(points=1, lifetime_points=1))

    reopened = JsonFileLedgerStore(str(path))
    assert reopened.get("default") == _sample()
    assert sorted(reopened.user_ids()) == ["alice", "default"]

    doc = json.loads(path.read_text(encoding="utf-8"))
    assert doc["default"]["countedTasks"] == ["t1", "t2"]
    # no temp files left behind
    assert os.listdir(path.parent) == ["userState.json"]


def test_json_store_reads_legacy_document(tmp_path):
    path = tmp_path / "userState.json"
    path.write_text(json.dumps({
        "default": {
            "points": 20,
            "ownedAccessories": ["hat_basic"],
            "equippedAccessories": [],
            "countedTasks": ["t1"],
        }
    }), encoding="utf-8")
    ledger = JsonFileLedgerStore(str(path)).get("default")
    assert ledger.points == 20
    assert ledger.lifetime_points == 20
    assert ledger.has_counted("t1")


def test_json_store_refuses_truncated_file(tmp_path):
    path = tmp_path / "userState.json"
    store = JsonFileLedgerStore(str(path))
    store.put("default", _sample())
    raw = path.read_bytes()
    path.write_bytes(raw[:-3])

    with pytest.raises(PersistenceFailure):
        JsonFileLedgerStore(str(path))
    # the damaged document is left as found
    assert path.read_bytes() == raw[:-3]


@pytest.mark.parametrize("content", ["[1, 2, 3]", '{"default": 5}'])
def test_json_store_refuses_non_object_documents(tmp_path, content):
    path = tmp_path / "userState.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        JsonFileLedgerStore(str(path))


def test_json_store_failed_write_is_not_committed(tmp_path, monkeypatch):
    path = tmp_path / "userState.json"
    store = JsonFileLedgerStore(str(path))
    store.put("default", UserLedger(points=10, lifetime_points=10))

    def boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("taskpal.storage.os.replace", boom)
    with pytest.raises(PersistenceFailure) as ei:
        store.put("default", UserLedger(points=99, lifetime_points=99))
    assert ei.value.user_id == "default"
    monkeypatch.undo()

    assert store.get("default").points == 10
    assert JsonFileLedgerStore(str(path)).get("default").points == 10
    assert os.listdir(tmp_path) == ["userState.json"]


def test_sqlite_store_round_trip(tmp_path):
    path = str(tmp_path / "taskpal.db")
    store = SQLiteLedgerStore(path)
    store.put("default", _sample())
    store.put("default", UserLedger(points=1, lifetime_points=60, counted_tasks=["t1", "t2", "t3"]))
    store.close()

    reopened = SQLiteLedgerStore(path)
    try:
        ledger = reopened.get("default")
        assert ledger.points == 1
        assert ledger.counted_tasks == ["t1", "t2", "t3"]
        assert reopened.get("missing") is None
        assert reopened.user_ids() == ["default"]
    finally:
        reopened.close()


def test_factory_dsns(tmp_path):
    assert make_ledger_store(None).backend == "memory"
    assert make_ledger_store("mem://").backend == "memory"
    assert make_ledger_store(f"file://{tmp_path}/state.json").backend == "file"
    sq = make_ledger_store("sqlite:///:memory:")
    try:
        assert sq.backend == "sqlite"
    finally:
        sq.close()
    with pytest.raises(ValueError):
        make_ledger_store("redis://localhost")


def test_locks_are_per_user():
    locks = LedgerLocks()
    assert locks.lock_for("a") is locks.lock_for("a")
    assert locks.lock_for("a") is not locks.lock_for("b")

    entered = threading.Event()

    def other_user():
        with locks.hold("b"):
            entered.set()

    with locks.hold("a"):
        t = threading.Thread(target=other_user)
        t.start()
        t.join(timeout=2)
    assert entered.is_set()
