# taskpal/tests/test_service.py
import pytest

from taskpal.config import Settings
from taskpal.service import LedgerService
from taskpal.storage import InMemoryLedgerStore, UserLedger
from taskpal.task_source import StaticTaskSource, TaskRecord


def _service(store=None, tasks=(), **overrides):
    settings = Settings(store_dsn="mem://", **overrides)
    return LedgerService(
        settings,
        store=store if store is not None else InMemoryLedgerStore(),
        source=StaticTaskSource([TaskRecord(t) for t in tasks]),
    )


def test_seed_with_two_items_in_one_slot_rejected():
    with pytest.raises(ValueError, match="share slot"):
        _service(
            starting_owned=("hat_basic", "hat_wizard"),
            starting_equipped=("hat_basic", "hat_wizard"),
        )


def test_seed_with_items_outside_catalog_rejected():
    with pytest.raises(ValueError, match="not in catalog"):
        _service(starting_owned=("hat_dragon",), starting_equipped=("hat_dragon",))


def test_seed_with_distinct_slots_accepted():
    svc = _service(
        starting_points=15,
        starting_owned=("hat_basic", "glasses_nerd", "hat_wizard"),
        starting_equipped=("hat_basic", "glasses_nerd"),
    )
    view = svc.state("newcomer")
    assert view.ledger.points == 15
    assert view.ledger.equipped_accessories == ["hat_basic", "glasses_nerd"]


def test_stored_slot_conflict_is_repaired_on_read():
    store = InMemoryLedgerStore({
        "u": UserLedger(
            owned_accessories=["hat_basic", "hat_wizard", "cape_red"],
            equipped_accessories=["hat_basic", "cape_red", "hat_wizard"],
        )
    })
    svc = _service(store=store)
    assert svc.state("u").ledger.equipped_accessories == ["cape_red", "hat_wizard"]


def test_stored_slot_conflict_is_persisted_with_next_mutation():
    store = InMemoryLedgerStore({
        "u": UserLedger(
            owned_accessories=["hat_basic", "hat_wizard", "cape_red"],
            equipped_accessories=["hat_basic", "hat_wizard"],
        )
    })
    svc = _service(store=store)
    assert svc.equip("u", "cape_red") == ["hat_wizard", "cape_red"]
    assert store.get("u").equipped_accessories == ["hat_wizard", "cape_red"]


def test_degraded_read_also_repairs_slot_conflict():
    store = InMemoryLedgerStore({
        "u": UserLedger(
            owned_accessories=["hat_basic", "hat_wizard"],
            equipped_accessories=["hat_wizard", "hat_basic"],
        )
    })
    svc = LedgerService(Settings(store_dsn="mem://"), store=store, source=StaticTaskSource(fail=True))
    view = svc.state("u")
    assert view.stats.source_ok is False
    assert view.ledger.equipped_accessories == ["hat_basic"]
