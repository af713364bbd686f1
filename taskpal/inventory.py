# FILE: taskpal/inventory.py
"""
Inventory engine: purchase / equip / unequip against a ledger and the
catalog.

Invariants:
  - points never go negative;
  - owned_accessories only grows;
  - equipped_accessories is a subset of owned_accessories;
  - at most one equipped accessory per slot.

Every check runs before any mutation, on a private copy of the ledger; the
store commit is the only side effect. A rejected operation therefore leaves
the persisted ledger untouched without needing a rollback.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .catalog import Catalog
from .errors import (
    AlreadyOwned,
    InsufficientPoints,
    LockedAccessory,
    NotEquipped,
    NotOwned,
    PersistenceFailure,
    TaskpalError,
)
from .metrics import LedgerMetrics
from .storage import LedgerLocks, LedgerSeed, LedgerStore, UserLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseResult:
    points: int
    owned_accessories: List[str]

    def to_payload(self) -> Dict[str, Any]:
        return {"points": self.points, "ownedAccessories": list(self.owned_accessories)}


# ---------------------------------------------------------------------------
# Pure ledger transitions
# ---------------------------------------------------------------------------


def enforce_slot_exclusivity(ledger: UserLedger, catalog: Catalog) -> UserLedger:
    """
    Repair a loaded ledger that has two equipped ids in one slot (hand-edited
    documents, catalog changes). The most recently equipped id, i.e. the last
    one in the list, keeps the slot. Returns the input object when nothing
    needs fixing.
    """
    slots = [(aid, catalog.slot_of(aid)) for aid in ledger.equipped_accessories]
    keep: Dict[Any, str] = {slot: aid for aid, slot in slots if slot is not None}
    displaced = [aid for aid, slot in slots if slot is not None and keep[slot] != aid]
    if not displaced:
        return ledger
    logger.warning(
        "equipped accessories share a slot; unequipping older ones",
        extra={"displaced": displaced},
    )
    updated = ledger.copy()
    for aid in displaced:
        updated.remove_equipped(aid)
    return updated


def apply_purchase(ledger: UserLedger, catalog: Catalog, accessory_id: str) -> UserLedger:
    entry = catalog.require(accessory_id)
    if ledger.owns(accessory_id):
        raise AlreadyOwned(accessory_id)
    if entry.unlock_threshold is not None and ledger.lifetime_points < entry.unlock_threshold:
        raise LockedAccessory(
            accessory_id,
            threshold=entry.unlock_threshold,
            lifetime_points=ledger.lifetime_points,
        )
    if ledger.points < entry.cost:
        raise InsufficientPoints(accessory_id, cost=entry.cost, points=ledger.points)

    updated = ledger.copy()
    updated.points -= entry.cost
    updated.add_owned(accessory_id)
    return updated


def apply_equip(ledger: UserLedger, catalog: Catalog, accessory_id: str) -> UserLedger:
    """
    Equip an owned accessory, displacing whatever sits in the same slot.

    Ownership is checked before the catalog lookup, so an owned id that was
    since retired from the catalog reports UnknownAccessory.
    Re-equipping an already equipped id returns the input ledger unchanged.
    Equipped ids missing from the catalog (retired items) do not block a
    slot and are left alone.
    """
    if not ledger.owns(accessory_id):
        raise NotOwned(accessory_id)
    entry = catalog.require(accessory_id)
    if ledger.is_equipped(accessory_id):
        return ledger

    updated = ledger.copy()
    for other in list(updated.equipped_accessories):
        if catalog.slot_of(other) == entry.slot:
            updated.remove_equipped(other)
    updated.add_equipped(accessory_id)
    return updated


def apply_unequip(ledger: UserLedger, accessory_id: str) -> UserLedger:
    if not ledger.is_equipped(accessory_id):
        raise NotEquipped(accessory_id)
    updated = ledger.copy()
    updated.remove_equipped(accessory_id)
    return updated


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class InventoryEngine:
    def __init__(
        self,
        store: LedgerStore,
        catalog: Catalog,
        locks: LedgerLocks,
        *,
        seed: LedgerSeed,
        metrics: Optional[LedgerMetrics] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.locks = locks
        self.seed = seed
        self.metrics = metrics or LedgerMetrics(enabled=False)

    def _commit(self, op: str, user_id: str, accessory_id: str, transition) -> Tuple[UserLedger, UserLedger]:
        with self.locks.hold(user_id):
            before = enforce_slot_exclusivity(self.store.load_or_seed(user_id, self.seed), self.catalog)
            try:
                after = transition(before)
            except TaskpalError as exc:
                self.metrics.record_inventory(op, exc.code)
                logger.info(
                    "inventory operation rejected",
                    extra={"user_id": user_id, "op": op, "accessory_id": accessory_id, "reason": exc.code},
                )
                raise
            if after is not before:
                try:
                    self.store.put(user_id, after)
                except PersistenceFailure:
                    self.metrics.record_persistence_failure()
                    self.metrics.record_inventory(op, "persist_failed")
                    raise
        return before, after

    def purchase(self, user_id: str, accessory_id: str) -> PurchaseResult:
        before, after = self._commit(
            "purchase",
            user_id,
            accessory_id,
            lambda ledger: apply_purchase(ledger, self.catalog, accessory_id),
        )
        spent = before.points - after.points
        self.metrics.record_inventory("purchase", "ok", spent=spent)
        logger.info(
            "accessory purchased",
            extra={"user_id": user_id, "op": "purchase", "accessory_id": accessory_id, "spent": spent, "balance": after.points},
        )
        return PurchaseResult(points=after.points, owned_accessories=list(after.owned_accessories))

    def equip(self, user_id: str, accessory_id: str) -> List[str]:
        _, after = self._commit(
            "equip",
            user_id,
            accessory_id,
            lambda ledger: apply_equip(ledger, self.catalog, accessory_id),
        )
        self.metrics.record_inventory("equip", "ok")
        return list(after.equipped_accessories)

    def unequip(self, user_id: str, accessory_id: str) -> List[str]:
        _, after = self._commit(
            "unequip",
            user_id,
            accessory_id,
            lambda ledger: apply_unequip(ledger, accessory_id),
        )
        self.metrics.record_inventory("unequip", "ok")
        return list(after.equipped_accessories)


__all__ = [
    "PurchaseResult",
    "enforce_slot_exclusivity",
    "apply_purchase",
    "apply_equip",
    "apply_unequip",
    "InventoryEngine",
]
