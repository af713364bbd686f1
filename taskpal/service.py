# FILE: taskpal/service.py
"""
LedgerService: the single entry point used by the HTTP boundary.

Wires settings, store, catalog, task source and the two engines, and owns
the degrade-to-cache policy for the state read: when the task source is
unreachable the caller still gets the last persisted ledger, with
zero-delta stats and sourceOk=false.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .catalog import AccessorySlot, Catalog, DEFAULT_CATALOG, load_catalog
from .config import Settings
from .errors import InvalidRequest, SourceUnavailable
from .inventory import InventoryEngine, PurchaseResult, enforce_slot_exclusivity
from .metrics import LedgerMetrics
from .reconcile import ReconciliationEngine, SyncStats
from .storage import DEFAULT_USER_ID, LedgerLocks, LedgerSeed, LedgerStore, UserLedger, make_ledger_store
from .task_source import TaskSource, make_task_source

logger = logging.getLogger(__name__)

_MAX_USER_ID_LEN = 128


def normalize_user_id(raw: Optional[str]) -> str:
    """
    Blank / missing ids map to "default". Ids are otherwise opaque, but must
    be short and printable since they become JSON keys and log fields.
    """
    if raw is None:
        return DEFAULT_USER_ID
    uid = str(raw).strip()
    if not uid:
        return DEFAULT_USER_ID
    if len(uid) > _MAX_USER_ID_LEN:
        raise InvalidRequest("userId too long")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in uid):
        raise InvalidRequest("userId contains control characters")
    return uid


def normalize_accessory_id(raw: Optional[str]) -> str:
    aid = "" if raw is None else str(raw).strip()
    if not aid:
        raise InvalidRequest("accessoryId is required")
    return aid


def _check_seed(seed: LedgerSeed, catalog: Catalog) -> None:
    """Starting inventory must name catalog items and fill each slot at most once."""
    unknown = [a for a in seed.owned if a not in catalog]
    if unknown:
        raise ValueError(f"starting accessories not in catalog: {unknown}")
    taken: Dict[AccessorySlot, str] = {}
    for aid in seed.equipped:
        slot = catalog.slot_of(aid)
        if slot is None:
            raise ValueError(f"starting equipped accessory not in catalog: {aid!r}")
        if slot in taken:
            raise ValueError(
                f"starting equipped accessories {taken[slot]!r} and {aid!r} share slot {slot.value!r}"
            )
        taken[slot] = aid


@dataclass
class StateView:
    user_id: str
    ledger: UserLedger
    stats: SyncStats
    catalog: Catalog = field(default=DEFAULT_CATALOG)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "points": self.ledger.points,
            "lifetimePoints": self.ledger.lifetime_points,
            "ownedAccessories": list(self.ledger.owned_accessories),
            "equippedAccessories": list(self.ledger.equipped_accessories),
            "accessoriesCatalog": self.catalog.to_payload(),
            "stats": self.stats.to_payload(),
        }


class LedgerService:
    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[LedgerStore] = None,
        source: Optional[TaskSource] = None,
        catalog: Optional[Catalog] = None,
        metrics: Optional[LedgerMetrics] = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else make_ledger_store(settings.store_dsn)
        self.source = source if source is not None else make_task_source(settings)
        self.catalog = catalog if catalog is not None else load_catalog(settings.catalog_path)
        self.metrics = metrics or LedgerMetrics(enabled=False)
        self.locks = LedgerLocks()

        seed = settings.ledger_seed()
        _check_seed(seed, self.catalog)

        self.reconciler = ReconciliationEngine(
            self.store,
            self.locks,
            seed=seed,
            points_per_task=settings.points_per_task,
            metrics=self.metrics,
            normalize=lambda ledger: enforce_slot_exclusivity(ledger, self.catalog),
        )
        self.inventory = InventoryEngine(
            self.store,
            self.catalog,
            self.locks,
            seed=seed,
            metrics=self.metrics,
        )

    # ---- state / sync ----------------------------------------------------

    def state(self, user_id: Optional[str] = None) -> StateView:
        uid = normalize_user_id(user_id)
        t0 = time.perf_counter()
        try:
            tasks = self.source.list_completed_tasks()
        except SourceUnavailable as exc:
            logger.warning(
                "task source unavailable; serving cached ledger",
                extra={"user_id": uid, "op": "sync", "reason": exc.message},
            )
            ledger, stats = self.reconciler.degraded(uid)
            return StateView(uid, ledger, stats, self.catalog)
        finally:
            self.metrics.observe_source_latency(time.perf_counter() - t0)

        ledger, stats = self.reconciler.sync(uid, tasks)
        return StateView(uid, ledger, stats, self.catalog)

    # ---- inventory -------------------------------------------------------

    def purchase(self, user_id: Optional[str], accessory_id: Optional[str]) -> PurchaseResult:
        aid = normalize_accessory_id(accessory_id)
        return self.inventory.purchase(normalize_user_id(user_id), aid)

    def equip(self, user_id: Optional[str], accessory_id: Optional[str]) -> List[str]:
        aid = normalize_accessory_id(accessory_id)
        return self.inventory.equip(normalize_user_id(user_id), aid)

    def unequip(self, user_id: Optional[str], accessory_id: Optional[str]) -> List[str]:
        aid = normalize_accessory_id(accessory_id)
        return self.inventory.unequip(normalize_user_id(user_id), aid)

    # ---- diagnostics -----------------------------------------------------

    def health(self) -> Dict[str, Any]:
        s = self.settings
        return {
            "ok": True,
            "version": s.version,
            "notionTokenPresent": bool(s.notion_api_key),
            "databaseIdPresent": bool(s.notion_database_id),
            "sourceConfigured": bool(self.source.configured),
            "source": self.source.name,
            "storeBackend": self.store.backend,
            "pointsPerTask": s.points_per_task,
            "catalogSize": len(self.catalog),
        }

    def connection_report(self) -> Dict[str, Any]:
        return self.source.check_connection()

    def close(self) -> None:
        self.source.close()
        self.store.close()


__all__ = ["LedgerService", "StateView", "normalize_user_id", "normalize_accessory_id"]
