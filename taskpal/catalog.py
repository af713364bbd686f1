# FILE: taskpal/catalog.py
"""
Accessory catalog.

The catalog is a process-wide, immutable table of purchasable accessories.
Each entry belongs to exactly one slot; at most one accessory per slot can be
equipped at a time (enforced by the inventory engine, not here).

Invariants:
  - ids are unique across the catalog;
  - cost and unlock_threshold are non-negative integers;
  - declaration order is preserved for presentation.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import yaml

from .errors import UnknownAccessory

logger = logging.getLogger(__name__)


class AccessorySlot(str, Enum):
    HEAD = "head"
    FACE = "face"
    BODY = "body"
    BACK = "back"
    WEAPON = "weapon"
    COMPANION = "companion"
    AURA = "aura"
    SPECIAL = "special"

    @classmethod
    def parse(cls, raw: Any) -> "AccessorySlot":
        """
        Accept enum members and case-insensitive names. A few legacy aliases
        ("hat", "pet") map onto the canonical slots.
        """
        if isinstance(raw, cls):
            return raw
        s = str(raw or "").strip().lower()
        s = _SLOT_ALIASES.get(s, s)
        try:
            return cls(s)
        except ValueError:
            raise ValueError(f"unknown accessory slot: {raw!r}") from None


_SLOT_ALIASES: Dict[str, str] = {
    "hat": "head",
    "pet": "companion",
    "cape": "back",
}


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    cost: int
    slot: AccessorySlot
    unlock_threshold: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.id or not isinstance(self.id, str):
            raise ValueError("catalog entry id must be a non-empty string")
        if isinstance(self.cost, bool) or not isinstance(self.cost, int) or self.cost < 0:
            raise ValueError(f"catalog entry {self.id!r}: cost must be a non-negative integer")
        if self.unlock_threshold is not None:
            t = self.unlock_threshold
            if isinstance(t, bool) or not isinstance(t, int) or t < 0:
                raise ValueError(
                    f"catalog entry {self.id!r}: unlock_threshold must be a non-negative integer"
                )
        if not isinstance(self.slot, AccessorySlot):
            object.__setattr__(self, "slot", AccessorySlot.parse(self.slot))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "CatalogEntry":
        slot = raw.get("slot", raw.get("type"))
        threshold = raw.get("unlock_threshold", raw.get("unlockThreshold"))
        return cls(
            id=str(raw.get("id") or "").strip(),
            name=str(raw.get("name") or raw.get("id") or "").strip(),
            cost=int(raw.get("cost", 0)),
            slot=AccessorySlot.parse(slot),
            unlock_threshold=None if threshold is None else int(threshold),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cost": self.cost,
            "slot": self.slot.value,
            "type": self.slot.value,
            "unlockThreshold": self.unlock_threshold,
        }


class Catalog:
    """Immutable, ordered set of catalog entries keyed by id."""

    __slots__ = ("_entries", "_by_id")

    def __init__(self, entries: Iterable[CatalogEntry]) -> None:
        ordered: List[CatalogEntry] = []
        by_id: Dict[str, CatalogEntry] = {}
        for e in entries:
            if e.id in by_id:
                raise ValueError(f"duplicate catalog id: {e.id!r}")
            by_id[e.id] = e
            ordered.append(e)
        self._entries: Tuple[CatalogEntry, ...] = tuple(ordered)
        self._by_id: Dict[str, CatalogEntry] = by_id

    def __contains__(self, accessory_id: object) -> bool:
        return accessory_id in self._by_id

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, accessory_id: str) -> Optional[CatalogEntry]:
        return self._by_id.get(accessory_id)

    def require(self, accessory_id: str) -> CatalogEntry:
        entry = self._by_id.get(accessory_id)
        if entry is None:
            raise UnknownAccessory(accessory_id)
        return entry

    def slot_of(self, accessory_id: str) -> Optional[AccessorySlot]:
        entry = self._by_id.get(accessory_id)
        return entry.slot if entry is not None else None

    def ids(self) -> List[str]:
        return [e.id for e in self._entries]

    def to_payload(self) -> List[Dict[str, Any]]:
        return [e.to_payload() for e in self._entries]


DEFAULT_CATALOG = Catalog(
    [
        CatalogEntry("hat_basic", "Basic Hat", 20, AccessorySlot.HEAD),
        CatalogEntry("glasses_nerd", "Nerd Glasses", 40, AccessorySlot.FACE),
        CatalogEntry("cape_red", "Red Cape", 60, AccessorySlot.BACK),
        CatalogEntry("pet_cat", "Tiny Cat Companion", 80, AccessorySlot.COMPANION),
        CatalogEntry("hat_wizard", "Wizard Hat", 120, AccessorySlot.HEAD),
        CatalogEntry("sword_wood", "Wooden Sword", 50, AccessorySlot.WEAPON),
        CatalogEntry("shirt_striped", "Striped Shirt", 30, AccessorySlot.BODY),
        CatalogEntry("aura_sparkle", "Sparkle Aura", 150, AccessorySlot.AURA, unlock_threshold=300),
        CatalogEntry("crown_gold", "Golden Crown", 500, AccessorySlot.SPECIAL, unlock_threshold=1000),
    ]
)


def load_catalog(path: Optional[str]) -> Catalog:
    """
    Load a catalog from a YAML (or JSON) file.

    Accepted shapes:
      - a top-level list of entries;
      - a mapping with an "accessories" list.

    Empty path -> DEFAULT_CATALOG. A missing file or malformed document is a
    configuration error and raises ValueError; the service must not start
    with a silently different shop.
    """
    if not path:
        return DEFAULT_CATALOG
    if not os.path.exists(path):
        raise ValueError(f"catalog file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)
    if isinstance(doc, Mapping):
        doc = doc.get("accessories")
    if not isinstance(doc, list):
        raise ValueError(f"catalog file {path} must contain a list of accessories")
    entries = []
    for raw in doc:
        if not isinstance(raw, Mapping):
            raise ValueError(f"catalog file {path}: every accessory must be a mapping")
        entries.append(CatalogEntry.from_mapping(raw))
    catalog = Catalog(entries)
    logger.info("loaded catalog", extra={"catalog_path": path, "entries": len(catalog)})
    return catalog


__all__ = [
    "AccessorySlot",
    "CatalogEntry",
    "Catalog",
    "DEFAULT_CATALOG",
    "load_catalog",
]
