# FILE: taskpal/storage.py
"""
Persistent storage for per-user ledgers.

  - UserLedger:
      Points balance, lifetime points, owned / equipped accessories and the
      set of external task ids already converted to points.

  - LedgerStore:
      get/put keyed by an opaque user id. get() hands out a private copy;
      only put() commits. A put() that fails to reach durable storage raises
      PersistenceFailure and leaves the committed state untouched.

  - LedgerLocks:
      Per-user mutual exclusion for read-modify-write cycles. Different user
      ids never contend.

Backends:

  - InMemoryLedgerStore   ("mem://")            tests / local development
  - JsonFileLedgerStore   ("file:///path.json") whole-document overwrite
  - SQLiteLedgerStore     ("sqlite:///path.db") one JSON row per user id

Design constraints:

  - Single process: there is no cross-process locking or compare-and-swap.
    Two processes sharing one JSON file will lose updates.
  - Monotonic sets: owned_accessories and counted_tasks never shrink.
"""
from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set

from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "default"


# ------------------------------
# Data models
# ------------------------------


def _ordered_unique(items: Iterable[Any]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for x in items or ():
        s = str(x)
        if s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def _non_negative_int(raw: Any, default: int = 0) -> int:
    try:
        v = int(raw)
    except (TypeError, ValueError):
        return default
    return v if v >= 0 else default


@dataclass
class UserLedger:
    """
    Per-user ledger.

    Collections are kept as insertion-ordered lists (stable JSON output) with
    shadow sets for O(1) membership. Mutate only through the helper methods
    so both views stay in sync.
    """

    points: int = 0
    lifetime_points: int = 0
    owned_accessories: List[str] = field(default_factory=list)
    equipped_accessories: List[str] = field(default_factory=list)
    counted_tasks: List[str] = field(default_factory=list)

    _owned: Set[str] = field(default_factory=set, init=False, repr=False, compare=False)
    _equipped: Set[str] = field(default_factory=set, init=False, repr=False, compare=False)
    _counted: Set[str] = field(default_factory=set, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.owned_accessories = _ordered_unique(self.owned_accessories)
        self.equipped_accessories = _ordered_unique(self.equipped_accessories)
        self.counted_tasks = _ordered_unique(self.counted_tasks)
        self._owned = set(self.owned_accessories)
        self._equipped = set(self.equipped_accessories)
        self._counted = set(self.counted_tasks)

    # ---- membership ------------------------------------------------------

    def owns(self, accessory_id: str) -> bool:
        return accessory_id in self._owned

    def is_equipped(self, accessory_id: str) -> bool:
        return accessory_id in self._equipped

    def has_counted(self, task_id: str) -> bool:
        return task_id in self._counted

    # ---- mutation helpers -----------------------------------------------

    def add_owned(self, accessory_id: str) -> None:
        if accessory_id not in self._owned:
            self._owned.add(accessory_id)
            self.owned_accessories.append(accessory_id)

    def add_equipped(self, accessory_id: str) -> None:
        if accessory_id not in self._equipped:
            self._equipped.add(accessory_id)
            self.equipped_accessories.append(accessory_id)

    def remove_equipped(self, accessory_id: str) -> None:
        if accessory_id in self._equipped:
            self._equipped.discard(accessory_id)
            self.equipped_accessories = [
                a for a in self.equipped_accessories if a != accessory_id
            ]

    def add_counted(self, task_ids: Iterable[str]) -> None:
        for tid in task_ids:
            if tid not in self._counted:
                self._counted.add(tid)
                self.counted_tasks.append(tid)

    # ---- (de)serialization ----------------------------------------------

    def copy(self) -> "UserLedger":
        return UserLedger(
            points=self.points,
            lifetime_points=self.lifetime_points,
            owned_accessories=list(self.owned_accessories),
            equipped_accessories=list(self.equipped_accessories),
            counted_tasks=list(self.counted_tasks),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "points": self.points,
            "lifetimePoints": self.lifetime_points,
            "ownedAccessories": list(self.owned_accessories),
            "equippedAccessories": list(self.equipped_accessories),
            "countedTasks": list(self.counted_tasks),
        }

    @classmethod
    def from_json(cls, raw: Mapping[str, Any]) -> "UserLedger":
        """
        Parse a persisted ledger document.

        Older documents have no lifetimePoints; the current balance is the
        best available lower bound. Equipped ids that are not owned are
        dropped so the subset invariant holds after load.
        """
        points = _non_negative_int(raw.get("points"), 0)
        lifetime = raw.get("lifetimePoints")
        lifetime_points = _non_negative_int(lifetime, points) if lifetime is not None else points
        owned = _ordered_unique(raw.get("ownedAccessories") or [])
        owned_set = set(owned)
        equipped = [a for a in _ordered_unique(raw.get("equippedAccessories") or []) if a in owned_set]
        return cls(
            points=points,
            lifetime_points=max(lifetime_points, points),
            owned_accessories=owned,
            equipped_accessories=equipped,
            counted_tasks=raw.get("countedTasks") or [],
        )


@dataclass(frozen=True)
class LedgerSeed:
    """
    Starting state for a user id seen for the first time.

    Whether new users get promotional points or pre-owned items is a
    deployment decision; the default is an empty ledger.
    """

    points: int = 0
    owned: tuple = ()
    equipped: tuple = ()

    def __post_init__(self) -> None:
        if self.points < 0:
            raise ValueError("seed points must be non-negative")
        missing = [a for a in self.equipped if a not in self.owned]
        if missing:
            raise ValueError(f"seed equipped accessories must be owned: {missing}")

    def new_ledger(self) -> UserLedger:
        return UserLedger(
            points=self.points,
            lifetime_points=self.points,
            owned_accessories=list(self.owned),
            equipped_accessories=list(self.equipped),
            counted_tasks=[],
        )


# ------------------------------
# Store interface
# ------------------------------


class LedgerStore(ABC):
    """
    Abstract per-user ledger store.

    Implementations must be safe to call from multiple threads; callers are
    responsible for serializing read-modify-write cycles per user id (see
    LedgerLocks).
    """

    backend: str = "abstract"

    @abstractmethod
    def get(self, user_id: str) -> Optional[UserLedger]:
        """Return a private copy of the ledger, or None if never persisted."""
        raise NotImplementedError

    @abstractmethod
    def put(self, user_id: str, ledger: UserLedger) -> None:
        """Durably commit the ledger, or raise PersistenceFailure."""
        raise NotImplementedError

    @abstractmethod
    def user_ids(self) -> List[str]:
        raise NotImplementedError

    def load_or_seed(self, user_id: str, seed: LedgerSeed) -> UserLedger:
        """Lazy creation: an unseen user id starts from the seed (not persisted yet)."""
        ledger = self.get(user_id)
        if ledger is None:
            ledger = seed.new_ledger()
        return ledger

    def close(self) -> None:
        return None


# ------------------------------
# In-memory implementation
# ------------------------------


class InMemoryLedgerStore(LedgerStore):
    """Thread-safe in-memory store. State is lost on process exit."""

    backend = "memory"

    def __init__(self, initial: Optional[Mapping[str, UserLedger]] = None) -> None:
        self._g = threading.RLock()
        self._data: Dict[str, UserLedger] = {
            k: v.copy() for k, v in (initial or {}).items()
        }

    def get(self, user_id: str) -> Optional[UserLedger]:
        with self._g:
            cur = self._data.get(user_id)
            return cur.copy() if cur is not None else None

    def put(self, user_id: str, ledger: UserLedger) -> None:
        with self._g:
            self._data[user_id] = ledger.copy()

    def user_ids(self) -> List[str]:
        with self._g:
            return list(self._data.keys())


# ------------------------------
# JSON document implementation
# ------------------------------


class JsonFileLedgerStore(LedgerStore):
    """
    Whole-document JSON store.

    Layout on disk:

        {
          "default": {
            "points": 0,
            "lifetimePoints": 0,
            "ownedAccessories": ["hat_basic"],
            "equippedAccessories": ["hat_basic"],
            "countedTasks": ["notion-page-id-1", ...]
          }
        }

    Every put() rewrites the full document through a temp file in the same
    directory followed by os.replace(), so a crash mid-write never leaves a
    truncated file behind. The in-memory document is only updated after the
    replace succeeds. A present but unparseable file refuses to load
    (PersistenceFailure) instead of starting over with empty ledgers.
    """

    backend = "file"

    def __init__(self, path: str) -> None:
        self._path = os.path.abspath(path)
        self._g = threading.RLock()
        self._doc: Dict[str, Dict[str, Any]] = self._read()

    @property
    def path(self) -> str:
        return self._path

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self._path):
            logger.info("ledger file not found; starting empty", extra={"path": self._path})
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError) as exc:
            logger.error("failed to read ledger file", extra={"path": self._path}, exc_info=True)
            raise PersistenceFailure(f"ledger file {self._path} is unreadable") from exc
        if not isinstance(doc, dict):
            logger.error("ledger file is not a JSON object", extra={"path": self._path})
            raise PersistenceFailure(f"ledger file {self._path} is not a JSON object")
        out: Dict[str, Dict[str, Any]] = {}
        for uid, raw in doc.items():
            if not isinstance(raw, dict):
                raise PersistenceFailure(
                    f"ledger file {self._path}: entry is not a JSON object", user_id=str(uid)
                )
            out[str(uid)] = UserLedger.from_json(raw).to_json()
        return out

    def _write(self, doc: Dict[str, Dict[str, Any]]) -> None:
        directory = os.path.dirname(self._path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".ledger-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise

    def get(self, user_id: str) -> Optional[UserLedger]:
        with self._g:
            raw = self._doc.get(user_id)
            return UserLedger.from_json(raw) if raw is not None else None

    def put(self, user_id: str, ledger: UserLedger) -> None:
        with self._g:
            doc = dict(self._doc)
            doc[user_id] = ledger.to_json()
            try:
                self._write(doc)
            except (OSError, TypeError, ValueError) as exc:
                logger.error("ledger write failed", extra={"path": self._path, "user_id": user_id}, exc_info=True)
                raise PersistenceFailure(user_id=user_id) from exc
            self._doc = doc

    def user_ids(self) -> List[str]:
        with self._g:
            return list(self._doc.keys())


# ------------------------------
# SQLite implementation
# ------------------------------

_SQL_SCHEMA = """
CREATE TABLE IF NOT EXISTS ledgers (
  user_id     TEXT PRIMARY KEY,
  body_json   TEXT NOT NULL,
  updated_at  REAL NOT NULL DEFAULT (strftime('%s','now'))
);
"""


class SQLiteLedgerStore(LedgerStore):
    """
    SQLite-backed store: one row per user id, upserted on put().

    - Single shared connection with check_same_thread=False, guarded by a
      re-entrant lock.
    - IMMEDIATE transactions so a put() is all-or-nothing.
    """

    backend = "sqlite"

    def __init__(self, path: str = "taskpal.db") -> None:
        self._path = path
        self._g = threading.RLock()
        self._conn = sqlite3.connect(self._path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            self._conn.execute("PRAGMA busy_timeout=30000;")
        self._conn.executescript(_SQL_SCHEMA)

    @contextlib.contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._g:
            self._conn.execute("BEGIN IMMEDIATE;")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK;")
                raise
            else:
                self._conn.execute("COMMIT;")

    def get(self, user_id: str) -> Optional[UserLedger]:
        with self._g:
            row = self._conn.execute(
                "SELECT body_json FROM ledgers WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return UserLedger.from_json(json.loads(row["body_json"]))

    def put(self, user_id: str, ledger: UserLedger) -> None:
        body = json.dumps(ledger.to_json(), separators=(",", ":"), ensure_ascii=False)
        try:
            with self._tx() as conn:
                conn.execute(
                    "INSERT INTO ledgers(user_id, body_json, updated_at) "
                    "VALUES(?, ?, strftime('%s','now')) "
                    "ON CONFLICT(user_id) DO UPDATE SET "
                    "body_json = excluded.body_json, updated_at = excluded.updated_at",
                    (user_id, body),
                )
        except sqlite3.Error as exc:
            logger.error("ledger write failed", extra={"path": self._path, "user_id": user_id}, exc_info=True)
            raise PersistenceFailure(user_id=user_id) from exc

    def user_ids(self) -> List[str]:
        with self._g:
            rows = self._conn.execute("SELECT user_id FROM ledgers ORDER BY user_id").fetchall()
        return [r["user_id"] for r in rows]

    def close(self) -> None:
        with self._g:
            with contextlib.suppress(sqlite3.Error):
                self._conn.close()


# ------------------------------
# Per-user locks
# ------------------------------


class LedgerLocks:
    """
    Registry of per-user locks.

    Locks are created on first use and kept for the process lifetime; the
    number of distinct user ids is expected to be small.
    """

    def __init__(self) -> None:
        self._g = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, user_id: str) -> threading.Lock:
        with self._g:
            lk = self._locks.get(user_id)
            if lk is None:
                lk = threading.Lock()
                self._locks[user_id] = lk
            return lk

    @contextlib.contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        lk = self.lock_for(user_id)
        with lk:
            yield


# ------------------------------
# Factory
# ------------------------------


def make_ledger_store(dsn: Optional[str]) -> LedgerStore:
    """
    Factory for LedgerStore backends.

    Accepted DSNs:
      - None, "" or "mem://"          -> InMemoryLedgerStore
      - "file:///path/to/state.json"  -> JsonFileLedgerStore
      - "sqlite:///path/to/taskpal.db" -> SQLiteLedgerStore
      - "sqlite:///:memory:"          -> SQLiteLedgerStore(":memory:")
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return InMemoryLedgerStore()
    dsn = dsn.strip()
    dsn_l = dsn.lower()
    if dsn_l.startswith("file://"):
        return JsonFileLedgerStore(path=dsn[len("file://"):])
    if dsn_l.startswith("sqlite:///"):
        return SQLiteLedgerStore(path=dsn[len("sqlite:///"):])
    raise ValueError(f"Unsupported ledger store dsn: {dsn}")


__all__ = [
    "DEFAULT_USER_ID",
    "UserLedger",
    "LedgerSeed",
    "LedgerStore",
    "InMemoryLedgerStore",
    "JsonFileLedgerStore",
    "SQLiteLedgerStore",
    "LedgerLocks",
    "make_ledger_store",
]
