# taskpal/config.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

from .storage import LedgerSeed


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(*names: str, default: str) -> str:
    for name in names:
        raw = os.environ.get(name)
        if raw is not None and raw.strip() != "":
            return raw.strip()
    return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path is empty or missing on disk.
      - Only accept dict at top-level.
      - Lists are accepted (catalog field lists, seed inventories); other
        nested structures are coerced via str().
    """
    if not path:
        return {}
    if not os.path.exists(path):
        _log.warning("config file %s not found; using defaults", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool, list)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# Fields that never leave the process (excluded from config_hash / health).
_SECRET_FIELDS: FrozenSet[str] = frozenset({"notion_api_key"})


# ---------------------------------------------------------------------------
# Settings model (single snapshot, read once at start)
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    version: str = "0.3.0"
    app_name: str = "taskpal"
    config_origin: str = "defaults"

    # --- HTTP -------------------------------------------------------------

    host: str = "127.0.0.1"
    port: int = 4000
    cors_origins: Tuple[str, ...] = ("*",)
    enable_docs: bool = False

    # --- External task source ---------------------------------------------

    notion_api_key: str = ""
    notion_database_id: str = ""
    notion_api_base: str = "https://api.notion.com/v1"
    notion_version: str = "2022-06-28"
    # Completion predicate knobs.
    checkbox_fields: Tuple[str, ...] = ("Done", "Completed", "Checkbox")
    status_fields: Tuple[str, ...] = ("Status",)
    done_value: str = "Done"
    # Safety bounds for the source adapter.
    source_timeout_s: float = 10.0
    source_max_pages: int = 100
    source_page_size: int = 100
    # With no credentials configured, serve an empty snapshot instead of
    # reporting the source as unavailable.
    offline_ok: bool = False

    # --- Ledger policy ----------------------------------------------------

    points_per_task: int = 10
    starting_points: int = 0
    starting_owned: Tuple[str, ...] = ()
    starting_equipped: Tuple[str, ...] = ()

    # --- Persistence / catalog --------------------------------------------

    store_dsn: str = "file://data/userState.json"
    catalog_path: str = ""

    # --- Observability ----------------------------------------------------

    log_level: str = "INFO"
    metrics_enabled: bool = True

    @field_validator("points_per_task", "starting_points")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("source_max_pages", "source_page_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("checkbox_fields", "status_fields", "starting_owned", "starting_equipped", "cors_origins", mode="before")
    @classmethod
    def _split_lists(cls, v: Any) -> Any:
        if isinstance(v, str):
            return tuple(x.strip() for x in v.split(",") if x.strip())
        return v

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def notion_configured(self) -> bool:
        return bool(self.notion_api_key and self.notion_database_id)

    def ledger_seed(self) -> LedgerSeed:
        return LedgerSeed(
            points=self.starting_points,
            owned=tuple(self.starting_owned),
            equipped=tuple(self.starting_equipped),
        )

    def public_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        for k in _SECRET_FIELDS:
            data.pop(k, None)
        return data

    def config_hash(self) -> str:
        """
        Stable hash of the non-secret settings; safe to expose in headers and
        logs.
        """
        payload = json.dumps(self.public_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.blake2s(payload.encode("utf-8"), digest_size=16).hexdigest()


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by TASKPAL_CONFIG_PATH.
      3. Environment variables. The Notion / PORT / POINTS_PER_TASK names
         match the variables existing deployments already export.

    Out-of-range numeric env values are ignored rather than rejected.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("TASKPAL_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # will enforce extra="forbid"
        origin = "yaml"

    # 2) Environment overrides

    merged["version"] = _env_str("TASKPAL_VERSION", default=merged["version"])

    # HTTP
    merged["host"] = _env_str("TASKPAL_HOST", default=merged["host"])
    port = _env_int("PORT", merged["port"])
    if 0 < port < 65536:
        merged["port"] = port
    merged["cors_origins"] = _env_list("TASKPAL_CORS_ORIGINS", tuple(merged["cors_origins"]))
    merged["enable_docs"] = _env_bool("TASKPAL_ENABLE_DOCS", merged["enable_docs"])

    # Source
    merged["notion_api_key"] = _env_str(
        "NOTION_API_KEY", "NOTION_API_TOKEN", default=merged["notion_api_key"]
    )
    merged["notion_database_id"] = _env_str("NOTION_DATABASE_ID", default=merged["notion_database_id"])
    merged["notion_api_base"] = _env_str("NOTION_API_BASE", default=merged["notion_api_base"])
    merged["notion_version"] = _env_str("NOTION_VERSION", default=merged["notion_version"])
    merged["done_value"] = _env_str("NOTION_DONE_VALUE", default=merged["done_value"])

    status_prop = os.environ.get("NOTION_STATUS_PROPERTY", "").strip()
    status_fields: List[str] = list(_env_list("TASKPAL_STATUS_FIELDS", tuple(merged["status_fields"])))
    if status_prop and status_prop not in status_fields:
        status_fields.insert(0, status_prop)
    merged["status_fields"] = tuple(status_fields)
    merged["checkbox_fields"] = _env_list("TASKPAL_CHECKBOX_FIELDS", tuple(merged["checkbox_fields"]))

    timeout = _env_float("TASKPAL_SOURCE_TIMEOUT_S", merged["source_timeout_s"])
    if 0.1 <= timeout <= 300.0:
        merged["source_timeout_s"] = timeout
    max_pages = _env_int("TASKPAL_SOURCE_MAX_PAGES", merged["source_max_pages"])
    if 1 <= max_pages <= 10_000:
        merged["source_max_pages"] = max_pages
    page_size = _env_int("TASKPAL_SOURCE_PAGE_SIZE", merged["source_page_size"])
    if 1 <= page_size <= 100:
        merged["source_page_size"] = page_size
    merged["offline_ok"] = _env_bool("TASKPAL_OFFLINE_OK", merged["offline_ok"])

    # Ledger policy
    ppt = _env_int("POINTS_PER_TASK", merged["points_per_task"])
    if ppt >= 0:
        merged["points_per_task"] = ppt
    start = _env_int("TASKPAL_START_POINTS", merged["starting_points"])
    if start >= 0:
        merged["starting_points"] = start
    merged["starting_owned"] = _env_list("TASKPAL_START_OWNED", tuple(merged["starting_owned"]))
    merged["starting_equipped"] = _env_list("TASKPAL_START_EQUIPPED", tuple(merged["starting_equipped"]))

    # Persistence / catalog
    merged["store_dsn"] = _env_str("TASKPAL_STORE_DSN", default=merged["store_dsn"])
    merged["catalog_path"] = _env_str("TASKPAL_CATALOG_PATH", default=merged["catalog_path"])

    # Observability
    merged["log_level"] = _env_str("TASKPAL_LOG_LEVEL", default=merged["log_level"]).upper()
    merged["metrics_enabled"] = not _env_bool("TASKPAL_METRICS_DISABLE", not merged["metrics_enabled"])

    merged["config_origin"] = origin
    return Settings(**merged)


_settings: Optional[Settings] = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Process-wide settings, loaded on first call and never reloaded."""
    global _settings
    with _settings_lock:
        if _settings is None:
            _settings = load_settings()
        return _settings


__all__ = ["Settings", "load_settings", "get_settings"]
