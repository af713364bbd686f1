# FILE: taskpal/task_source.py
"""
Task source adapter.

Queries the external task tracker for the current set of completed tasks and
normalizes them into TaskRecord(id, completed_at).

Completion detection: the upstream database schema is user-defined, so a
page is considered completed when the first of these strategies matches:

  1. checkbox_allow_list   a checkbox property named in `checkbox_fields`
                           is checked;
  2. status_equals_done    a status/select property named in
                           `status_fields` equals `done_value`
                           (case-insensitive);
  3. any_checkbox          any checkbox property on the page is checked.

Strategies are pure functions over the page's property mapping so they can
be tested without any network access.
"""
from __future__ import annotations

import datetime as _dt
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx

from .errors import SourceUnavailable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TaskRecord:
    id: str
    completed_at: Optional[_dt.datetime] = None


def _parse_ts(raw: Any) -> Optional[_dt.datetime]:
    if not raw or not isinstance(raw, str):
        return None
    s = raw.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return _dt.datetime.fromisoformat(s)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Completion strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompletionOptions:
    checkbox_fields: Tuple[str, ...] = ("Done", "Completed", "Checkbox")
    status_fields: Tuple[str, ...] = ("Status",)
    done_value: str = "Done"


Properties = Mapping[str, Any]


def _is_checked(prop: Any) -> bool:
    return (
        isinstance(prop, Mapping)
        and prop.get("type") == "checkbox"
        and prop.get("checkbox") is True
    )


def _option_name(prop: Any) -> Optional[str]:
    if not isinstance(prop, Mapping):
        return None
    kind = prop.get("type")
    if kind not in ("status", "select"):
        return None
    value = prop.get(kind)
    if isinstance(value, Mapping):
        name = value.get("name")
        return name if isinstance(name, str) else None
    return None


def checkbox_allow_list(props: Properties, opts: CompletionOptions) -> bool:
    return any(_is_checked(props.get(name)) for name in opts.checkbox_fields)


def status_equals_done(props: Properties, opts: CompletionOptions) -> bool:
    done = opts.done_value.strip().casefold()
    if not done:
        return False
    for name in opts.status_fields:
        value = _option_name(props.get(name))
        if value is not None and value.strip().casefold() == done:
            return True
    return False


def any_checkbox(props: Properties, opts: CompletionOptions) -> bool:
    return any(_is_checked(p) for p in props.values())


@dataclass(frozen=True)
class CompletionStrategy:
    name: str
    fn: Callable[[Properties, CompletionOptions], bool]

    def __call__(self, props: Properties, opts: CompletionOptions) -> bool:
        return bool(self.fn(props, opts))


DEFAULT_STRATEGIES: Tuple[CompletionStrategy, ...] = (
    CompletionStrategy("checkbox_allow_list", checkbox_allow_list),
    CompletionStrategy("status_equals_done", status_equals_done),
    CompletionStrategy("any_checkbox", any_checkbox),
)


def is_completed(
    page: Mapping[str, Any],
    opts: CompletionOptions,
    strategies: Iterable[CompletionStrategy] = DEFAULT_STRATEGIES,
) -> Optional[str]:
    """Return the name of the first matching strategy, or None."""
    props = page.get("properties")
    if not isinstance(props, Mapping):
        return None
    for strategy in strategies:
        if strategy(props, opts):
            return strategy.name
    return None


# ---------------------------------------------------------------------------
# Source interface
# ---------------------------------------------------------------------------


class TaskSource(ABC):
    name: str = "abstract"

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    def list_completed_tasks(self) -> List[TaskRecord]:
        """Full snapshot of completed tasks; raises SourceUnavailable."""
        raise NotImplementedError

    def check_connection(self) -> Dict[str, Any]:
        return {"status": "success", "source": self.name}

    def close(self) -> None:
        return None


class StaticTaskSource(TaskSource):
    """Fixed snapshot; used in tests and when running without credentials."""

    name = "static"

    def __init__(self, tasks: Iterable[TaskRecord] = (), *, fail: bool = False) -> None:
        self.tasks: List[TaskRecord] = list(tasks)
        self.fail = fail
        self.calls = 0

    def list_completed_tasks(self) -> List[TaskRecord]:
        self.calls += 1
        if self.fail:
            raise SourceUnavailable("static source configured to fail")
        return list(self.tasks)

    def check_connection(self) -> Dict[str, Any]:
        if self.fail:
            raise SourceUnavailable("static source configured to fail")
        return {"status": "success", "source": self.name, "totalPages": len(self.tasks)}


# ---------------------------------------------------------------------------
# Notion
# ---------------------------------------------------------------------------


@dataclass
class NotionSourceConfig:
    api_key: str = ""
    database_id: str = ""
    api_base: str = "https://api.notion.com/v1"
    notion_version: str = "2022-06-28"
    timeout_s: float = 10.0
    max_pages: int = 100
    page_size: int = 100
    completion: CompletionOptions = field(default_factory=CompletionOptions)


class NotionTaskSource(TaskSource):
    """
    Notion database adapter over the public REST API.

    The whole result set is paged through (has_more / next_cursor), bounded
    by `max_pages` so a misbehaving upstream that keeps returning has_more
    cannot loop forever. Hitting the cap is logged and the partial snapshot
    is returned; pages beyond the cap are not credited on that sync.
    """

    name = "notion"

    def __init__(
        self,
        cfg: NotionSourceConfig,
        *,
        client: Optional[httpx.Client] = None,
        strategies: Iterable[CompletionStrategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self.cfg = cfg
        self.strategies = tuple(strategies)
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=cfg.timeout_s)

    @property
    def configured(self) -> bool:
        return bool(self.cfg.api_key and self.cfg.database_id)

    # ---- HTTP helpers ----------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.cfg.api_key}",
            "Notion-Version": self.cfg.notion_version,
            "Content-Type": "application/json",
        }

    def _require_config(self) -> None:
        if not self.cfg.api_key:
            raise SourceUnavailable("NOTION_API_KEY is not set")
        if not self.cfg.database_id:
            raise SourceUnavailable("NOTION_DATABASE_ID is not set")

    def _request(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.cfg.api_base.rstrip('/')}/{path.lstrip('/')}"
        try:
            resp = self._client.request(
                method,
                url,
                headers=self._headers(),
                json=json_body,
                timeout=self.cfg.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Notion request failed: {exc.__class__.__name__}") from exc

        if resp.status_code >= 400:
            code = None
            try:
                err = resp.json()
            except ValueError:
                err = None
            if isinstance(err, dict):
                code = err.get("code")
            raise SourceUnavailable(
                f"Notion returned HTTP {resp.status_code}",
                status=resp.status_code,
                upstream_code=code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise SourceUnavailable("Notion returned malformed JSON") from exc
        if not isinstance(body, dict):
            raise SourceUnavailable("Notion returned an unexpected payload")
        return body

    def _query_pages(self, *, page_size: int, max_pages: int) -> Iterable[Dict[str, Any]]:
        cursor: Optional[str] = None
        path = f"databases/{self.cfg.database_id}/query"
        for _ in range(max_pages):
            body: Dict[str, Any] = {"page_size": page_size}
            if cursor:
                body["start_cursor"] = cursor
            data = self._request("POST", path, json_body=body)
            results = data.get("results") or []
            if not isinstance(results, list):
                raise SourceUnavailable("Notion query returned non-list results")
            for item in results:
                if isinstance(item, dict):
                    yield item
            cursor = data.get("next_cursor") or None
            if not data.get("has_more") or not cursor:
                return
        logger.warning(
            "notion paging stopped at safety cap",
            extra={"max_pages": max_pages, "database_id": self.cfg.database_id},
        )

    # ---- TaskSource API --------------------------------------------------

    def list_completed_tasks(self) -> List[TaskRecord]:
        self._require_config()
        t0 = time.perf_counter()
        out: List[TaskRecord] = []
        seen = set()
        scanned = 0
        for page in self._query_pages(page_size=self.cfg.page_size, max_pages=self.cfg.max_pages):
            scanned += 1
            if page.get("archived") or page.get("in_trash"):
                continue
            pid = page.get("id")
            if not isinstance(pid, str) or not pid or pid in seen:
                continue
            if is_completed(page, self.cfg.completion, self.strategies) is None:
                continue
            seen.add(pid)
            out.append(TaskRecord(id=pid, completed_at=_parse_ts(page.get("last_edited_time"))))
        logger.debug(
            "notion snapshot fetched",
            extra={
                "scanned": scanned,
                "completed": len(out),
                "elapsed_ms": round((time.perf_counter() - t0) * 1000.0, 3),
            },
        )
        return out

    def check_connection(self) -> Dict[str, Any]:
        """
        Diagnose credentials and schema: database title, property names, and
        whether the configured status / checkbox fields exist.
        """
        self._require_config()
        sample = self._request(
            "POST",
            f"databases/{self.cfg.database_id}/query",
            json_body={"page_size": 1},
        )
        database = self._request("GET", f"databases/{self.cfg.database_id}")
        props = database.get("properties") or {}
        title_parts = database.get("title") or []
        title = "".join(
            p.get("plain_text", "") for p in title_parts if isinstance(p, dict)
        ) or "Untitled"
        opts = self.cfg.completion
        checkbox_props = sorted(
            name for name, p in props.items() if isinstance(p, dict) and p.get("type") == "checkbox"
        )
        return {
            "status": "success",
            "message": "Connected to Notion successfully",
            "source": self.name,
            "databaseId": self.cfg.database_id,
            "databaseName": title,
            "totalPages": len(sample.get("results") or []),
            "properties": sorted(props.keys()),
            "hasStatusField": any(name in props for name in opts.status_fields),
            "hasCheckboxField": any(name in props for name in opts.checkbox_fields),
            "checkboxProperties": checkbox_props,
        }

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def make_task_source(settings: Any, *, client: Optional[httpx.Client] = None) -> TaskSource:
    """
    Build the task source from Settings.

    Without credentials and with `offline_ok`, an empty StaticTaskSource is
    used so local development works without a Notion workspace. Otherwise a
    NotionTaskSource is returned even when unconfigured; its calls then raise
    SourceUnavailable, which the service degrades to cached state.
    """
    if not settings.notion_configured and settings.offline_ok:
        logger.info("notion credentials missing; using an empty offline task source")
        return StaticTaskSource()
    cfg = NotionSourceConfig(
        api_key=settings.notion_api_key,
        database_id=settings.notion_database_id,
        api_base=settings.notion_api_base,
        notion_version=settings.notion_version,
        timeout_s=settings.source_timeout_s,
        max_pages=settings.source_max_pages,
        page_size=settings.source_page_size,
        completion=CompletionOptions(
            checkbox_fields=tuple(settings.checkbox_fields),
            status_fields=tuple(settings.status_fields),
            done_value=settings.done_value,
        ),
    )
    return NotionTaskSource(cfg, client=client)


__all__ = [
    "TaskRecord",
    "CompletionOptions",
    "CompletionStrategy",
    "DEFAULT_STRATEGIES",
    "checkbox_allow_list",
    "status_equals_done",
    "any_checkbox",
    "is_completed",
    "TaskSource",
    "StaticTaskSource",
    "NotionSourceConfig",
    "NotionTaskSource",
    "make_task_source",
]
