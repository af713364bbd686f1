# FILE: taskpal/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Mapping, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("TASKPAL_LOG_SCHEMA", "taskpal.log.v1")
_LOG_SERVICE = os.environ.get("TASKPAL_SERVICE", "taskpal")
_LOG_VERSION = os.environ.get("TASKPAL_VERSION", "0.0.0")
_LOG_ENV = os.environ.get("TASKPAL_ENV", os.environ.get("ENV", "dev"))

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = int(os.environ.get("TASKPAL_LOG_MAX_FIELD", "8192"))
    _MAX_FIELD = max(512, _MAX_FIELD)
except ValueError:
    _MAX_FIELD = 8192

# Stack emission toggle
_INCLUDE_STACK = os.environ.get("TASKPAL_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive, for headers / obvious secrets)
_DEFAULT_REDACT = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "notion_api_key",
    "notion-version",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("TASKPAL_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
}

# Envelope keys lifted out of context / record extras
_ENVELOPE_KEYS = (
    "req_id",
    "user_id",
    "accessory_id",
    "op",
    "path",
    "method",
    "status",
    "latency_ms",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "taskpal_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return f"{base[:-1]}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return k.strip().lower() in _REDACT_KEYS


def scrub_dict(d: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a shallow copy with secret-looking keys replaced by '***'."""
    out: Dict[str, Any] = {}
    for k, v in d.items():
        if _redact_key(str(k)):
            out[k] = "***"
        elif isinstance(v, Mapping):
            out[k] = scrub_dict(v)
        else:
            out[k] = _truncate(v)
    return out


def _meta_from_record(record: logging.LogRecord, *, evt_keys: Set[str]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if _redact_key(k):
            meta[k] = "***"
        elif isinstance(v, (str, int, float, bool)) or v is None:
            meta[k] = _truncate(v)
        elif isinstance(v, Mapping):
            meta[k] = scrub_dict(v)
        else:
            meta[k] = _truncate(str(v))
    return meta


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Envelope fields:
      - schema, service, version, env
      - ts, lvl, logger, msg
      - req_id, user_id, accessory_id, op
      - path, method, status, latency_ms
      - exc_type, exc_message, stack (when exc_info is set)
    Everything else passed via ``extra=`` lands in "meta", with secret-looking
    keys redacted.
    """

    def __init__(self, *, include_stack: bool = True) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        # Prefer record extras over bound context
        for key in _ENVELOPE_KEYS:
            v = getattr(record, key, None)
            if v is None:
                v = ctx.get(key)
            if v is not None:
                evt[key] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, evt_keys=set(evt.keys()))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Root / uvicorn integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure root (+ optionally uvicorn) for JSON output.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Mapping[str, str]] = None) -> str:
    """
    Get or create a request id and bind it into the logging context.
    """
    rid = None
    if headers:
        for k in ("x-request-id", "X-Request-Id"):
            if k in headers and headers[k]:
                rid = str(headers[k])[:64]
                break
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


# ---------- ASGI middleware (structured request logs) ----------
class RequestLogMiddleware:
    """
    ASGI middleware that emits one JSON "http.finish" line per request with
    req_id, method, path, status and latency_ms, and echoes the request id
    back as X-Request-Id.

    Request and response bodies are never logged.
    Usage:
        app.add_middleware(RequestLogMiddleware)
    """

    def __init__(self, app, *, logger_name: str = "taskpal.http", log_headers: bool = False):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        reset()
        rid = ensure_request_id(headers)
        bind(path=path, method=method)

        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})

        t0 = time.perf_counter()
        status_holder = {"code": None}

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
                raw_headers = list(message.get("headers") or [])
                if not any(k.lower() == b"x-request-id" for k, _ in raw_headers):
                    raw_headers.append((b"x-request-id", rid.encode("latin1")))
                message = dict(message)
                message["headers"] = raw_headers
            await send(message)

        try:
            await self.app(scope, receive, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                },
            )
            unbind("path", "method", "user_id", "accessory_id", "op")


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "ensure_request_id",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
