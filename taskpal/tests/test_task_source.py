# taskpal/tests/test_task_source.py
import json

import httpx
import pytest

from taskpal.config import Settings
from taskpal.errors import SourceUnavailable
from taskpal.task_source import (
    CompletionOptions,
    NotionSourceConfig,
    NotionTaskSource,
    StaticTaskSource,
    is_completed,
    make_task_source,
)

OPTS = CompletionOptions()


def _checkbox(value):
    return {"type": "checkbox", "checkbox": value}


def _status(name, kind="status"):
    return {"type": kind, kind: {"name": name} if name is not None else None}


def _page(pid, **props):
    return {"object": "page", "id": pid, "last_edited_time": "2024-05-01T10:00:00.000Z", "properties": props}


# ---------------------------------------------------------------------------
# Completion strategies
# ---------------------------------------------------------------------------


def test_checkbox_allow_list_wins_first():
    page = _page("p1", Done=_checkbox(True), Status=_status("Done"))
    assert is_completed(page, OPTS) == "checkbox_allow_list"


def test_status_equals_done_case_insensitive():
    assert is_completed(_page("p1", Status=_status("done")), OPTS) == "status_equals_done"
    assert is_completed(_page("p1", Status=_status(" DONE ", kind="select")), OPTS) == "status_equals_done"
    assert is_completed(_page("p1", Status=_status("In progress")), OPTS) is None
    assert is_completed(_page("p1", Status=_status(None)), OPTS) is None


def test_any_checkbox_fallback():
    page = _page("p1", Shipped=_checkbox(True), Status=_status("Todo"))
    assert is_completed(page, OPTS) == "any_checkbox"


def test_unchecked_page_not_completed():
    page = _page("p1", Done=_checkbox(False), Other=_checkbox(False))
    assert is_completed(page, OPTS) is None


def test_custom_fields():
    opts = CompletionOptions(checkbox_fields=("Finished",), status_fields=("Stage",), done_value="Shipped")
    assert is_completed(_page("p1", Stage=_status("shipped", kind="select")), opts) == "status_equals_done"
    assert is_completed(_page("p1", Status=_status("Shipped")), opts) is None


def test_page_without_properties():
    assert is_completed({"id": "p1"}, OPTS) is None


# ---------------------------------------------------------------------------
# Notion adapter
# ---------------------------------------------------------------------------


def _source(handler, **cfg):
    params = {"api_key": "secret_x", "database_id": "db1", "api_base": "https://notion.test/v1"}
    params.update(cfg)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return NotionTaskSource(NotionSourceConfig(**params), client=client)


def test_pages_through_results():
    seen_bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/databases/db1/query"
        assert request.headers["Authorization"] == "Bearer secret_x"
        assert request.headers["Notion-Version"] == "2022-06-28"
        body = json.loads(request.content)
        seen_bodies.append(body)
        if "start_cursor" not in body:
            return httpx.Response(200, json={
                "results": [_page("a", Done=_checkbox(True)), _page("b", Done=_checkbox(False))],
                "has_more": True,
                "next_cursor": "c2",
            })
        return httpx.Response(200, json={
            "results": [_page("c", Status=_status("Done")), _page("a", Done=_checkbox(True))],
            "has_more": False,
            "next_cursor": None,
        })

    tasks = _source(handler, page_size=2).list_completed_tasks()
    assert [t.id for t in tasks] == ["a", "c"]
    assert tasks[0].completed_at is not None
    assert seen_bodies == [{"page_size": 2}, {"page_size": 2, "start_cursor": "c2"}]


def test_archived_pages_skipped():
    def handler(request):
        return httpx.Response(200, json={
            "results": [
                dict(_page("a", Done=_checkbox(True)), archived=True),
                dict(_page("b", Done=_checkbox(True)), in_trash=True),
                _page("c", Done=_checkbox(True)),
            ],
            "has_more": False,
        })

    assert [t.id for t in _source(handler).list_completed_tasks()] == ["c"]


def test_paging_stops_at_cap():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(200, json={
            "results": [_page(f"p{calls['n']}", Done=_checkbox(True))],
            "has_more": True,
            "next_cursor": f"c{calls['n']}",
        })

    tasks = _source(handler, max_pages=3).list_completed_tasks()
    assert calls["n"] == 3
    assert [t.id for t in tasks] == ["p1", "p2", "p3"]


def test_http_error_raises_source_unavailable():
    def handler(request):
        return httpx.Response(401, json={"object": "error", "code": "unauthorized", "message": "bad token"})

    with pytest.raises(SourceUnavailable) as ei:
        _source(handler).list_completed_tasks()
    assert ei.value.details["status"] == 401
    assert ei.value.details["upstream_code"] == "unauthorized"
    assert "secret_x" not in ei.value.message


def test_transport_error_raises_source_unavailable():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(SourceUnavailable):
        _source(handler).list_completed_tasks()


def test_malformed_body_raises_source_unavailable():
    def handler(request):
        return httpx.Response(200, content=b"not json")

    with pytest.raises(SourceUnavailable):
        _source(handler).list_completed_tasks()


def test_missing_credentials():
    def handler(request):  # pragma: no cover - never reached
        raise AssertionError("no request expected")

    src = _source(handler, api_key="")
    assert src.configured is False
    with pytest.raises(SourceUnavailable):
        src.list_completed_tasks()
    with pytest.raises(SourceUnavailable):
        _source(handler, database_id="").check_connection()


def test_check_connection_report():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json={
                "object": "database",
                "title": [{"plain_text": "My "}, {"plain_text": "Tasks"}],
                "properties": {
                    "Name": {"type": "title"},
                    "Status": {"type": "status"},
                    "Done": {"type": "checkbox"},
                    "Urgent": {"type": "checkbox"},
                },
            })
        return httpx.Response(200, json={"results": [_page("a")], "has_more": True})

    report = _source(handler).check_connection()
    assert report["status"] == "success"
    assert report["databaseName"] == "My Tasks"
    assert report["totalPages"] == 1
    assert report["hasStatusField"] is True
    assert report["hasCheckboxField"] is True
    assert report["checkboxProperties"] == ["Done", "Urgent"]
    assert report["properties"] == ["Done", "Name", "Status", "Urgent"]


# ---------------------------------------------------------------------------
# Factory / static source
# ---------------------------------------------------------------------------


def test_static_source_failure_mode():
    src = StaticTaskSource(fail=True)
    with pytest.raises(SourceUnavailable):
        src.list_completed_tasks()
    assert src.calls == 1


def test_factory_offline_ok_without_credentials():
    src = make_task_source(Settings(offline_ok=True))
    assert isinstance(src, StaticTaskSource)
    assert src.list_completed_tasks() == []


def test_factory_builds_notion_source():
    s = Settings(
        notion_api_key="k",
        notion_database_id="db",
        status_fields=("Stage",),
        done_value="Shipped",
        source_page_size=50,
    )
    src = make_task_source(s)
    try:
        assert isinstance(src, NotionTaskSource)
        assert src.configured is True
        assert src.cfg.page_size == 50
        assert src.cfg.completion.status_fields == ("Stage",)
        assert src.cfg.completion.done_value == "Shipped"
    finally:
        src.close()


def test_factory_unconfigured_notion_source_reports_unavailable():
    src = make_task_source(Settings())
    try:
        assert isinstance(src, NotionTaskSource)
        assert src.configured is False
        with pytest.raises(SourceUnavailable):
            src.list_completed_tasks()
    finally:
        src.close()
