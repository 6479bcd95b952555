import json
from urllib.parse import parse_qs

import httpx
import pytest

from core.settings import RemoteSettings
from services.errors import AuthError, NotFound, SyncProtocolError, SyncUnavailable, TaskMirrorError
from services.remote import ReadClient, TaskDraft, WriteClient
from services.todoist_client import TodoistClient, parse_snapshot


SETTINGS = RemoteSettings(sync_url="https://remote.test/sync", api_url="https://remote.test/api")

SYNC_PAYLOAD = {
    "sync_token": "tok-1",
    "full_sync": True,
    "items": [
        {
            "id": "t1",
            "content": "Buy milk",
            "description": "",
            "project_id": "p1",
            "priority": 4,
            "labels": ["errand"],
            "due": {"date": "2024-05-02", "string": "tomorrow", "is_recurring": False},
            "checked": False,
            "added_at": "2024-05-01T08:00:00Z",
        },
        {"id": "t2", "content": "Call mum", "project_id": "p1", "checked": True, "completed_at": "2024-05-01T10:00:00.123Z"},
        {"id": "t3", "is_deleted": True},
    ],
    "projects": [
        {"id": "p1", "name": "Inbox", "inbox_project": True, "child_order": 0},
        {"id": "p2", "name": "Old", "is_archived": True},
    ],
    "labels": [{"id": "l1", "name": "errand", "item_order": 1}],
    "notes": [
        {"id": "n1", "item_id": "t1", "content": "2%", "posted_at": "2024-05-01T09:00:00Z"},
        {"id": "n2", "item_id": "t1", "content": "gone", "is_deleted": True},
    ],
}


def _client(handler):
    return TodoistClient("secret", settings=SETTINGS, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_client_implements_both_capabilities():
    client = TodoistClient("secret", settings=SETTINGS)
    assert isinstance(client, ReadClient)
    assert isinstance(client, WriteClient)


@pytest.mark.asyncio
async def test_full_snapshot_is_one_request():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=SYNC_PAYLOAD)

    async with _client(handler) as client:
        snapshot = await client.fetch_snapshot(None)

    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer secret"
    form = parse_qs(request.content.decode())
    assert form["sync_token"] == ["*"]
    assert json.loads(form["resource_types"][0]) == ["items", "projects", "labels", "notes"]

    assert snapshot.sync_token == "tok-1"
    assert snapshot.is_full_sync is True
    assert [task.id for task in snapshot.tasks] == ["t1", "t2"]
    assert snapshot.deleted_task_ids == ["t3"]
    assert snapshot.deleted_project_ids == ["p2"]
    assert snapshot.deleted_comment_ids == ["n2"]
    assert [p.id for p in snapshot.projects] == ["p1"]
    assert snapshot.projects[0].is_inbox_project is True
    assert [label.name for label in snapshot.labels] == ["errand"]
    assert [c.id for c in snapshot.comments_by_task_id["t1"]] == ["n1"]
    assert snapshot.comments_by_task_id["t2"] == []


@pytest.mark.asyncio
async def test_task_fields_are_mapped():
    snapshot = parse_snapshot(SYNC_PAYLOAD, "*")
    first, second = snapshot.tasks

    assert first.priority == 4
    assert first.labels == ["errand"]
    assert first.due_date == "2024-05-02"
    assert first.due_string == "tomorrow"
    assert first.created_at.isoformat() == "2024-05-01T08:00:00+00:00"
    assert first.content_hash
    assert second.is_completed is True
    assert second.completed_at.microsecond == 123000


@pytest.mark.asyncio
async def test_incremental_request_sends_checkpoint():
    tokens = []

    def handler(request):
        tokens.append(parse_qs(request.content.decode())["sync_token"][0])
        return httpx.Response(200, json={"sync_token": "tok-2", "full_sync": False, "items": []})

    async with _client(handler) as client:
        snapshot = await client.fetch_snapshot("tok-1")

    assert tokens == ["tok-1"]
    assert snapshot.is_full_sync is False
    assert snapshot.tasks == []


@pytest.mark.asyncio
async def test_expired_checkpoint_yields_full_sync():
    def handler(request):
        return httpx.Response(200, json={"sync_token": "tok-9", "full_sync": True, "items": []})

    async with _client(handler) as client:
        snapshot = await client.fetch_snapshot("tok-old")

    assert snapshot.is_full_sync is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error",
    [
        (429, SyncUnavailable),
        (503, SyncUnavailable),
        (401, AuthError),
        (403, AuthError),
        (404, NotFound),
        (400, TaskMirrorError),
    ],
)
async def test_status_mapping(status, error):
    def handler(request):
        return httpx.Response(status, json={"error": "nope"})

    async with _client(handler) as client:
        with pytest.raises(error) as excinfo:
            await client.fetch_snapshot(None)
    assert excinfo.value.status == status


@pytest.mark.asyncio
async def test_transport_errors_are_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(SyncUnavailable) as excinfo:
            await client.fetch_snapshot(None)
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_undecodable_body_is_protocol_error():
    def handler(request):
        return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"plain, not gzip")

    async with _client(handler) as client:
        with pytest.raises(SyncProtocolError):
            await client.fetch_snapshot(None)


@pytest.mark.asyncio
async def test_other_http_errors_are_retryable():
    def handler(request):
        raise httpx.TooManyRedirects("redirect loop", request=request)

    async with _client(handler) as client:
        with pytest.raises(SyncUnavailable):
            await client.fetch_snapshot(None)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"full_sync": True, "items": []}),
        httpx.Response(200, json={"sync_token": "x", "items": {"id": "t1"}}),
        httpx.Response(200, json={"sync_token": "x", "items": [{"content": "no id"}]}),
    ],
)
async def test_malformed_payload_is_protocol_error(response):
    async with _client(lambda request: response) as client:
        with pytest.raises(SyncProtocolError):
            await client.fetch_snapshot(None)


@pytest.mark.asyncio
async def test_missing_api_key_is_auth_error():
    client = TodoistClient(None, settings=RemoteSettings(api_key_env="TASKMIRROR_TEST_UNSET_KEY"))

    with pytest.raises(AuthError):
        await client.fetch_snapshot(None)


@pytest.mark.asyncio
async def test_fetch_comments_follows_cursor():
    pages = {
        None: {"results": [{"id": "c1", "task_id": "t1", "content": "a"}], "next_cursor": "next"},
        "next": {"results": [{"id": "c2", "task_id": "t1", "content": "b"}], "next_cursor": None},
    }

    def handler(request):
        assert request.url.path == "/api/comments"
        assert request.url.params["task_id"] == "t1"
        return httpx.Response(200, json=pages[request.url.params.get("cursor")])

    async with _client(handler) as client:
        comments = await client.fetch_comments("t1")

    assert [c.id for c in comments] == ["c1", "c2"]


@pytest.mark.asyncio
async def test_write_operations():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.url.path == "/api/tasks" and request.method == "POST":
            body = json.loads(request.content)
            assert body == {"content": "New", "priority": 3, "due_string": "today"}
            return httpx.Response(200, json={"id": "t9", "content": body["content"], "priority": 3})
        if request.url.path == "/api/tasks/t9" and request.method == "POST":
            return httpx.Response(200, json={"id": "t9", "content": "Renamed"})
        if request.url.path == "/api/comments":
            return httpx.Response(200, json={"id": "c1", "task_id": "t9", "content": "hi"})
        if request.url.path == "/api/tasks/missing":
            return httpx.Response(404)
        return httpx.Response(204)

    async with _client(handler) as client:
        created = await client.create_task(
            TaskDraft(content="New", priority=3, due_string="today", due_date="2024-01-01")
        )
        updated = await client.update_task("t9", {"content": "Renamed"})
        assert await client.complete_task("t9") is True
        assert await client.reopen_task("t9") is True
        comment = await client.add_comment("t9", "hi")
        assert await client.delete_task("t9") is True
        with pytest.raises(NotFound):
            await client.delete_task("missing")

    assert created.id == "t9" and created.priority == 3
    assert updated.content == "Renamed"
    assert comment.task_id == "t9"
    assert ("POST", "/api/tasks/t9/close") in calls
    assert ("POST", "/api/tasks/t9/reopen") in calls
    assert ("DELETE", "/api/tasks/t9") in calls


@pytest.mark.asyncio
async def test_connection_check():
    async with _client(lambda request: httpx.Response(200, json={"sync_token": "x"})) as client:
        assert await client.test_connection() is True
    async with _client(lambda request: httpx.Response(401)) as client:
        assert await client.test_connection() is False
