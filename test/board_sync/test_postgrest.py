"""
Tests for the PostgREST persistence adapter using httpx's mock transport.
"""

import json

import httpx
import pytest

from board_sync.config import SyncSettings
from board_sync.persistence import NETWORK_ERROR, UNIQUE_VIOLATION
from board_sync.postgrest import PostgrestPersistence, filter_params


class Recorder:
    """Mock transport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.requests = []
        self.responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def adapter(recorder, **kwargs):
    client = httpx.AsyncClient(base_url="https://proj.example/rest/v1",
                               transport=httpx.MockTransport(recorder))
    return PostgrestPersistence("https://proj.example/rest/v1", "anon", client=client, **kwargs)


class TestFilterParams:
    """Query-string translation."""

    def test_equality_in_and_null(self):
        params = filter_params({"board_id": "b-1", "id": ["a", 'b"c'], "assignee_id": None,
                                "is_read": False})
        assert params == [
            ("board_id", "eq.b-1"),
            ("id", 'in.("a","b\\"c")'),
            ("assignee_id", "is.null"),
            ("is_read", "eq.false"),
        ]


class TestPostgrestPersistence:
    """Requests and result mapping."""

    @pytest.mark.asyncio
    async def test_select_builds_query_and_headers(self):
        recorder = Recorder(httpx.Response(200, json=[{"id": "t-1"}]))
        store = adapter(recorder, access_token="user-jwt")

        result = await store.select("tasks", filters={"board_id": "b-1"}, order="position")

        assert result.ok and result.data == [{"id": "t-1"}]
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/tasks"
        assert request.url.params["board_id"] == "eq.b-1"
        assert request.url.params["order"] == "position.asc"
        assert request.url.params["select"] == "*"
        assert request.headers["apikey"] == "anon"
        assert request.headers["Authorization"] == "Bearer user-jwt"

    @pytest.mark.asyncio
    async def test_insert_asks_for_representation(self):
        recorder = Recorder(httpx.Response(201, json=[{"id": "c-1", "content": "hi"}]))
        store = adapter(recorder)

        result = await store.insert("comments", [{"id": "c-1", "content": "hi"}])

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == [{"id": "c-1", "content": "hi"}]
        assert result.first()["id"] == "c-1"

    @pytest.mark.asyncio
    async def test_update_and_delete_use_filters(self):
        recorder = Recorder(httpx.Response(200, json=[{"id": "t-1", "status": "DONE"}]),
                            httpx.Response(204))
        store = adapter(recorder)

        updated = await store.update("tasks", {"status": "DONE"}, filters={"id": "t-1"})
        deleted = await store.delete("tasks", filters={"id": "t-1"})

        assert recorder.requests[0].method == "PATCH"
        assert recorder.requests[0].url.params["id"] == "eq.t-1"
        assert updated.first()["status"] == "DONE"
        assert recorder.requests[1].method == "DELETE"
        assert deleted.ok and deleted.data == []

    @pytest.mark.asyncio
    async def test_unfiltered_writes_refused(self):
        recorder = Recorder()
        store = adapter(recorder)
        assert not (await store.update("tasks", {"title": "x"}, filters={})).ok
        assert not (await store.delete("tasks", filters={})).ok
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_error_code_surfaced(self):
        recorder = Recorder(httpx.Response(409, json={
            "code": "23505", "message": "duplicate key value violates unique constraint",
            "details": "Key (board_id, user_id) already exists.",
        }))
        result = await adapter(recorder).insert("board_members", [{"board_id": "b", "user_id": "u"}])

        assert result.error.code == UNIQUE_VIOLATION
        assert result.error.details["status_code"] == 409
        assert "duplicate key" in result.error.message

    @pytest.mark.asyncio
    async def test_non_json_error(self):
        recorder = Recorder(httpx.Response(502, text="Bad Gateway"))
        result = await adapter(recorder).select("tasks")
        assert result.error.code == "502"
        assert result.error.message == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(base_url="https://proj.example/rest/v1",
                                   transport=httpx.MockTransport(handler))
        store = PostgrestPersistence("https://proj.example/rest/v1", client=client)
        result = await store.select("tasks")
        assert result.error.code == NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_from_settings_schema_headers(self):
        recorder = Recorder(httpx.Response(200, json=[]))
        settings = SyncSettings(url="https://proj.example", api_key="anon", db_schema="boards")
        client = httpx.AsyncClient(base_url=settings.rest_url, transport=httpx.MockTransport(recorder))

        async with PostgrestPersistence.from_settings(settings, client=client) as store:
            await store.select("tasks")

        assert recorder.requests[0].headers["Accept-Profile"] == "boards"
        assert recorder.requests[0].headers["Authorization"] == "Bearer anon"
