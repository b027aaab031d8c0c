"""Tests for the stdio JSON-RPC server."""

from __future__ import annotations

import asyncio
import io
import json

import pytest

from memoranda.memo.store import MemoStore
from memoranda.server import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    McpServer,
)


@pytest.fixture
def server(store: MemoStore) -> McpServer:
    return McpServer(store)


def _call(req_id: int, method: str, params: dict | None = None) -> dict:
    req = {"jsonrpc": "2.0", "id": req_id, "method": method}
    if params is not None:
        req["params"] = params
    return req


class TestHandleRequest:
    @pytest.mark.asyncio
    async def test_initialize(self, server: McpServer):
        resp = await server.handle_request(_call(1, "initialize", {}))
        assert resp["id"] == 1
        assert resp["result"]["protocolVersion"] == PROTOCOL_VERSION
        assert resp["result"]["serverInfo"]["name"] == "memoranda"

    @pytest.mark.asyncio
    async def test_notification_gets_no_response(self, server: McpServer):
        resp = await server.handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert resp is None

    @pytest.mark.asyncio
    async def test_ping(self, server: McpServer):
        assert (await server.handle_request(_call(2, "ping")))["result"] == {}

    @pytest.mark.asyncio
    async def test_tools_list(self, server: McpServer):
        resp = await server.handle_request(_call(3, "tools/list"))
        names = {t["name"] for t in resp["result"]["tools"]}
        assert names == {
            "create_memo",
            "update_memo",
            "get_memo",
            "delete_memo",
            "list_memos",
            "search_memos",
            "get_all_context",
        }

    @pytest.mark.asyncio
    async def test_tools_call(self, server: McpServer):
        resp = await server.handle_request(
            _call(4, "tools/call", {"name": "create_memo", "arguments": {"title": "t", "content": "c"}})
        )
        content = resp["result"]["content"][0]
        assert content["type"] == "text"
        assert json.loads(content["text"])["title"] == "t"
        assert "isError" not in resp["result"]

    @pytest.mark.asyncio
    async def test_tool_error_is_result_not_protocol_error(self, server: McpServer):
        resp = await server.handle_request(
            _call(5, "tools/call", {"name": "get_memo", "arguments": {"id": "nope"}})
        )
        assert "error" not in resp
        assert resp["result"]["isError"] is True

    @pytest.mark.asyncio
    async def test_unknown_method(self, server: McpServer):
        resp = await server.handle_request(_call(6, "resources/list"))
        assert resp["error"]["code"] == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_non_object_request(self, server: McpServer):
        resp = await server.handle_request([1, 2])
        assert resp["error"]["code"] == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_parse_error(self, server: McpServer):
        resp = await server.handle_line("{not json")
        assert resp["id"] is None
        assert resp["error"]["code"] == PARSE_ERROR


class TestServe:
    @pytest.mark.asyncio
    async def test_serves_until_eof(self, server: McpServer):
        reader = asyncio.StreamReader()
        lines = [
            _call(1, "initialize", {}),
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
            _call(2, "tools/call", {"name": "create_memo", "arguments": {"title": "A", "content": "alpha"}}),
            _call(3, "tools/list"),
        ]
        for req in lines:
            reader.feed_data((json.dumps(req) + "\n").encode())
        reader.feed_data(b"\n")
        reader.feed_eof()

        out = io.StringIO()
        await server.serve(reader, out)

        responses = [json.loads(line) for line in out.getvalue().splitlines()]
        assert sorted(r["id"] for r in responses) == [1, 2, 3]
        assert len(await server.store.list_memos()) == 1

    @pytest.mark.asyncio
    async def test_handler_crash_still_answers(self, server: McpServer, monkeypatch):
        async def crash(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("memoranda.server.call_tool", crash)
        reader = asyncio.StreamReader()
        reader.feed_data((json.dumps(_call(7, "tools/call", {"name": "list_memos"})) + "\n").encode())
        reader.feed_data((json.dumps(_call(8, "ping")) + "\n").encode())
        reader.feed_eof()

        out = io.StringIO()
        await server.serve(reader, out)

        responses = {r["id"]: r for r in map(json.loads, out.getvalue().splitlines())}
        assert responses[7]["error"]["code"] == INTERNAL_ERROR
        assert responses[7]["error"]["message"] == "Internal error"
        assert responses[8]["result"] == {}

    @pytest.mark.asyncio
    async def test_deeply_nested_query_is_tool_error(self, server: McpServer):
        query = "(" * 999 + "a"
        req = _call(9, "tools/call", {"name": "search_memos", "arguments": {"query": query}})
        reader = asyncio.StreamReader()
        reader.feed_data((json.dumps(req) + "\n").encode())
        reader.feed_eof()

        out = io.StringIO()
        await server.serve(reader, out)

        [resp] = [json.loads(line) for line in out.getvalue().splitlines()]
        assert resp["id"] == 9
        assert resp["result"]["isError"] is True
        assert "Error (validation)" in resp["result"]["content"][0]["text"]
