"""
MCP Server: memoranda, project memos as agent tools.

Protocol: JSON-RPC 2.0 over stdio (NDJSON), one message per line.
Logs go to stderr; stdout carries protocol messages only.

Usage:
  memoranda serve
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from memoranda import __version__
from memoranda.memo.store import MemoStore
from memoranda.tools.memo_tools import TOOLS, ToolHandler, call_tool, get_memo_tools

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────

SERVER_NAME = "memoranda"
PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# ── JSON-RPC 2.0 helpers ─────────────────────────────────────


def jsonrpc_result(req_id, result):
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def jsonrpc_error(req_id, code, message):
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def _request_id(line: str):
    try:
        req = json.loads(line)
    except json.JSONDecodeError:
        return None
    return req.get("id") if isinstance(req, dict) else None


# ── Request handler ──────────────────────────────────────────


class McpServer:
    """Dispatches JSON-RPC requests to the memo tools of one store."""

    def __init__(self, store: MemoStore) -> None:
        self.store = store
        self.tools: dict[str, ToolHandler] = get_memo_tools(store)
        self._write_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    async def handle_request(self, req: Any) -> dict | None:
        if not isinstance(req, dict):
            return jsonrpc_error(None, INVALID_REQUEST, "Request must be a JSON object")

        req_id = req.get("id")
        method = req.get("method", "")

        # Notifications (no id) get no response
        if req_id is None:
            if method == "notifications/initialized":
                logger.info("Client initialized")
            return None

        if method == "initialize":
            return jsonrpc_result(req_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": SERVER_NAME, "version": __version__},
            })

        if method == "ping":
            return jsonrpc_result(req_id, {})

        if method == "tools/list":
            return jsonrpc_result(req_id, {"tools": TOOLS})

        if method == "tools/call":
            params = req.get("params") or {}
            if not isinstance(params, dict):
                return jsonrpc_error(req_id, INVALID_PARAMS, "params must be an object")
            tool_name = params.get("name", "")
            text, is_error = await call_tool(self.tools, tool_name, params.get("arguments"))
            result: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
            if is_error:
                result["isError"] = True
            return jsonrpc_result(req_id, result)

        return jsonrpc_error(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    async def handle_line(self, line: str) -> dict | None:
        """Decode one NDJSON line and produce its response (if any)."""
        try:
            req = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Parse error: %s", e)
            return jsonrpc_error(None, PARSE_ERROR, "Parse error")
        if isinstance(req, dict):
            logger.debug("<- %s", req.get("method", "?"))
        return await self.handle_request(req)

    async def _respond(self, line: str, writer) -> None:
        try:
            response = await self.handle_line(line)
        except Exception:
            logger.exception("Handler error")
            response = jsonrpc_error(_request_id(line), INTERNAL_ERROR, "Internal error")
        if response is None:
            return
        async with self._write_lock:
            writer.write(json.dumps(response, ensure_ascii=False) + "\n")
            writer.flush()

    # ── Stdio transport (NDJSON) ─────────────────────────────

    async def serve(self, reader: asyncio.StreamReader, writer=None) -> None:
        """Read requests until EOF; each request is handled in its own task."""
        if writer is None:
            writer = sys.stdout
        logger.info("MCP server %s %s listening on stdio", SERVER_NAME, __version__)
        while True:
            try:
                raw = await reader.readline()
            except ValueError as e:
                logger.warning("Dropping oversized request: %s", e)
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            task = asyncio.create_task(self._respond(line, writer))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("MCP server shutting down")


async def open_stdin_reader() -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=4 * 1024 * 1024)
    protocol = asyncio.StreamReaderProtocol(reader)
    await asyncio.get_running_loop().connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def run(store: MemoStore) -> None:
    server = McpServer(store)
    reader = await open_stdin_reader()
    await server.serve(reader)
