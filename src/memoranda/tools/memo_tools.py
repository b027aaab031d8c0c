"""MCP tools for memo access.

These functions are exposed as tools to the AI agent, allowing it to
create, read, search and maintain the memos of the current repository.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from memoranda.errors import MemorandaError
from memoranda.ids import ALPHABET, ID_LENGTH
from memoranda.memo.models import MAX_QUERY_LENGTH, MAX_TITLE_LENGTH

if TYPE_CHECKING:
    from memoranda.memo.store import MemoStore

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[str]]

_ID_SCHEMA = {
    "type": "string",
    "description": "26-character memo id (ULID), as returned by create_memo or list_memos",
    "pattern": f"^[{ALPHABET}{ALPHABET.lower()}]{{{ID_LENGTH}}}$",
}

TOOLS: list[dict[str, Any]] = [
    {
        "name": "create_memo",
        "description": "Create a new memo with a title and markdown content.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "title": {
                    "type": "string",
                    "description": "Memo title",
                    "minLength": 1,
                    "maxLength": MAX_TITLE_LENGTH,
                },
                "content": {
                    "type": "string",
                    "description": "Markdown content (at most 1MB of UTF-8)",
                },
            },
            "required": ["title", "content"],
        },
    },
    {
        "name": "update_memo",
        "description": "Replace the content of an existing memo. Title and creation time are kept.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": _ID_SCHEMA,
                "content": {"type": "string", "description": "New markdown content"},
            },
            "required": ["id", "content"],
        },
    },
    {
        "name": "get_memo",
        "description": "Get a memo by id, including its full content.",
        "inputSchema": {
            "type": "object",
            "properties": {"id": _ID_SCHEMA},
            "required": ["id"],
        },
    },
    {
        "name": "delete_memo",
        "description": "Delete a memo by id. Deletion is permanent.",
        "inputSchema": {
            "type": "object",
            "properties": {"id": _ID_SCHEMA},
            "required": ["id"],
        },
    },
    {
        "name": "list_memos",
        "description": "List all memos (id, title, timestamps) without their content.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "search_memos",
        "description": (
            "Full-text search over memo titles, contents and tags. Supports quoted phrases, "
            "AND/OR/NOT, parentheses, * wildcards and tag:name filters. "
            "Results are ranked by relevance."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": 'Search query, e.g. "bearer token" OR oauth*',
                    "minLength": 1,
                    "maxLength": MAX_QUERY_LENGTH,
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "get_all_context",
        "description": (
            "Return every memo concatenated into one markdown document, "
            "for loading the whole project knowledge base at once."
        ),
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
]

_SCHEMAS = {tool["name"]: tool["inputSchema"] for tool in TOOLS}


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2)


def get_memo_tools(store: MemoStore) -> dict[str, ToolHandler]:
    """Return a dict of tool_name -> coroutine function for memo operations.

    These can be registered as MCP tools or called directly.
    """

    async def create_memo(title: str, content: str) -> str:
        memo = await store.create_memo(title, content)
        return _dumps(memo.to_dict())

    async def update_memo(id: str, content: str) -> str:
        memo = await store.update_memo(id, content)
        return _dumps(memo.to_dict())

    async def get_memo(id: str) -> str:
        memo = await store.get_memo(id)
        return _dumps(memo.to_dict())

    async def delete_memo(id: str) -> str:
        await store.delete_memo(id)
        return f"Deleted memo {id}"

    async def list_memos() -> str:
        memos = await store.list_memos()
        return _dumps({"count": len(memos), "memos": [m.to_dict() for m in memos]})

    async def search_memos(query: str) -> str:
        hits = await store.search_memos(query)
        return _dumps({"query": query, "count": len(hits), "results": [h.to_dict() for h in hits]})

    async def get_all_context() -> str:
        context = await store.get_all_context()
        return context or "(no memos yet)"

    return {
        "create_memo": create_memo,
        "update_memo": update_memo,
        "get_memo": get_memo,
        "delete_memo": delete_memo,
        "list_memos": list_memos,
        "search_memos": search_memos,
        "get_all_context": get_all_context,
    }


def _check_arguments(name: str, arguments: Any) -> dict[str, Any] | str:
    """Required and string-typed arguments; returns the kwargs or an error message."""
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return "Arguments must be a JSON object"
    schema = _SCHEMAS[name]
    for required in schema["required"]:
        if required not in arguments:
            return f"Missing required parameter '{required}'"
    kwargs = {}
    for key, spec in schema["properties"].items():
        if key not in arguments:
            continue
        if spec["type"] == "string" and not isinstance(arguments[key], str):
            return f"Parameter '{key}' must be a string"
        kwargs[key] = arguments[key]
    return kwargs


async def call_tool(
    tools: dict[str, ToolHandler], name: str, arguments: Any
) -> tuple[str, bool]:
    """Run one tool call; returns (text, is_error). Never raises for tool failures."""
    handler = tools.get(name)
    if handler is None:
        return f"Unknown tool: {name}", True

    kwargs = _check_arguments(name, arguments)
    if isinstance(kwargs, str):
        return f"Invalid arguments for {name}: {kwargs}", True

    try:
        return await handler(**kwargs), False
    except MemorandaError as e:
        logger.info("Tool %s failed: %s", name, e)
        return f"Error ({e.kind}): {e}", True
    except Exception as e:
        logger.exception("Tool %s raised an unexpected error", name)
        return f"Error (internal): {type(e).__name__}: {e}", True
