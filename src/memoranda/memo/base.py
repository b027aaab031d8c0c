"""Persistence protocol the store is written against."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from memoranda.memo.models import Memo, MemoMeta


@runtime_checkable
class MemoBackend(Protocol):
    """Protocol that all memo storage backends must implement.

    Every method raises ``NotFoundError`` for unknown ids. Mutations must be
    atomic from an outside reader's point of view.
    """

    def list(self) -> AsyncIterator[MemoMeta]:
        """Yield metadata for every memo in scope, without loading content."""
        ...

    async def read(self, memo_id: str) -> Memo:
        """Load the full memo, including the modification time it was read at."""
        ...

    async def mtime(self, memo_id: str) -> int:
        """Current modification time (ns) of the memo's backing file."""
        ...

    async def write(self, title: str, content: str) -> Memo:
        """Persist a new memo under a freshly generated id."""
        ...

    async def update(self, memo_id: str, content: str) -> Memo:
        """Replace the content, keeping id, title and created_at."""
        ...

    async def delete(self, memo_id: str) -> None: ...
