"""Error taxonomy shared by the storage, cache, index and store layers.

Components raise these; the tool layer turns them into error responses.
"""

from __future__ import annotations


class MemorandaError(Exception):
    """Base class. ``memo_id`` / ``field`` name the input that caused it."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        memo_id: str | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.memo_id = memo_id
        self.field = field

    def __str__(self) -> str:
        if self.memo_id:
            return f"{self.message} (memo {self.memo_id})"
        if self.field:
            return f"{self.message} (field '{self.field}')"
        return self.message


class NotFoundError(MemorandaError):
    kind = "not_found"


class ValidationError(MemorandaError):
    kind = "validation"


class IoError(MemorandaError):
    """Permission, disk-full or path problems after retries were exhausted."""

    kind = "io"


class EncodingError(MemorandaError):
    kind = "encoding"


class ConflictError(MemorandaError):
    kind = "conflict"


class IndexCorruption(MemorandaError):
    """The search index references memos it does not hold; rebuild it."""

    kind = "index_corruption"


class ScopeNotFound(MemorandaError):
    kind = "scope_not_found"
