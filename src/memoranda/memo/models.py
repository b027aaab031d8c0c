"""Memo data model and input validation."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from memoranda.errors import ValidationError
from memoranda.ids import is_valid_id

MIN_TITLE_LENGTH = 1
MAX_TITLE_LENGTH = 255
MAX_CONTENT_BYTES = 1024 * 1024
MAX_QUERY_LENGTH = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MemoMeta:
    """Listing entry: everything but the content."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    location: Path
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "tags": list(self.tags),
            "location": str(self.location),
        }


@dataclass(frozen=True)
class Memo:
    """A persisted note.

    ``mtime_ns`` is the backing file's modification time observed when this
    snapshot was read or written; it is bookkeeping, not part of equality.
    """

    id: str
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    location: Path
    tags: tuple[str, ...] = ()
    mtime_ns: int = field(default=0, compare=False, repr=False)

    @property
    def meta(self) -> MemoMeta:
        return MemoMeta(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            updated_at=self.updated_at,
            location=self.location,
            tags=self.tags,
        )

    def with_content(self, content: str, now: datetime | None = None) -> Memo:
        """Copy with new content; ``updated_at`` always moves forward."""
        now = now or utcnow()
        floor = self.updated_at + timedelta(microseconds=1)
        return replace(self, content=content, updated_at=max(now, floor))

    def to_dict(self) -> dict:
        data = self.meta.to_dict()
        data["content"] = self.content
        return data


# ── Validation ────────────────────────────────────────────────


def validate_title(title: object) -> str:
    if not isinstance(title, str):
        raise ValidationError("Title must be a string", field="title")
    if len(title) < MIN_TITLE_LENGTH or not title.strip():
        raise ValidationError("Title cannot be empty", field="title")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"Title cannot exceed {MAX_TITLE_LENGTH} characters", field="title"
        )
    return title


def validate_content(content: object) -> str:
    if not isinstance(content, str):
        raise ValidationError("Content must be a string", field="content")
    if len(content.encode("utf-8", errors="surrogatepass")) > MAX_CONTENT_BYTES:
        raise ValidationError(
            f"Content cannot exceed {MAX_CONTENT_BYTES} bytes", field="content"
        )
    return content


def validate_id(memo_id: object) -> str:
    """Normalize and check a memo identifier (Crockford base32 is case-insensitive)."""
    if not isinstance(memo_id, str):
        raise ValidationError("Memo id must be a string", field="id")
    normalized = memo_id.strip().upper()
    if not is_valid_id(normalized):
        raise ValidationError(
            f"Invalid memo id '{memo_id}': expected a 26-character ULID", field="id"
        )
    return normalized


def validate_query(query: object) -> str:
    if not isinstance(query, str):
        raise ValidationError("Query must be a string", field="query")
    if not query.strip():
        raise ValidationError("Query cannot be empty", field="query")
    if len(query) > MAX_QUERY_LENGTH:
        raise ValidationError(
            f"Query cannot exceed {MAX_QUERY_LENGTH} characters", field="query"
        )
    return query
