"""Memo storage: markdown files + in-memory cache + search index.

Layout (inside a git repository):
    <repo>/
    ├── .memoranda/                        # Primary storage directory (new memos)
    │   ├── API-Notes-01J9Z3X8Q5....md     # <sanitized-title>-<ULID>.md
    │   └── ...
    └── services/billing/.memoranda/       # Further storage directories, any depth

Each file starts with a YAML front matter header (id, title, created_at,
updated_at, tags) followed by the raw markdown content.
"""

from memoranda.memo.models import Memo, MemoMeta
from memoranda.memo.search import SearchHit
from memoranda.memo.store import MemoStore

__all__ = ["Memo", "MemoMeta", "MemoStore", "SearchHit"]
