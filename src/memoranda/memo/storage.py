"""File persistence: one markdown file per memo inside `.memoranda/` directories.

Files are named ``<sanitized-title>-<id>.md`` and start with a YAML front
matter header (id, title, timestamps, tags) followed by the raw content.
The header is optional on read so that notes dropped in by other tools are
still picked up. Blocking file system work runs in worker threads.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import AsyncIterator, Sequence
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import yaml
from frontmatter.default_handlers import YAMLHandler

from memoranda.config import MemorandaConfig, RetryConfig
from memoranda.errors import (
    ConflictError,
    EncodingError,
    IoError,
    NotFoundError,
    ScopeNotFound,
)
from memoranda.ids import derive_id, id_timestamp, is_valid_id, new_id
from memoranda.memo.models import Memo, MemoMeta, utcnow, validate_content, validate_title
from memoranda.retry import retry_io

logger = logging.getLogger(__name__)

MEMO_SUFFIX = ".md"
MAX_STEM_LENGTH = 100
MAX_HEADER_LINES = 200

_PRUNED_DIRS = {"node_modules", "target", "dist", "build", "__pycache__", "venv"}
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_ID_SUFFIX = re.compile(r"-(?P<id>[0-9A-HJKMNP-TV-Z]{26})$")
_FRONT_MATTER = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE
)
_YAML = YAMLHandler()


# ── Scope discovery ───────────────────────────────────────────


def find_repository_root(start_dir: Path) -> Path | None:
    """Walk up from start_dir, return the nearest directory containing .git."""
    p = Path(start_dir).resolve()
    while True:
        if (p / ".git").exists():
            return p
        if p == p.parent:
            return None
        p = p.parent


def discover_scope(
    start_dir: Path | str,
    dir_name: str = ".memoranda",
    max_depth: int = 6,
    create: bool = True,
) -> list[Path]:
    """Return every storage directory of the enclosing repository.

    The repository root's own storage directory comes first, the rest follow
    in relative-path order. Hidden and build/vendor directories are skipped
    and the walk stops at ``max_depth`` levels below the root.
    """
    root = find_repository_root(Path(start_dir))
    if root is None:
        raise ScopeNotFound(f"No git repository found at or above {start_dir}")

    found: list[Path] = []
    for dirpath, dirnames, _ in os.walk(root):
        depth = len(Path(dirpath).relative_to(root).parts)
        keep = []
        for name in dirnames:
            if name == dir_name:
                found.append(Path(dirpath) / name)
            elif name.startswith(".") or name in _PRUNED_DIRS:
                continue
            elif depth < max_depth:
                keep.append(name)
        dirnames[:] = sorted(keep)

    if not found:
        if not create:
            raise ScopeNotFound(f"No {dir_name} directories found under {root}")
        primary = root / dir_name
        primary.mkdir(exist_ok=True)
        logger.info("Created storage directory %s", primary)
        return [primary]

    found.sort(key=lambda d: (d.parent != root, d.relative_to(root).as_posix()))
    return found


# ── File naming ───────────────────────────────────────────────


def sanitize_title(title: str) -> str:
    """Filesystem-safe stem: strip unsafe chars, whitespace to hyphens, keep Unicode."""
    stem = _UNSAFE_CHARS.sub("", title)
    stem = re.sub(r"\s+", "-", stem.strip()).strip(".-")
    stem = stem[:MAX_STEM_LENGTH].rstrip(".-")
    return stem or "untitled"


def memo_filename(title: str, memo_id: str) -> str:
    return f"{sanitize_title(title)}-{memo_id}{MEMO_SUFFIX}"


def id_from_filename(path: Path) -> str | None:
    match = _ID_SUFFIX.search(path.stem)
    return match.group("id") if match else None


def title_from_filename(path: Path) -> str:
    stem = _ID_SUFFIX.sub("", path.stem)
    return re.sub(r"[-_]+", " ", stem).strip() or "Untitled"


def _is_memo_file(entry: os.DirEntry) -> bool:
    return (
        entry.name.endswith(MEMO_SUFFIX)
        and not entry.name.startswith(".")
        and entry.is_file()
    )


# ── Header (de)serialization ──────────────────────────────────


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def load_header(raw: str, path: Path) -> dict | None:
    try:
        data = _YAML.load(raw)
    except yaml.YAMLError as e:
        logger.warning("Invalid front matter in %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def _meta_from_header(header: dict, path: Path, mtime_ns: int) -> MemoMeta:
    """Fill in whatever the header lacks from the filename and mtime."""
    modified = datetime.fromtimestamp(mtime_ns / 1e9, tz=timezone.utc)

    header_id = str(header.get("id") or "").upper()
    file_id = id_from_filename(path)
    if is_valid_id(header_id):
        memo_id = header_id
        created_default = id_timestamp(memo_id)
    elif file_id:
        memo_id = file_id
        created_default = id_timestamp(memo_id)
    else:
        memo_id = derive_id(0, str(path))
        created_default = modified

    title = header.get("title")
    if not isinstance(title, str) or not title.strip():
        title = title_from_filename(path)

    created_at = _parse_timestamp(header.get("created_at")) or created_default
    updated_at = _parse_timestamp(header.get("updated_at")) or modified
    tags = header.get("tags") or []
    if not isinstance(tags, list):
        tags = [tags]

    return MemoMeta(
        id=memo_id,
        title=title,
        created_at=created_at,
        updated_at=max(updated_at, created_at),
        location=path,
        tags=tuple(str(t) for t in tags),
    )


def render_memo(memo: Memo) -> str:
    header = _YAML.export(
        {
            "id": memo.id,
            "title": memo.title,
            "created_at": memo.created_at.isoformat(),
            "updated_at": memo.updated_at.isoformat(),
            "tags": list(memo.tags),
        },
        sort_keys=False,
    )
    return f"---\n{header}\n---\n{memo.content}"


def split_front_matter(text: str) -> tuple[str | None, str]:
    """Return (raw header, body); the header is None when the text has none."""
    match = _FRONT_MATTER.match(text)
    if not match:
        return None, text
    return match.group(1), text[match.end():]


def parse_memo(text: str, path: Path, mtime_ns: int) -> Memo:
    header: dict = {}
    body = text
    raw, rest = split_front_matter(text)
    if raw is not None:
        loaded = load_header(raw, path)
        if loaded is not None:
            header = loaded
            body = rest
    meta = _meta_from_header(header, path, mtime_ns)
    return Memo(
        id=meta.id,
        title=meta.title,
        content=body,
        created_at=meta.created_at,
        updated_at=meta.updated_at,
        location=path,
        tags=meta.tags,
        mtime_ns=mtime_ns,
    )


# ── Blocking helpers (run via asyncio.to_thread) ──────────────


def _read_header(path: Path) -> MemoMeta:
    """Read only the front matter block, not the content."""
    with open(path, "rb") as f:
        mtime_ns = os.fstat(f.fileno()).st_mtime_ns
        lines: list[str] = []
        closed = False
        if f.readline().decode("utf-8").rstrip() == "---":
            for _ in range(MAX_HEADER_LINES):
                line = f.readline()
                if not line:
                    break
                decoded = line.decode("utf-8")
                if decoded.rstrip() == "---":
                    closed = True
                    break
                lines.append(decoded)
    header = load_header("".join(lines), path) if closed and lines else None
    return _meta_from_header(header or {}, path, mtime_ns)


def _scan_directory(directory: Path) -> list[MemoMeta]:
    """One scandir pass over a storage directory, sorted by id."""
    metas: list[MemoMeta] = []
    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        logger.warning("Storage directory disappeared: %s", directory)
        return metas
    for entry in entries:
        if not _is_memo_file(entry):
            continue
        path = Path(entry.path)
        try:
            metas.append(_read_header(path))
        except FileNotFoundError:
            continue
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable memo file %s: %s", path, e)
    metas.sort(key=lambda m: m.id)
    return metas


def load_memo_file(path: Path, memo_id: str | None = None) -> Memo:
    with open(path, "rb") as f:
        mtime_ns = os.fstat(f.fileno()).st_mtime_ns
        data = f.read()
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncodingError(
            f"File {path.name} is not valid UTF-8 ({e.reason} at byte {e.start})",
            memo_id=memo_id or id_from_filename(path),
        ) from e
    return parse_memo(text, path, mtime_ns)


def _atomic_write(path: Path, text: str, exclusive: bool = False) -> int:
    """Write via a temporary sibling + rename; returns the new mtime (ns)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if exclusive and path.exists():
        raise FileExistsError(str(path))
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(text.encode("utf-8"))
            f.flush()
            os.fsync(f.fileno())
        mtime_ns = os.stat(tmp_path).st_mtime_ns
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise
    return mtime_ns


def _find_file(directories: Sequence[Path], memo_id: str, hint: Path | None) -> Path | None:
    if hint is not None and hint.is_file():
        return hint
    for directory in directories:
        for candidate in directory.glob(f"*-{memo_id}{MEMO_SUFFIX}"):
            if candidate.is_file():
                return candidate
    # Slow path: files whose id lives only in the header (or is derived)
    for directory in directories:
        for meta in _scan_directory(directory):
            if meta.id == memo_id:
                return meta.location
    return None


# ── Storage backend ───────────────────────────────────────────


class FileStorage:
    """MemoBackend over a fixed, ordered set of storage directories."""

    def __init__(self, directories: Sequence[Path], retry: RetryConfig | None = None) -> None:
        if not directories:
            raise ScopeNotFound("No storage directories in scope")
        self.directories = [Path(d) for d in directories]
        self.retry = retry or RetryConfig()
        self._locations: dict[str, Path] = {}

    @classmethod
    def discover(
        cls, start_dir: Path | str, config: MemorandaConfig | None = None
    ) -> FileStorage:
        config = config or MemorandaConfig()
        directories = discover_scope(
            start_dir,
            dir_name=config.storage.dir_name,
            max_depth=config.storage.max_depth,
            create=config.storage.create_missing,
        )
        return cls(directories, retry=config.retry)

    @property
    def primary(self) -> Path:
        """Directory that receives new memos."""
        return self.directories[0]

    async def _io(self, operation: str, func, *args, memo_id: str | None = None):
        try:
            return await retry_io(func, *args, config=self.retry, operation=operation)
        except FileNotFoundError as e:
            if memo_id:
                self._locations.pop(memo_id, None)
                raise NotFoundError("Memo not found", memo_id=memo_id) from e
            raise IoError(f"{operation} failed: {e}") from e
        except FileExistsError as e:
            raise ConflictError(f"File already exists: {e}", memo_id=memo_id) from e
        except OSError as e:
            raise IoError(f"{operation} failed: {e}", memo_id=memo_id) from e

    async def _locate(self, memo_id: str) -> Path:
        path = await self._io(
            "locate_memo",
            _find_file,
            self.directories,
            memo_id,
            self._locations.get(memo_id),
        )
        if path is None:
            self._locations.pop(memo_id, None)
            raise NotFoundError("Memo not found", memo_id=memo_id)
        self._locations[memo_id] = path
        return path

    # ── Reads ─────────────────────────────────────────────────

    async def list(self) -> AsyncIterator[MemoMeta]:
        """Yield memo metadata, directory by directory, each in id order."""
        seen: set[str] = set()
        for directory in self.directories:
            metas = await self._io("scan_directory", _scan_directory, directory)
            for meta in metas:
                if meta.id in seen:
                    logger.warning("Duplicate memo id %s at %s, ignoring", meta.id, meta.location)
                    continue
                seen.add(meta.id)
                self._locations[meta.id] = meta.location
                yield meta

    async def read(self, memo_id: str) -> Memo:
        path = await self._locate(memo_id)
        memo = await self._io("read_memo", load_memo_file, path, memo_id, memo_id=memo_id)
        if memo.id != memo_id:
            # Header id disagrees with the filename; the requested id wins
            memo = replace(memo, id=memo_id)
        return memo

    async def mtime(self, memo_id: str) -> int:
        path = await self._locate(memo_id)
        st = await self._io("stat_memo", os.stat, path, memo_id=memo_id)
        return st.st_mtime_ns

    # ── Mutations ─────────────────────────────────────────────

    async def write(self, title: str, content: str) -> Memo:
        validate_title(title)
        validate_content(content)
        memo_id = new_id()
        now = utcnow()
        path = self.primary / memo_filename(title, memo_id)
        memo = Memo(
            id=memo_id,
            title=title,
            content=content,
            created_at=now,
            updated_at=now,
            location=path,
        )
        mtime_ns = await self._io(
            "write_memo", _atomic_write, path, render_memo(memo), True, memo_id=memo_id
        )
        self._locations[memo_id] = path
        logger.info("Wrote memo %s to %s", memo_id, path)
        return replace(memo, mtime_ns=mtime_ns)

    async def update(self, memo_id: str, content: str) -> Memo:
        validate_content(content)
        current = await self.read(memo_id)
        updated = current.with_content(content)
        mtime_ns = await self._io(
            "update_memo", _atomic_write, current.location, render_memo(updated), memo_id=memo_id
        )
        logger.info("Rewrote memo %s (%d chars)", memo_id, len(content))
        return replace(updated, mtime_ns=mtime_ns)

    async def delete(self, memo_id: str) -> None:
        path = await self._locate(memo_id)
        await self._io("delete_memo", os.remove, path, memo_id=memo_id)
        self._locations.pop(memo_id, None)
        logger.info("Deleted memo file %s", path)
