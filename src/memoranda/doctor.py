"""Installation and storage health checks for `memoranda doctor`."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from memoranda.config import MemorandaConfig
from memoranda.errors import ScopeNotFound
from memoranda.ids import is_valid_id
from memoranda.memo.storage import (
    MEMO_SUFFIX,
    discover_scope,
    find_repository_root,
    id_from_filename,
    load_header,
    split_front_matter,
)

logger = logging.getLogger(__name__)

OK = "OK"
WARN = "WARN"
FAIL = "FAIL"


@dataclass
class Check:
    status: str
    message: str
    fix: str | None = None

    def render(self) -> str:
        line = f"[{self.status}] {self.message}"
        if self.fix:
            line += f"\n       fix: {self.fix}"
        return line


def _check_file(path: Path) -> Check | None:
    try:
        text = path.read_bytes().decode("utf-8")
    except UnicodeDecodeError as e:
        return Check(FAIL, f"{path.name}: not valid UTF-8 ({e.reason})", "Re-save the file as UTF-8")
    except OSError as e:
        return Check(FAIL, f"{path.name}: unreadable ({e})", "Check file permissions")

    raw, _ = split_front_matter(text)
    if raw is None:
        if id_from_filename(path) is None:
            return Check(WARN, f"{path.name}: no header and no id in filename; id is derived from the path")
        return None
    header = load_header(raw, path)
    if header is None:
        return Check(FAIL, f"{path.name}: front matter is not a valid YAML mapping", "Fix or remove the header block")
    header_id = str(header.get("id") or "").upper()
    if header_id and not is_valid_id(header_id):
        return Check(WARN, f"{path.name}: header id {header_id!r} is not a valid memo id")
    return None


def run_checks(start_dir: Path | str, config: MemorandaConfig | None = None) -> list[Check]:
    config = config or MemorandaConfig()
    checks: list[Check] = []

    root = find_repository_root(Path(start_dir))
    if root is None:
        checks.append(Check(FAIL, f"No git repository found at or above {start_dir}", "Run 'git init'"))
        return checks
    checks.append(Check(OK, f"Git repository: {root}"))

    try:
        directories = discover_scope(
            root,
            dir_name=config.storage.dir_name,
            max_depth=config.storage.max_depth,
            create=False,
        )
    except ScopeNotFound:
        checks.append(Check(
            WARN,
            f"No {config.storage.dir_name} directory yet",
            "It is created on first use by 'memoranda serve'",
        ))
        return checks
    checks.append(Check(OK, f"Storage directories: {len(directories)}"))

    for directory in directories:
        if not os.access(directory, os.W_OK):
            checks.append(Check(FAIL, f"{directory} is not writable", f"chmod u+w {directory}"))
            continue

        memo_files = [
            p for p in sorted(directory.iterdir())
            if p.suffix == MEMO_SUFFIX and not p.name.startswith(".") and p.is_file()
        ]
        problems = [c for c in (_check_file(p) for p in memo_files) if c is not None]
        checks.extend(problems)
        if not any(c.status == FAIL for c in problems):
            checks.append(Check(OK, f"{directory}: {len(memo_files)} memo file(s)"))

        leftovers = list(directory.glob(".*.tmp"))
        if leftovers:
            checks.append(Check(
                WARN,
                f"{directory}: {len(leftovers)} leftover temporary file(s) from interrupted writes",
                "They can be deleted safely",
            ))

    return checks


def run_doctor(start_dir: Path | str | None = None, config: MemorandaConfig | None = None) -> int:
    """Print every check; returns the number of failures."""
    checks = run_checks(start_dir or Path.cwd(), config)
    for check in checks:
        print(check.render())
    failures = sum(1 for c in checks if c.status == FAIL)
    warnings = sum(1 for c in checks if c.status == WARN)
    print(f"\n{failures} failure(s), {warnings} warning(s)")
    return failures
