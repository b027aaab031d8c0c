"""Configuration loading from environment variables and memoranda.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_CONFIG_FILENAME = "memoranda.toml"
_USER_CONFIG_DIR = Path.home() / ".memoranda"


@dataclass
class StorageConfig:
    """Where memo directories live inside a repository."""

    dir_name: str = ".memoranda"
    max_depth: int = 6
    create_missing: bool = True


@dataclass
class CacheConfig:
    """In-memory memo cache."""

    capacity: int = 1000


@dataclass
class SearchConfig:
    """Ranking knobs for the search index."""

    title_weight: float = 2.0
    tag_weight: float = 1.0
    recency_weight: float = 0.1
    recency_days: float = 365.0
    snippet_length: int = 100


@dataclass
class RetryConfig:
    """Backoff for transient file system errors."""

    attempts: int = 3
    initial_delay: float = 0.05
    max_delay: float = 0.5
    multiplier: float = 2.0
    jitter: float = 0.1


@dataclass
class MemorandaConfig:
    """Top-level configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    log_level: str = "INFO"
    log_file: Path | None = None
    context_warn_threshold: int = 50_000


def load_config(config_path: Path | None = None) -> MemorandaConfig:
    """Load configuration from environment variables and optional memoranda.toml.

    Priority: environment variables > memoranda.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.memoranda/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _USER_CONFIG_DIR / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = file_data.get("storage", {})
    cache_data = file_data.get("cache", {})
    search_data = file_data.get("search", {})
    retry_data = file_data.get("retry", {})

    log_file = os.getenv("MEMORANDA_LOG_FILE", file_data.get("log_file"))

    config = MemorandaConfig(
        storage=StorageConfig(
            dir_name=os.getenv("MEMORANDA_DIR_NAME", storage_data.get("dir_name", ".memoranda")),
            max_depth=int(os.getenv("MEMORANDA_SCAN_DEPTH", storage_data.get("max_depth", 6))),
            create_missing=bool(storage_data.get("create_missing", True)),
        ),
        cache=CacheConfig(
            capacity=int(os.getenv("MEMORANDA_CACHE_SIZE", cache_data.get("capacity", 1000))),
        ),
        search=SearchConfig(
            title_weight=float(search_data.get("title_weight", 2.0)),
            tag_weight=float(search_data.get("tag_weight", 1.0)),
            recency_weight=float(search_data.get("recency_weight", 0.1)),
            recency_days=float(search_data.get("recency_days", 365.0)),
            snippet_length=int(search_data.get("snippet_length", 100)),
        ),
        retry=RetryConfig(
            attempts=int(retry_data.get("attempts", 3)),
            initial_delay=float(retry_data.get("initial_delay", 0.05)),
            max_delay=float(retry_data.get("max_delay", 0.5)),
            multiplier=float(retry_data.get("multiplier", 2.0)),
        ),
        log_level=os.getenv("MEMORANDA_LOG_LEVEL", file_data.get("log_level", "INFO")),
        log_file=Path(log_file).expanduser() if log_file else None,
        context_warn_threshold=int(file_data.get("context_warn_threshold", 50_000)),
    )
    return config
