"""Shared fixtures: a throwaway git repository with one storage directory."""

from __future__ import annotations

from pathlib import Path

import pytest

from memoranda.config import MemorandaConfig, RetryConfig
from memoranda.memo.storage import FileStorage
from memoranda.memo.store import MemoStore


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    (tmp_path / ".git").mkdir()
    return tmp_path


@pytest.fixture
def config() -> MemorandaConfig:
    # No sleeping between retries in tests
    return MemorandaConfig(retry=RetryConfig(attempts=2, initial_delay=0.0, max_delay=0.0))


@pytest.fixture
def storage(repo: Path, config: MemorandaConfig) -> FileStorage:
    return FileStorage.discover(repo, config)


@pytest.fixture
def store(storage: FileStorage, config: MemorandaConfig) -> MemoStore:
    return MemoStore(storage, config)
