"""Tests for `memoranda doctor` checks."""

from __future__ import annotations

from pathlib import Path

import pytest

from memoranda.doctor import FAIL, OK, WARN, run_checks, run_doctor
from memoranda.memo.storage import FileStorage


def _statuses(checks) -> list[str]:
    return [c.status for c in checks]


class TestDoctor:
    def test_no_repository(self, tmp_path: Path):
        checks = run_checks(tmp_path)
        assert _statuses(checks) == [FAIL]
        assert "git init" in checks[0].fix

    def test_no_storage_yet(self, repo: Path):
        checks = run_checks(repo)
        assert _statuses(checks) == [OK, WARN]
        assert not (repo / ".memoranda").exists()

    @pytest.mark.asyncio
    async def test_healthy(self, storage: FileStorage):
        await storage.write("Fine", "all good")
        checks = run_checks(storage.primary.parent)
        assert FAIL not in _statuses(checks)
        assert WARN not in _statuses(checks)
        assert any("1 memo file" in c.message for c in checks)

    def test_reports_bad_files(self, repo: Path):
        directory = repo / ".memoranda"
        directory.mkdir()
        (directory / "binary.md").write_bytes(b"\xff\xfe")
        (directory / "broken-header.md").write_text("---\n- a list\n---\nbody")
        (directory / "plain.md").write_text("no header at all")
        (directory / ".x.123.tmp").write_text("partial")

        checks = run_checks(repo)
        messages = {c.message.split(":")[0]: c.status for c in checks}
        assert messages["binary.md"] == FAIL
        assert messages["broken-header.md"] == FAIL
        assert messages["plain.md"] == WARN
        assert any("temporary" in c.message for c in checks)

    def test_run_doctor_counts_failures(self, tmp_path: Path, capsys):
        assert run_doctor(tmp_path) == 1
        out = capsys.readouterr().out
        assert "[FAIL]" in out
        assert "1 failure(s)" in out
