"""Tests for idempotent artifact writes."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from nodeforge.artifacts import ensure_directories, write_artifact


def test_first_write_reports_change(tmp_path: Path):
    result = write_artifact(tmp_path / "conf" / "nginx.conf", "events {}\n")
    assert result.changed
    assert result.path.read_text() == "events {}\n"


def test_identical_content_is_noop(tmp_path: Path):
    path = tmp_path / "nginx.conf"
    write_artifact(path, "a\n")
    mtime = path.stat().st_mtime_ns
    result = write_artifact(path, "a\n")
    assert result.changed is False
    assert path.stat().st_mtime_ns == mtime


def test_different_content_replaces(tmp_path: Path):
    path = tmp_path / "nginx.conf"
    write_artifact(path, "a\n")
    assert write_artifact(path, "b\n").changed
    assert path.read_text() == "b\n"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_mode_fixed_without_rewrite(tmp_path: Path):
    path = tmp_path / "hook.sh"
    write_artifact(path, "#!/bin/sh\n")
    result = write_artifact(path, "#!/bin/sh\n", mode=0o755)
    assert result.changed is False
    assert path.stat().st_mode & 0o777 == 0o755


def test_ensure_directories_reports_created(tmp_path: Path):
    a, b = tmp_path / "a", tmp_path / "b" / "c"
    assert ensure_directories(a, b) == [a, b]
    assert ensure_directories(a, b) == []
    assert a.is_dir() and b.is_dir()
