"""Tests for the process runner, downloads and small file helpers."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from nodeforge.errors import ErrorKind, Failure, failure_from_command
from nodeforge.utils import (
    CommandResult,
    ProcessRunner,
    create_background_task,
    download_to,
    write_text_atomic,
)


class TestProcessRunner:
    async def test_captures_stdout_and_exit_code(self):
        result = await ProcessRunner().run([sys.executable, "-c", "print('hello')"], timeout=30)
        assert result.ok
        assert result.stdout == "hello"
        assert result.returncode == 0

    async def test_nonzero_exit_keeps_stderr(self):
        result = await ProcessRunner().run(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"],
            timeout=30,
        )
        assert not result.ok
        assert result.returncode == 3
        assert result.stderr == "bad"

    async def test_missing_binary_is_a_start_error(self):
        result = await ProcessRunner().run(["definitely-not-a-real-binary-xyz"], timeout=5)
        assert not result.ok
        assert result.start_error
        assert result.returncode is None

    async def test_timeout_kills_process(self):
        result = await ProcessRunner().run(
            [sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5
        )
        assert result.timed_out
        assert not result.ok

    async def test_env_is_merged(self):
        result = await ProcessRunner().run(
            [sys.executable, "-c", "import os; print(os.environ['NODEFORGE_TEST_VAR'])"],
            timeout=30,
            env={"NODEFORGE_TEST_VAR": "value"},
        )
        assert result.stdout == "value"


class TestFailureFromCommand:
    def test_start_error_is_unavailable(self):
        result = CommandResult(("docker",), None, "", "", start_error="not found")
        assert failure_from_command(result, "probe").kind == ErrorKind.UNAVAILABLE

    def test_timeout_is_distinct(self):
        result = CommandResult(("docker",), None, "", "", timed_out=True)
        failure = failure_from_command(result, "probe")
        assert failure.kind == ErrorKind.TIMEOUT
        assert "outcome unknown" in failure.describe()

    def test_nonzero_exit_carries_stderr(self):
        result = CommandResult(("docker",), 1, "", "permission denied")
        failure = failure_from_command(result, "compose up")
        assert failure.kind == ErrorKind.EXTERNAL_TOOL
        assert "permission denied" in failure.describe()


def _download_app(body: bytes = b"payload", status: int = 200) -> web.Application:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(body=body, status=status)

    app = web.Application()
    app.router.add_get("/file", handler)
    return app


class TestDownloadTo:
    async def test_success_writes_file(self, tmp_path: Path):
        dest = tmp_path / "sub" / "file.bin"
        async with TestServer(_download_app(b"abc")) as server:
            failure = await download_to(str(server.make_url("/file")), dest, timeout=10)
        assert failure is None
        assert dest.read_bytes() == b"abc"

    async def test_non_200_is_transport_failure(self, tmp_path: Path):
        dest = tmp_path / "file.bin"
        async with TestServer(_download_app(status=404)) as server:
            failure = await download_to(str(server.make_url("/file")), dest, timeout=10)
        assert isinstance(failure, Failure)
        assert failure.kind == ErrorKind.TRANSPORT
        assert "404" in failure.message
        assert not dest.exists()

    async def test_connection_error_leaves_no_file(self, tmp_path: Path):
        dest = tmp_path / "file.bin"
        # Port 9 on localhost is reliably closed
        failure = await download_to("http://127.0.0.1:9/file", dest, timeout=5)
        assert failure is not None
        assert failure.kind in (ErrorKind.TRANSPORT, ErrorKind.TIMEOUT)
        assert not dest.exists()


class TestWriteTextAtomic:
    def test_writes_and_replaces(self, tmp_path: Path):
        path = tmp_path / "a" / "file.txt"
        write_text_atomic(path, "one\n")
        write_text_atomic(path, "two\n")
        assert path.read_text() == "two\n"
        assert not (path.parent / ".file.txt.tmp").exists()

    def test_always_lf(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        write_text_atomic(path, "a\nb\n")
        assert path.read_bytes() == b"a\nb\n"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_applies_mode(self, tmp_path: Path):
        path = tmp_path / "secret"
        write_text_atomic(path, "x", mode=0o600)
        assert path.stat().st_mode & 0o777 == 0o600


class TestBackgroundTask:
    async def test_exception_is_logged(self):
        async def boom():
            raise RuntimeError("kaboom")

        with patch("nodeforge.utils.logger") as mock_logger:
            task = create_background_task(boom(), name="boom")
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args.kwargs["task_name"] == "boom"
