"""Shared utility functions.

Small helpers used across components: the external process runner, HTTP
downloads, atomic file writes and fire-and-forget task management.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from asyncio.subprocess import PIPE
from collections.abc import Coroutine, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiohttp

from nodeforge.errors import ErrorKind, Failure
from nodeforge.logger import logger


@dataclass
class CommandResult:
    """Result of one external command execution."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    start_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.start_error is None


class ProcessRunner:
    """Runs external commands without blocking the event loop.

    Never raises for process-level problems: a missing binary, a timeout or a
    non-zero exit all come back as a :class:`CommandResult`.
    """

    async def run(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
    ) -> CommandResult:
        argv = tuple(str(a) for a in args)
        full_env = {**os.environ, **env} if env else None
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=PIPE,
                stderr=PIPE,
                env=full_env,
                cwd=str(cwd) if cwd else None,
            )
        except OSError as exc:
            return CommandResult(argv, None, "", "", start_error=str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            with contextlib.suppress(Exception):
                await process.communicate()
            return CommandResult(argv, None, "", "", timed_out=True)

        return CommandResult(
            argv,
            process.returncode,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )


def log_command_result(result: CommandResult, *, label: str, **extra: Any) -> None:
    """Log the outcome of a command execution."""
    if result.start_error:
        logger.error(f"Failed to start {label}", err=result.start_error, **extra)
    elif result.timed_out:
        logger.error(f"{label} timed out", **extra)
    elif result.returncode == 0:
        logger.info(
            f"{label} completed",
            stdout_tail=result.stdout[-500:] if result.stdout else "",
            **extra,
        )
    else:
        logger.error(
            f"{label} failed",
            exit_code=result.returncode,
            stderr_tail=result.stderr[-500:] if result.stderr else "",
            **extra,
        )


async def download_to(url: str, dest: Path, *, timeout: float) -> Failure | None:
    """Stream *url* into *dest*. Only HTTP 200 counts as success.

    Returns ``None`` on success. On any failure no partial file is left behind.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        async with (
            aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session,
            session.get(url) as resp,
        ):
            if resp.status != 200:
                return Failure(ErrorKind.TRANSPORT, f"Download of {url} failed: HTTP {resp.status}")
            with dest.open("wb") as fh:
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    fh.write(chunk)
    except TimeoutError:
        dest.unlink(missing_ok=True)
        return Failure(ErrorKind.TIMEOUT, f"Download of {url}")
    except (aiohttp.ClientError, OSError) as exc:
        dest.unlink(missing_ok=True)
        return Failure(ErrorKind.TRANSPORT, f"Download of {url} failed: {exc}")
    return None


def write_text_atomic(path: Path, content: str, *, mode: int | None = None) -> None:
    """Write *content* via tmp file + rename so readers never see a partial file.

    Line endings are always ``\\n``: artifacts are consumed inside Linux containers.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8", newline="\n")
    if mode is not None:
        tmp.chmod(mode)
    tmp.replace(path)


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(_log_task_exception)
    return task


# Strong references so pending tasks are not garbage-collected mid-flight
_background_tasks: set[asyncio.Task[Any]] = set()


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
