"""Container runtime supervision: detect, install and start the runtime.

The runtime CLI is treated as an opaque external process: ``<cli> --version``
tells us it is installed, ``<cli> info`` tells us the daemon is answering.
"""

from __future__ import annotations

import asyncio
import contextlib
import platform
import sys
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from nodeforge.config import RuntimeConfig
from nodeforge.errors import ErrorKind, Failure
from nodeforge.logger import logger
from nodeforge.utils import ProcessRunner, download_to, log_command_result


@dataclass(frozen=True)
class RuntimeState:
    installed: bool
    daemon_running: bool
    version: str = ""


class InstallStatus:
    """Process-wide "runtime installation in progress" flag.

    Readable by anyone; written only by :meth:`RuntimeSupervisor.install`.
    """

    def __init__(self) -> None:
        self._installing = False

    @property
    def installing(self) -> bool:
        return self._installing

    @contextlib.contextmanager
    def _mark_installing(self) -> Iterator[None]:
        self._installing = True
        try:
            yield
        finally:
            self._installing = False


_install_status = InstallStatus()


def get_install_status() -> InstallStatus:
    return _install_status


# -- Platform specifics ------------------------------------------------------


@dataclass(frozen=True)
class PlatformCommands(ABC):
    installer_url: str
    installer_name: str
    start_command: list[str]

    @abstractmethod
    def install_command(self, installer: Path) -> list[str]: ...


@dataclass(frozen=True)
class _WindowsCommands(PlatformCommands):
    def install_command(self, installer: Path) -> list[str]:
        return [
            "powershell",
            "-NoProfile",
            "-Command",
            f"Start-Process -FilePath '{installer}' "
            "-ArgumentList 'install','--quiet','--accept-license' -Verb RunAs -Wait",
        ]


@dataclass(frozen=True)
class _MacCommands(PlatformCommands):
    def install_command(self, installer: Path) -> list[str]:
        script = (
            f"hdiutil attach -nobrowse '{installer}' && "
            "/Volumes/Docker/Docker.app/Contents/MacOS/install --accept-license; "
            "hdiutil detach /Volumes/Docker"
        )
        return ["osascript", "-e", f'do shell script "{script}" with administrator privileges']


@dataclass(frozen=True)
class _LinuxCommands(PlatformCommands):
    def install_command(self, installer: Path) -> list[str]:
        return ["pkexec", "sh", str(installer)]


def platform_commands(plat: str | None = None) -> PlatformCommands:
    """Installer source and privileged commands for the host OS."""
    plat = plat or sys.platform
    if plat == "win32":
        return _WindowsCommands(
            installer_url="https://desktop.docker.com/win/main/amd64/Docker%20Desktop%20Installer.exe",
            installer_name="DockerDesktopInstaller.exe",
            start_command=[r"C:\Program Files\Docker\Docker\Docker Desktop.exe", "--start"],
        )
    if plat == "darwin":
        arch = "arm64" if platform.machine() == "arm64" else "amd64"
        return _MacCommands(
            installer_url=f"https://desktop.docker.com/mac/main/{arch}/Docker.dmg",
            installer_name="Docker.dmg",
            start_command=["open", "-a", "Docker"],
        )
    return _LinuxCommands(
        installer_url="https://get.docker.com",
        installer_name="get-docker.sh",
        start_command=["pkexec", "systemctl", "start", "docker"],
    )


# -- Supervisor ----------------------------------------------------------------


class RuntimeSupervisor:
    def __init__(
        self,
        config: RuntimeConfig,
        runner: ProcessRunner,
        *,
        commands: PlatformCommands | None = None,
        status: InstallStatus | None = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._commands = commands or platform_commands()
        self._status = status or get_install_status()
        self._start_task: asyncio.Future[RuntimeState | Failure] | None = None

    @property
    def _start_command(self) -> list[str]:
        return self._config.start_command or self._commands.start_command

    async def probe(self) -> RuntimeState:
        """Recompute RuntimeState. Absence and probe timeouts both read as "not installed"."""
        cli = self._config.cli
        version = await self._runner.run([cli, "--version"], timeout=self._config.probe_timeout)
        if not version.ok:
            logger.debug(
                "Runtime version probe failed",
                timed_out=version.timed_out,
                err=version.start_error or version.stderr,
            )
            return RuntimeState(installed=False, daemon_running=False)

        info = await self._runner.run([cli, "info"], timeout=self._config.probe_timeout)
        return RuntimeState(installed=True, daemon_running=info.ok, version=version.stdout)

    async def ensure_ready(self) -> RuntimeState | Failure:
        state = await self.probe()
        if not state.installed:
            logger.info("Container runtime not installed")
            return Failure(ErrorKind.UNAVAILABLE, "Container runtime is not installed")
        if state.daemon_running:
            logger.debug("Container runtime ready", version=state.version)
            return state
        return await self.start_daemon()

    async def start_daemon(self) -> RuntimeState | Failure:
        """Start the daemon, wait the settle delay and re-check exactly once.

        Callers arriving while a start is in flight share its result instead of
        issuing a second start command.
        """
        if self._start_task is None or self._start_task.done():
            self._start_task = asyncio.ensure_future(self._start_daemon())
        else:
            logger.debug("Daemon start already in progress")
        return await asyncio.shield(self._start_task)

    async def _start_daemon(self) -> RuntimeState | Failure:
        logger.info("Starting container runtime daemon", command=self._start_command)
        # Desktop launchers may never exit; liveness is judged by the re-probe only
        result = await self._runner.run(self._start_command, timeout=self._config.probe_timeout)
        if result.start_error:
            log_command_result(result, label="Daemon start")
        await asyncio.sleep(self._config.settle_delay)

        state = await self.probe()
        if state.daemon_running:
            logger.info("Container runtime daemon started")
            return state
        return Failure(
            ErrorKind.DAEMON_START_FAILED,
            "Container runtime daemon did not start",
            result.start_error or result.stderr,
        )

    async def install(self) -> Failure | None:
        """Download and run the platform installer. Returns None on success.

        The downloaded installer is removed on every exit path. Nothing is
        retried; the caller re-invokes if it wants another attempt.
        """
        url = self._config.installer_url or self._commands.installer_url
        with self._status._mark_installing(), tempfile.TemporaryDirectory(prefix="nodeforge-") as tmp:
            installer = Path(tmp) / self._commands.installer_name
            try:
                logger.info("Downloading runtime installer", url=url)
                failure = await download_to(url, installer, timeout=self._config.download_timeout)
                if failure is not None:
                    return failure

                result = await self._runner.run(
                    self._commands.install_command(installer),
                    timeout=self._config.install_timeout,
                )
                log_command_result(result, label="Runtime install")
                if result.timed_out:
                    return Failure(ErrorKind.TIMEOUT, "Runtime installer did not finish in time")
                if not result.ok:
                    return Failure(
                        ErrorKind.INSTALL_FAILED,
                        "Runtime installation failed",
                        result.start_error or result.stderr,
                    )
                return None
            finally:
                installer.unlink(missing_ok=True)
