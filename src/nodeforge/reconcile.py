"""Periodic container-state reconciliation.

Every tick lists the managed network's containers and tells the UI whether
the gateway button should offer "start" or "stop". The loop only reads; it
never starts or stops services, so a wrong tick is fixed by the next one.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from nodeforge.config import ReconcileConfig
from nodeforge.errors import Failure
from nodeforge.events import ButtonStateEvent, EventBus
from nodeforge.logger import logger
from nodeforge.runtime import InstallStatus, RuntimeSupervisor
from nodeforge.utils import ProcessRunner

TERMINAL_MARKERS = ("Exited", "Created")
RUNNING_MARKER = "Up"


class ButtonState(StrEnum):
    START = "start"
    STOP = "stop"


@dataclass(frozen=True)
class ContainerStatus:
    name: str
    status: str


def parse_snapshot(output: str) -> list[ContainerStatus]:
    """Parse ``name: status`` lines; the status may itself contain colons."""
    snapshot = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        name, sep, status = line.partition(": ")
        snapshot.append(ContainerStatus(name=name.strip(), status=status.strip() if sep else ""))
    return snapshot


def classify(snapshot: Sequence[ContainerStatus], *, expected: int = 4) -> ButtonState | None:
    """START when nothing runs, STOP when exactly *expected* containers are up, else None."""
    if all(any(m in c.status for m in TERMINAL_MARKERS) for c in snapshot):
        return ButtonState.START
    if len(snapshot) == expected and all(RUNNING_MARKER in c.status for c in snapshot):
        return ButtonState.STOP
    return None


class ReconciliationLoop:
    def __init__(
        self,
        config: ReconcileConfig,
        supervisor: RuntimeSupervisor,
        runner: ProcessRunner,
        bus: EventBus,
        *,
        cli: str,
        network_name: Callable[[], str | None],
        install_status: InstallStatus,
        timeout: float = 10.0,
    ) -> None:
        self._config = config
        self._supervisor = supervisor
        self._runner = runner
        self._bus = bus
        self._cli = cli
        self._network_name = network_name
        self._install_status = install_status
        self._timeout = timeout

    async def tick(self) -> ButtonState | None:
        if self._install_status.installing:
            logger.debug("Reconciliation skipped: runtime installation in progress")
            return None

        state = await self._supervisor.probe()
        if not state.installed:
            logger.debug("Reconciliation skipped: runtime not installed")
            return None
        if not state.daemon_running:
            restarted = await self._supervisor.start_daemon()
            if isinstance(restarted, Failure):
                self._bus.log_line(
                    f"Container runtime is not running: {restarted.describe()}", level="error"
                )
                return None

        network = self._network_name()
        if not network:
            self._bus.log_line("No managed network found in the manifest", level="warning")
            return None

        result = await self._runner.run(
            [self._cli, "ps", "-a", "--filter", f"network={network}", "--format", "{{.Names}}: {{.Status}}"],
            timeout=self._timeout,
        )
        if not result.ok:
            logger.warning(
                "Container listing failed",
                network=network,
                err=result.start_error or result.stderr or "timed out",
            )
            return None

        snapshot = parse_snapshot(result.stdout)
        button = classify(snapshot, expected=self._config.expected_services)
        if button is not None:
            self._bus.emit(ButtonStateEvent(state=str(button)))
        summary = ", ".join(f"{c.name}: {c.status}" for c in snapshot) or "none"
        self._bus.log_line(f"Periodic check - Containers: {summary}", level="debug")
        return button

    async def run(self) -> None:
        """Tick forever on the configured interval."""
        logger.info("Reconciliation loop started", interval=self._config.interval)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Reconciliation tick failed")
            await asyncio.sleep(self._config.interval)
