"""Shared test fixtures for nodeforge."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from nodeforge.events import EventBus
from nodeforge.registrar import HostRecord, HostSet
from nodeforge.utils import CommandResult

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "node_dir",
        "env_path",
        "manifest_path",
        "domain_path",
        "wallets_dir",
        "proxy_dir",
        "certs_dir",
        "hook_base_url",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (runtime, proxy, etc.) and cached property
    overrides (node_dir, env_path, etc.). Paths not overridden derive from
    ``node_dir``.

    Usage::

        s = make_settings(node_dir=tmp_path)
        s = make_settings(proxy=ProxyConfig(poll_interval=0))
    """
    from nodeforge.config import (
        ComposeConfig,
        DnsConfig,
        LoggingConfig,
        NetworkConfig,
        NodeConfig,
        ProxyConfig,
        ReconcileConfig,
        RuntimeConfig,
        ServerConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "node": NodeConfig(),
        "runtime": RuntimeConfig(settle_delay=0),
        "compose": ComposeConfig(),
        "network": NetworkConfig(),
        "dns": DnsConfig(),
        "proxy": ProxyConfig(propagation_delay=0, poll_interval=0),
        "reconcile": ReconcileConfig(interval=0),
        "server": ServerConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def ok(stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult((), 0, stdout, stderr)


def failed(stderr: str = "boom", returncode: int = 1) -> CommandResult:
    return CommandResult((), returncode, "", stderr)


def missing() -> CommandResult:
    return CommandResult((), None, "", "", start_error="No such file or directory")


def timed_out() -> CommandResult:
    return CommandResult((), None, "", "", timed_out=True)


class FakeRunner:
    """Scripted stand-in for ProcessRunner.

    Responses are keyed on an argv prefix. Each ``on()`` call queues one
    response; the last queued response for a prefix repeats forever.
    Unscripted commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self._scripts: defaultdict[tuple[str, ...], deque[CommandResult]] = defaultdict(deque)

    def on(self, *prefix: str, result: CommandResult | None = None) -> FakeRunner:
        self._scripts[tuple(prefix)].append(result or ok())
        return self

    async def run(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        env: Any = None,
        cwd: Any = None,
    ) -> CommandResult:
        argv = tuple(str(a) for a in args)
        self.calls.append(argv)
        # Longest matching prefix wins
        for prefix in sorted(self._scripts, key=len, reverse=True):
            if argv[: len(prefix)] == prefix:
                queue = self._scripts[prefix]
                template = queue.popleft() if len(queue) > 1 else queue[0]
                return CommandResult(
                    argv,
                    template.returncode,
                    template.stdout,
                    template.stderr,
                    template.timed_out,
                    template.start_error,
                )
        return CommandResult(argv, 0, "", "")

    def calls_to(self, *prefix: str) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[: len(prefix)] == prefix]


class FakeRegistrar:
    """In-memory registrar with the API's full-replace semantics."""

    def __init__(self, records: list[HostRecord] | None = None, email_type: str | None = "MX") -> None:
        self.hosts = HostSet(records=list(records or []), email_type=email_type)
        self.set_calls: list[tuple[str, str, HostSet]] = []

    async def get_hosts(self, sld: str, tld: str) -> HostSet:
        return replace(self.hosts, records=list(self.hosts.records))

    async def set_hosts(self, sld: str, tld: str, hosts: HostSet) -> None:
        self.set_calls.append((sld, tld, hosts))
        self.hosts = hosts


def collect_events(bus: EventBus) -> list[Any]:
    """Subscribe to every event on *bus*; the returned list fills as events arrive."""
    received: list[Any] = []

    async def _listener(event: Any) -> None:
        received.append(event)

    bus.subscribe_all(_listener)
    return received


async def drain() -> None:
    """Let fire-and-forget listeners run."""
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no nodeforge.toml,
    no .env, no file I/O.
    """
    safe = make_settings()
    monkeypatch.setattr("nodeforge.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def node_dir(tmp_path: Path) -> Path:
    d = tmp_path / "ar-io-node"
    d.mkdir()
    return d


@pytest.fixture
def settings(node_dir: Path):
    return make_settings(node_dir=node_dir)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()
