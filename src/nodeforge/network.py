"""Network reachability: local firewall rules and router port forwarding.

Everything here is best-effort. A port the firewall refuses to open or a
router without UPnP leaves the gateway running in a degraded state; the
operator gets an advisory and fixes it by hand.
"""

from __future__ import annotations

import asyncio
import socket
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from nodeforge.config import NetworkConfig
from nodeforge.logger import logger
from nodeforge.utils import CommandResult, ProcessRunner


@dataclass(frozen=True)
class PortMapping:
    external: int
    internal: int
    protocol: str = "TCP"


def mappings_for(ports: Iterable[int]) -> list[PortMapping]:
    return [PortMapping(external=p, internal=p) for p in sorted(set(ports))]


def local_ip_address() -> str:
    """Address of the interface that routes to the internet (no packets are sent)."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("192.0.2.1", 9))
            return sock.getsockname()[0]
        except OSError:
            return "127.0.0.1"


# -- Firewalls ---------------------------------------------------------------


class Firewall(Protocol):
    async def has_rule(self, port: int) -> bool: ...

    async def add_rule(self, port: int) -> CommandResult | None: ...


class NetshFirewall:
    """Windows Defender Firewall via ``netsh advfirewall``."""

    def __init__(self, runner: ProcessRunner, config: NetworkConfig) -> None:
        self._runner = runner
        self._config = config

    def _rule_name(self, port: int) -> str:
        return f"{self._config.description} TCP {port}"

    async def has_rule(self, port: int) -> bool:
        name = self._rule_name(port)
        result = await self._runner.run(
            ["netsh", "advfirewall", "firewall", "show", "rule", f"name={name}"],
            timeout=self._config.command_timeout,
        )
        return result.ok and name in result.stdout

    async def add_rule(self, port: int) -> CommandResult:
        return await self._runner.run(
            [
                "netsh", "advfirewall", "firewall", "add", "rule",
                f"name={self._rule_name(port)}",
                "dir=in", "action=allow", "protocol=TCP", f"localport={port}",
            ],
            timeout=self._config.command_timeout,
        )  # fmt: skip


class UfwFirewall:
    """Uncomplicated Firewall on Linux; rule changes go through pkexec."""

    def __init__(self, runner: ProcessRunner, config: NetworkConfig) -> None:
        self._runner = runner
        self._config = config

    async def has_rule(self, port: int) -> bool:
        result = await self._runner.run(["ufw", "status"], timeout=self._config.command_timeout)
        if not result.ok:
            return False
        if "Status: inactive" in result.stdout:
            # Inactive firewall blocks nothing
            return True
        return any(line.split()[:1] == [f"{port}/tcp"] for line in result.stdout.splitlines())

    async def add_rule(self, port: int) -> CommandResult:
        return await self._runner.run(
            ["pkexec", "ufw", "allow", f"{port}/tcp", "comment", self._config.description],
            timeout=self._config.command_timeout,
        )


class NullFirewall:
    """macOS's application firewall has no per-port rules to manage."""

    async def has_rule(self, port: int) -> bool:
        return True

    async def add_rule(self, port: int) -> None:
        return None


def default_firewall(runner: ProcessRunner, config: NetworkConfig, plat: str | None = None) -> Firewall:
    plat = plat or sys.platform
    if plat == "win32":
        return NetshFirewall(runner, config)
    if plat.startswith("linux"):
        return UfwFirewall(runner, config)
    return NullFirewall()


# -- Router port mapping -----------------------------------------------------


class PortForwarder(Protocol):
    async def add_mapping(self, mapping: PortMapping) -> bool: ...


class UpnpForwarder:
    """Lease-based router port mappings through the ``upnpc`` client."""

    _EXISTS_MARKERS = ("ConflictInMappingEntry", "code 718")

    def __init__(
        self,
        runner: ProcessRunner,
        config: NetworkConfig,
        *,
        lan_ip: str | None = None,
    ) -> None:
        self._runner = runner
        self._config = config
        self._lan_ip = lan_ip

    async def add_mapping(self, mapping: PortMapping) -> bool:
        lan_ip = self._lan_ip or local_ip_address()
        result = await self._runner.run(
            [
                self._config.upnp_cli,
                "-e", self._config.description,
                "-a", lan_ip,
                str(mapping.internal), str(mapping.external),
                mapping.protocol, str(self._config.lease_ttl),
            ],
            timeout=self._config.command_timeout,
        )  # fmt: skip
        output = f"{result.stdout}\n{result.stderr}"
        if any(marker in output for marker in self._EXISTS_MARKERS):
            logger.debug("Port mapping already exists", port=mapping.external)
            return True
        # upnpc exits 0 on many failures; the text is authoritative
        if not result.ok or "failed" in output.lower() or "No IGD" in output:
            logger.warning(
                "Port mapping failed",
                port=mapping.external,
                err=result.start_error or output.strip()[-300:],
            )
            return False
        logger.info("Port mapping added", port=mapping.external, ttl=self._config.lease_ttl)
        return True


# -- Provisioner -------------------------------------------------------------


class NetworkProvisioner:
    def __init__(self, firewall: Firewall, forwarder: PortForwarder) -> None:
        self._firewall = firewall
        self._forwarder = forwarder

    async def ensure_firewall_ports(self, ports: Iterable[int]) -> None:
        """Open each port if no rule exists yet. Failures are logged only."""
        await asyncio.gather(*(self._ensure_port(p) for p in sorted(set(ports))))

    async def _ensure_port(self, port: int) -> None:
        try:
            if await self._firewall.has_rule(port):
                logger.debug("Firewall rule present", port=port)
                return
            result = await self._firewall.add_rule(port)
        except Exception as exc:
            logger.warning("Firewall rule check failed", port=port, err=str(exc))
            return
        if result is not None and not result.ok:
            logger.warning(
                "Firewall rule add failed",
                port=port,
                err=result.start_error or result.stderr or "timed out",
            )
        else:
            logger.info("Firewall rule added", port=port)

    async def forward_ports(self, mappings: Iterable[PortMapping]) -> set[int]:
        """Request router mappings. Returns the external ports that could not be mapped."""
        mappings = list(mappings)
        outcomes = await asyncio.gather(
            *(self._forwarder.add_mapping(m) for m in mappings), return_exceptions=True
        )
        failed: set[int] = set()
        for mapping, outcome in zip(mappings, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Port mapping error", port=mapping.external, err=str(outcome))
                failed.add(mapping.external)
            elif not outcome:
                failed.add(mapping.external)
        return failed
