"""DNS-01 challenge handling on the host side.

The hook scripts inside the proxy container only forward
``(domain, validation)`` to our HTTP server; the work happens here:
publish the TXT value through the registrar, give it time to propagate,
then poll until the value is visible or the attempts run out.
"""

from __future__ import annotations

import asyncio
import secrets
from typing import Protocol

from nodeforge.config import ProxyConfig
from nodeforge.errors import ErrorKind, GatewayError
from nodeforge.logger import logger
from nodeforge.registrar import HostRecord, RegistrarClient, relative_name, remove_record, upsert_record
from nodeforge.utils import ProcessRunner

CHALLENGE_TTL = 60


def challenge_name(domain: str) -> str:
    return f"_acme-challenge.{domain.removeprefix('*.')}"


class TxtLookup(Protocol):
    async def lookup_txt(self, name: str) -> list[str]: ...


class ContainerDigLookup:
    """TXT lookups with ``dig`` inside the proxy container."""

    def __init__(self, runner: ProcessRunner, *, cli: str, container: str, timeout: float = 15.0) -> None:
        self._runner = runner
        self._cli = cli
        self._container = container
        self._timeout = timeout

    async def lookup_txt(self, name: str) -> list[str]:
        result = await self._runner.run(
            [self._cli, "exec", self._container, "dig", "+short", "TXT", name],
            timeout=self._timeout,
        )
        if not result.ok:
            raise GatewayError.of(
                ErrorKind.TRANSPORT, f"TXT lookup for {name} failed", result.start_error or result.stderr
            )
        return [line.strip().strip('"') for line in result.stdout.splitlines() if line.strip()]


async def wait_for_txt(
    lookup: TxtLookup,
    name: str,
    expected: str,
    *,
    attempts: int,
    interval: float,
) -> int:
    """Poll until *expected* is among *name*'s TXT values.

    Returns the 1-based attempt that matched. Sleeps only between attempts
    and raises after exactly *attempts* lookups.
    """
    for attempt in range(1, attempts + 1):
        try:
            values = await lookup.lookup_txt(name)
        except GatewayError as exc:
            logger.debug("TXT lookup failed", name=name, attempt=attempt, err=exc.failure.message)
            values = []
        if expected in values:
            logger.info("TXT record visible", name=name, attempt=attempt)
            return attempt
        logger.debug("TXT record not visible yet", name=name, attempt=attempt)
        if attempt < attempts:
            await asyncio.sleep(interval)
    raise GatewayError.of(
        ErrorKind.TIMEOUT, f"TXT record {name} not visible after {attempts} attempts"
    )


class ChallengeService:
    """Publishes and removes challenge TXT values for one registered domain."""

    def __init__(
        self,
        config: ProxyConfig,
        registrar: RegistrarClient,
        lookup: TxtLookup,
        *,
        fqdn: str,
    ) -> None:
        self._config = config
        self._registrar = registrar
        self._lookup = lookup
        self._fqdn = fqdn

    async def publish(self, domain: str, validation: str) -> int:
        """Publish and wait for visibility. Returns the polling attempt that matched."""
        name = challenge_name(domain)
        host = relative_name(self._fqdn, name)
        await upsert_record(
            self._registrar,
            self._fqdn,
            HostRecord(name=host, type="TXT", address=validation, ttl=CHALLENGE_TTL),
            replace_existing=False,
        )
        logger.info("Challenge record published, waiting for propagation", name=name)
        await asyncio.sleep(self._config.propagation_delay)
        return await wait_for_txt(
            self._lookup,
            name,
            validation,
            attempts=self._config.poll_attempts,
            interval=self._config.poll_interval,
        )

    async def cleanup(self, domain: str, validation: str) -> bool:
        """Remove only this validation value. Best effort."""
        name = challenge_name(domain)
        try:
            return await remove_record(
                self._registrar, self._fqdn, relative_name(self._fqdn, name), "TXT", validation
            )
        except GatewayError as exc:
            logger.warning("Challenge cleanup failed", name=name, err=exc.failure.describe())
            return False


class ChallengeRegistry:
    """Maps per-deployment hook tokens to the service handling that deployment."""

    def __init__(self) -> None:
        self._services: dict[str, ChallengeService] = {}

    def register(self, service: ChallengeService) -> str:
        token = secrets.token_urlsafe(32)
        self._services[token] = service
        return token

    def get(self, token: str) -> ChallengeService | None:
        for known, service in self._services.items():
            if secrets.compare_digest(known, token):
                return service
        return None

    def unregister(self, token: str) -> None:
        self._services.pop(token, None)
