"""Domain configuration and DNS A-record reconciliation.

The saved domain lives in ``<node_dir>/.domain`` as JSON and is re-read from
disk whenever a command needs it. Reconciliation checks the bare name and one
probe subdomain (standing in for the wildcard) independently; a mismatch is
only corrected at the registrar after the operator says yes.
"""

from __future__ import annotations

import asyncio
import json
import re
import socket
from collections.abc import Awaitable, Callable
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import aiohttp
from pydantic import BaseModel, SecretStr, ValidationError, field_validator, model_validator

from nodeforge.artifacts import ArtifactResult, write_artifact
from nodeforge.config import DnsConfig
from nodeforge.errors import ErrorKind, GatewayError
from nodeforge.events import EventBus
from nodeforge.logger import logger
from nodeforge.registrar import HostRecord, NamecheapClient, RegistrarClient, relative_name, upsert_record

_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")

# Registrar calls treat the last two labels as SLD.TLD, which is wrong under these
_MULTI_LABEL_SUFFIXES = frozenset(
    {
        "ac.uk", "co.uk", "gov.uk", "ltd.uk", "me.uk", "net.uk", "org.uk", "plc.uk",
        "com.au", "net.au", "org.au", "co.nz", "net.nz", "org.nz",
        "co.jp", "ne.jp", "or.jp", "co.za", "org.za", "co.in", "net.in", "org.in",
        "com.br", "net.br", "com.cn", "net.cn", "org.cn", "com.mx", "com.tr", "co.kr",
    }
)  # fmt: skip


class DomainConfig(BaseModel):
    model_config = {"extra": "ignore"}

    fqdn: str
    use_registrar_api: bool = False
    api_user: str | None = None
    api_key: SecretStr | None = None

    @model_validator(mode="before")
    @classmethod
    def _drop_unused_credentials(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("use_registrar_api"):
            data = {k: v for k, v in data.items() if k not in ("api_user", "api_key")}
        return data

    @field_validator("fqdn")
    @classmethod
    def normalize_fqdn(cls, v: str) -> str:
        v = v.strip().lower().rstrip(".")
        labels = v.split(".")
        if len(labels) < 2 or not all(_LABEL_RE.match(label) for label in labels):
            raise ValueError(f"Not a valid domain name: {v!r}")
        suffix = ".".join(labels[-2:])
        if suffix in _MULTI_LABEL_SUFFIXES:
            raise ValueError(
                f"Domains under .{suffix} are not supported: the registered domain must be"
                " exactly two labels (name.tld)"
            )
        return v

    @model_validator(mode="after")
    def _require_credentials(self) -> DomainConfig:
        if self.use_registrar_api and not (
            self.api_user and self.api_key and self.api_key.get_secret_value()
        ):
            raise ValueError("api_user and api_key are required when use_registrar_api is set")
        return self

    def public_view(self) -> dict[str, Any]:
        """Everything except the secret, for status events."""
        return {
            "fqdn": self.fqdn,
            "use_registrar_api": self.use_registrar_api,
            "api_user": self.api_user,
            "has_api_key": self.api_key is not None,
        }


def load_domain(path: Path) -> DomainConfig | None:
    if not path.exists():
        return None
    try:
        return DomainConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Could not load domain config", path=str(path), err=str(exc))
        return None


def save_domain(path: Path, domain: DomainConfig) -> ArtifactResult:
    data = domain.model_dump()
    data["api_key"] = domain.api_key.get_secret_value() if domain.api_key else None
    # Holds the registrar key in clear; owner-only
    return write_artifact(path, json.dumps(data, indent=2) + "\n", mode=0o600)


# -- Lookups -------------------------------------------------------------------


class AddressResolver(Protocol):
    async def resolve_a(self, name: str) -> list[str]: ...


class SystemResolver:
    """IPv4 lookups through the OS resolver, run off the event loop."""

    def __init__(self, timeout: float) -> None:
        self._timeout = timeout
        self._resolver = aiohttp.ThreadedResolver()

    async def resolve_a(self, name: str) -> list[str]:
        try:
            hosts = await asyncio.wait_for(
                self._resolver.resolve(name, 0, family=socket.AF_INET), timeout=self._timeout
            )
        except TimeoutError as exc:
            raise GatewayError.of(ErrorKind.TIMEOUT, f"DNS lookup for {name}") from exc
        except OSError as exc:
            raise GatewayError.of(ErrorKind.TRANSPORT, f"DNS lookup for {name} failed: {exc}") from exc
        return sorted({h["host"] for h in hosts})


async def fetch_public_ip(url: str, *, timeout: float = 10.0) -> str:
    try:
        async with (
            aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session,
            session.get(url) as resp,
        ):
            if resp.status != 200:
                raise GatewayError.of(ErrorKind.TRANSPORT, f"Public IP lookup failed: HTTP {resp.status}")
            return (await resp.text()).strip()
    except TimeoutError as exc:
        raise GatewayError.of(ErrorKind.TIMEOUT, "Public IP lookup") from exc
    except aiohttp.ClientError as exc:
        raise GatewayError.of(ErrorKind.TRANSPORT, f"Public IP lookup failed: {exc}") from exc


# -- Reconciliation --------------------------------------------------------------


class DnsOutcome(StrEnum):
    MATCHED = "matched"
    SKIPPED = "skipped"  # mismatch, but no registrar access
    DECLINED = "declined"
    UPDATED = "updated"
    FAILED = "failed"


type Confirm = Callable[[str, str], Awaitable[bool]]
type RegistrarFactory = Callable[[DomainConfig, str], RegistrarClient]


def namecheap_factory(config: DnsConfig) -> RegistrarFactory:
    def _make(domain: DomainConfig, client_ip: str) -> RegistrarClient:
        if not (domain.api_user and domain.api_key):
            raise GatewayError.of(ErrorKind.INVALID, "Registrar API credentials are not configured")
        return NamecheapClient(
            url=config.registrar_url,
            api_user=domain.api_user,
            api_key=domain.api_key.get_secret_value(),
            client_ip=client_ip,
            timeout=config.registrar_timeout,
        )

    return _make


class DomainManager:
    def __init__(
        self,
        config: DnsConfig,
        bus: EventBus,
        confirm: Confirm,
        *,
        registrar_factory: RegistrarFactory | None = None,
        resolver: AddressResolver | None = None,
        public_ip: Callable[[], Awaitable[str]] | None = None,
    ) -> None:
        self._config = config
        self._bus = bus
        self._confirm = confirm
        self._registrar_factory = registrar_factory or namecheap_factory(config)
        self._resolver = resolver or SystemResolver(config.resolve_timeout)
        self._public_ip = public_ip or (lambda: fetch_public_ip(config.public_ip_url))
        # setHosts replaces the whole host list; one read-modify-write at a time
        self._registrar_lock = asyncio.Lock()

    def checked_names(self, domain: DomainConfig) -> list[tuple[str, str]]:
        """(name to resolve, registrar host name) pairs."""
        fqdn = domain.fqdn
        return [
            (fqdn, relative_name(fqdn, fqdn)),
            (f"{self._config.probe_subdomain}.{fqdn}", relative_name(fqdn, f"*.{fqdn}")),
        ]

    async def check_and_reconcile(self, domain: DomainConfig) -> dict[str, DnsOutcome]:
        names = self.checked_names(domain)
        try:
            ip = await self._public_ip()
        except GatewayError as exc:
            self._bus.log_line(f"DNS check skipped: {exc.failure.describe()}", level="warning")
            return {name: DnsOutcome.FAILED for name, _ in names}

        outcomes = await asyncio.gather(
            *(self._reconcile_name(domain, ip, name, host) for name, host in names)
        )
        return {name: outcome for (name, _), outcome in zip(names, outcomes, strict=True)}

    async def _reconcile_name(self, domain: DomainConfig, ip: str, name: str, host: str) -> DnsOutcome:
        try:
            addresses = await self._resolver.resolve_a(name)
            problem = f"{name} resolves to {', '.join(addresses) or 'nothing'}, expected {ip}"
        except GatewayError as exc:
            addresses = []
            problem = exc.failure.describe()

        if ip in addresses:
            self._bus.log_line(f"DNS A record for {name} points to {ip}")
            return DnsOutcome.MATCHED

        if not domain.use_registrar_api:
            self._bus.log_line(
                f"{problem}. Create an A record for {host} pointing to {ip} at your DNS provider.",
                level="warning",
            )
            return DnsOutcome.SKIPPED

        accepted = await self._confirm(
            "Update DNS record?",
            f"{problem}. Set the A record for {host} to {ip} through the registrar API?",
        )
        if not accepted:
            self._bus.log_line(f"DNS update for {name} declined")
            return DnsOutcome.DECLINED

        try:
            async with self._registrar_lock:
                registrar = self._registrar_factory(domain, ip)
                await upsert_record(
                    registrar,
                    domain.fqdn,
                    HostRecord(name=host, type="A", address=ip, ttl=self._config.record_ttl),
                )
        except GatewayError as exc:
            self._bus.log_line(f"DNS update for {name} failed: {exc.failure.describe()}", level="error")
            return DnsOutcome.FAILED
        self._bus.log_line(f"DNS A record for {host} set to {ip}")
        return DnsOutcome.UPDATED
