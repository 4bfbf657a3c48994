"""Registrar DNS API client (Namecheap XML API).

``setHosts`` replaces the domain's whole host list, so every mutation here is
read-modify-write: fetch all records, change the one we own, resubmit all.
A concurrent edit made elsewhere between the read and the write is lost.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from typing import Protocol

import aiohttp

from nodeforge.errors import ErrorKind, GatewayError
from nodeforge.logger import logger

DEFAULT_TTL = 1800


@dataclass(frozen=True)
class HostRecord:
    name: str  # relative to the registered domain; "@" for the apex
    type: str
    address: str
    ttl: int = DEFAULT_TTL
    mx_pref: int | None = None


@dataclass
class HostSet:
    records: list[HostRecord] = field(default_factory=list)
    email_type: str | None = None


def split_domain(fqdn: str) -> tuple[str, str, str]:
    """Split ``a.b.example.com`` into ``("example", "com", "a.b")``.

    The registered domain is taken to be the last two labels; domains under
    multi-label suffixes such as ``co.uk`` are rejected by ``DomainConfig``.
    """
    labels = fqdn.strip(".").lower().split(".")
    if len(labels) < 2:
        raise ValueError(f"Not a fully qualified domain name: {fqdn!r}")
    return labels[-2], labels[-1], ".".join(labels[:-2])


def relative_name(fqdn: str, record_fqdn: str) -> str:
    """Record host name for *record_fqdn* relative to *fqdn*'s registered domain."""
    sld, tld, _ = split_domain(fqdn)
    suffix = f"{sld}.{tld}"
    name = record_fqdn.strip(".").lower()
    if name == suffix:
        return "@"
    if not name.endswith("." + suffix):
        raise ValueError(f"{record_fqdn} is not under {suffix}")
    return name[: -len(suffix) - 1]


class RegistrarClient(Protocol):
    async def get_hosts(self, sld: str, tld: str) -> HostSet: ...

    async def set_hosts(self, sld: str, tld: str, hosts: HostSet) -> None: ...


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find(root: ET.Element, name: str) -> ET.Element | None:
    for el in root.iter():
        if _local(el.tag) == name:
            return el
    return None


class NamecheapClient:
    def __init__(
        self,
        *,
        url: str,
        api_user: str,
        api_key: str,
        client_ip: str,
        timeout: float = 30.0,
    ) -> None:
        self._url = url
        self._auth = {
            "ApiUser": api_user,
            "UserName": api_user,
            "ApiKey": api_key,
            "ClientIp": client_ip,
        }
        self._timeout = timeout

    async def _call(self, command: str, params: dict[str, str]) -> ET.Element:
        data = {**self._auth, "Command": command, **params}
        try:
            async with (
                aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout)) as session,
                session.post(self._url, data=data) as resp,
            ):
                body = await resp.text()
                status = resp.status
        except TimeoutError as exc:
            raise GatewayError.of(ErrorKind.TIMEOUT, f"Registrar {command}") from exc
        except aiohttp.ClientError as exc:
            raise GatewayError.of(ErrorKind.TRANSPORT, f"Registrar {command} failed: {exc}") from exc

        if status != 200:
            raise GatewayError.of(ErrorKind.TRANSPORT, f"Registrar {command} failed: HTTP {status}")
        try:
            root = ET.fromstring(body)
        except ET.ParseError as exc:
            raise GatewayError.of(
                ErrorKind.TRANSPORT, f"Registrar {command} returned malformed XML: {exc}"
            ) from exc
        if root.get("Status", "").upper() != "OK":
            errors = [e.text or "" for e in root.iter() if _local(e.tag) == "Error"]
            raise GatewayError.of(
                ErrorKind.TRANSPORT, f"Registrar {command} rejected", "; ".join(errors)
            )
        return root

    async def get_hosts(self, sld: str, tld: str) -> HostSet:
        root = await self._call("namecheap.domains.dns.getHosts", {"SLD": sld, "TLD": tld})
        result = _find(root, "DomainDNSGetHostsResult")
        if result is None:
            raise GatewayError.of(ErrorKind.TRANSPORT, "Registrar getHosts: unexpected response")
        records = []
        for el in result:
            if _local(el.tag).lower() != "host":
                continue
            mx = el.get("MXPref")
            records.append(
                HostRecord(
                    name=el.get("Name", "@"),
                    type=el.get("Type", "A"),
                    address=el.get("Address", ""),
                    ttl=int(el.get("TTL") or DEFAULT_TTL),
                    mx_pref=int(mx) if mx and el.get("Type") == "MX" else None,
                )
            )
        return HostSet(records=records, email_type=result.get("EmailType"))

    async def set_hosts(self, sld: str, tld: str, hosts: HostSet) -> None:
        params = {"SLD": sld, "TLD": tld}
        if hosts.email_type:
            params["EmailType"] = hosts.email_type
        for n, record in enumerate(hosts.records, start=1):
            params[f"HostName{n}"] = record.name
            params[f"RecordType{n}"] = record.type
            params[f"Address{n}"] = record.address
            params[f"TTL{n}"] = str(record.ttl)
            if record.mx_pref is not None:
                params[f"MXPref{n}"] = str(record.mx_pref)
        root = await self._call("namecheap.domains.dns.setHosts", params)
        result = _find(root, "DomainDNSSetHostsResult")
        if result is None or result.get("IsSuccess", "").lower() != "true":
            raise GatewayError.of(ErrorKind.TRANSPORT, "Registrar setHosts did not report success")


async def upsert_record(
    client: RegistrarClient,
    fqdn: str,
    record: HostRecord,
    *,
    replace_existing: bool = True,
) -> bool:
    """Read-modify-write one record into *fqdn*'s host list.

    With ``replace_existing`` every record of the same name and type is
    replaced (A records); otherwise the value is added alongside existing
    ones (TXT challenge values). Returns False when nothing needed changing.
    """
    sld, tld, _ = split_domain(fqdn)
    hosts = await client.get_hosts(sld, tld)
    same = [r for r in hosts.records if _same_slot(r, record)]
    if any(r.address == record.address for r in same) and (len(same) == 1 or not replace_existing):
        logger.debug("Registrar record already present", name=record.name, type=record.type)
        return False

    if replace_existing:
        kept = [r for r in hosts.records if not _same_slot(r, record)]
    else:
        kept = [r for r in hosts.records if not (_same_slot(r, record) and r.address == record.address)]
    await client.set_hosts(sld, tld, replace(hosts, records=[*kept, record]))
    logger.info("Registrar record set", name=record.name, type=record.type, address=record.address)
    return True


async def remove_record(client: RegistrarClient, fqdn: str, name: str, type_: str, address: str) -> bool:
    """Remove exactly one value from *fqdn*'s host list. Returns False if absent."""
    sld, tld, _ = split_domain(fqdn)
    hosts = await client.get_hosts(sld, tld)
    kept = [
        r
        for r in hosts.records
        if not (r.name.lower() == name.lower() and r.type.upper() == type_.upper() and r.address == address)
    ]
    if len(kept) == len(hosts.records):
        return False
    await client.set_hosts(sld, tld, replace(hosts, records=kept))
    logger.info("Registrar record removed", name=name, type=type_)
    return True


def _same_slot(a: HostRecord, b: HostRecord) -> bool:
    return a.name.lower() == b.name.lower() and a.type.upper() == b.type.upper()
