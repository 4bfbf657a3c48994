"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in nodeforge.toml. Secrets (the command API token)
can live in .env. Environment variables override both, prefixed with
``NODEFORGE_`` and using ``__`` as the nested delimiter
(e.g. ``NODEFORGE_SERVER__PORT=9000``).

Priority (highest wins): init args > env vars > .env > nodeforge.toml

Usage::

    from nodeforge.config import get_settings

    s = get_settings()
    print(s.env_path)
    print(s.proxy.container_name)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Any

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in nodeforge.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class NodeConfig(_StrictModel):
    dir: str | None = None  # None → ~/ar-io-node


class RuntimeConfig(_StrictModel):
    cli: str = "docker"
    probe_timeout: float = 10.0  # seconds, version/info probes
    settle_delay: float = 5.0  # wait after starting the daemon before re-probing
    install_timeout: float = 1800.0
    download_timeout: float = 900.0
    installer_url: str | None = None  # None → platform default
    start_command: list[str] | None = None  # None → platform default


class ComposeConfig(_StrictModel):
    manifest_url: str = "https://raw.githubusercontent.com/ar-io/ar-io-node/main/docker-compose.yaml"
    command: list[str] = ["docker", "compose"]
    timeout: float = 600.0
    download_timeout: float = 60.0
    network: str | None = None  # None → first network declared in the manifest
    default_env: dict[str, str] = {"AR_IO_WALLET": "", "OBSERVER_WALLET": ""}


class NetworkConfig(_StrictModel):
    ports: list[int] = [80, 443]
    lease_ttl: int = 3600
    description: str = "ar-io-gateway"
    upnp_cli: str = "upnpc"
    command_timeout: float = 30.0

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: list[int]) -> list[int]:
        for port in v:
            if not 0 < port < 65536:
                raise ValueError(f"Invalid port: {port}")
        return v


class DnsConfig(_StrictModel):
    resolve_timeout: float = 5.0
    probe_subdomain: str = "wildcard-probe"
    record_ttl: int = 300
    public_ip_url: str = "https://api.ipify.org"
    registrar_url: str = "https://api.namecheap.com/xml.response"
    registrar_timeout: float = 30.0


class ProxyConfig(_StrictModel):
    container_name: str = "nginx-proxy"
    upstream: str = "http://host.docker.internal:3000"
    propagation_delay: float = 30.0
    poll_attempts: int = 20
    poll_interval: float = 30.0
    certbot_timeout: float = 1800.0
    force_renewal: bool = True
    dry_run: bool = False
    hook_host: str = "host.docker.internal"  # hostname the proxy container uses to reach us

    @field_validator("poll_attempts")
    @classmethod
    def clamp_attempts(cls, v: int) -> int:
        return max(1, v)


class ReconcileConfig(_StrictModel):
    interval: float = 10.0
    expected_services: int = 4


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"  # the proxy container's hooks must reach us
    port: int = 8585
    api_token: SecretStr | None = None  # None → command API is unauthenticated
    confirmation_timeout: float = 1800.0


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Explicit-fields validation
# ---------------------------------------------------------------------------


def _collect_implicit_fields(settings_cls: type[BaseSettings], data: dict[str, Any]) -> list[str]:
    """Find fields missing from the sections present in the config file.

    Sections omitted entirely are fine (known defaults). A section that is
    present must spell out every field except optional ones, since TOML has
    no null and ``X | None`` fields cannot be made explicit. Environment
    overrides are not checked.
    """
    errors: list[str] = []
    for name, field_info in settings_cls.model_fields.items():
        section = data.get(name)
        cls = field_info.annotation
        if not isinstance(section, dict) or not (isinstance(cls, type) and issubclass(cls, _StrictModel)):
            continue
        missing = sorted(f for f in set(cls.model_fields) - set(section) if not _is_optional(cls, f))
        if missing:
            errors.append(f"{name}: missing {missing}")
    return errors


def _is_optional(model_cls: type[BaseModel], field_name: str) -> bool:
    field_info = model_cls.model_fields[field_name]
    return field_info.default is None


class _ExplicitTomlSource(TomlConfigSettingsSource):
    def __call__(self) -> dict[str, Any]:
        data = super().__call__()
        errors = _collect_implicit_fields(self.settings_cls, data)
        if errors:
            msg = "Config fields must be explicitly set in nodeforge.toml:\n"
            msg += "\n".join(f"  - {e}" for e in errors)
            raise ValueError(msg)
        return data


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="nodeforge.toml",
        env_file=".env",
        env_prefix="NODEFORGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    node: NodeConfig = NodeConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    compose: ComposeConfig = ComposeConfig()
    network: NetworkConfig = NetworkConfig()
    dns: DnsConfig = DnsConfig()
    proxy: ProxyConfig = ProxyConfig()
    reconcile: ReconcileConfig = ReconcileConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > nodeforge.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            _ExplicitTomlSource(settings_cls),
            file_secret_settings,
        )

    # --- Node directory layout ---

    @cached_property
    def node_dir(self) -> Path:
        if self.node.dir:
            return Path(self.node.dir).expanduser().resolve()
        return Path.home() / "ar-io-node"

    @cached_property
    def env_path(self) -> Path:
        return self.node_dir / ".env"

    @cached_property
    def manifest_path(self) -> Path:
        return self.node_dir / "docker-compose.yaml"

    @cached_property
    def domain_path(self) -> Path:
        return self.node_dir / ".domain"

    @cached_property
    def wallets_dir(self) -> Path:
        return self.node_dir / "wallets"

    @cached_property
    def proxy_dir(self) -> Path:
        return self.node_dir / "nginx"

    @cached_property
    def certs_dir(self) -> Path:
        return self.node_dir / "certs"

    @cached_property
    def hook_base_url(self) -> str:
        """URL the challenge hook scripts use to call back into this process."""
        return f"http://{self.proxy.hook_host}:{self.server.port}"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
