"""Reverse proxy deployment with DNS-01 certificate issuance.

Stages run strictly in order and each one's output is the next one's
precondition::

    Idle -> DirectoriesReady -> ConfigWritten -> ContainerUp
         -> ChallengeBase -> ChallengeWildcard -> SSLApplied -> Done

The first failing stage stops the run at ``Failed`` and records where it
happened. Nothing resumes automatically; a new ``deploy()`` starts from Idle.
Directory and file stages are idempotent, certificate issuance is not.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from nodeforge.artifacts import ensure_directories, write_artifact
from nodeforge.challenge import ChallengeRegistry, ChallengeService, ContainerDigLookup
from nodeforge.config import ProxyConfig, RuntimeConfig
from nodeforge.domain import DomainConfig
from nodeforge.errors import ErrorKind, Failure, GatewayError, failure_from_command
from nodeforge.events import EventBus
from nodeforge.logger import logger
from nodeforge.registrar import RegistrarClient
from nodeforge.templates import (
    render_dockerfile,
    render_hook,
    render_nginx_conf,
    render_proxy_compose,
    render_ssl_conf,
)
from nodeforge.utils import ProcessRunner, log_command_result


class DeployStage(StrEnum):
    IDLE = "Idle"
    DIRECTORIES_READY = "DirectoriesReady"
    CONFIG_WRITTEN = "ConfigWritten"
    CONTAINER_UP = "ContainerUp"
    CHALLENGE_BASE = "ChallengeBase"
    CHALLENGE_WILDCARD = "ChallengeWildcard"
    SSL_APPLIED = "SSLApplied"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class DeployResult:
    stage: DeployStage
    reason: Failure | None = None
    failed_at: DeployStage | None = None  # last stage reached before failing

    @property
    def ok(self) -> bool:
        return self.stage == DeployStage.DONE


@dataclass
class CertificateWorkflowState:
    """Which challenges completed during this deploy() call. Never persisted."""

    base_done: bool = False
    wildcard_done: bool = False


@dataclass(frozen=True)
class ProxyPaths:
    root: Path  # <node_dir>/nginx
    certs: Path  # <node_dir>/certs

    @property
    def hooks(self) -> Path:
        return self.root / "hooks"

    @property
    def nginx_conf(self) -> Path:
        return self.root / "nginx.conf"

    @property
    def ssl_conf(self) -> Path:
        return self.root / "nginx-ssl.conf"

    @property
    def dockerfile(self) -> Path:
        return self.root / "Dockerfile"

    @property
    def compose_file(self) -> Path:
        return self.root / "docker-compose.yaml"


type RegistrarProvider = Callable[[DomainConfig], Awaitable[RegistrarClient]]

_HOOK_MODE = 0o755
_HOOK_MAX_TIME_MARGIN = 120


class ProxyDeployer:
    def __init__(
        self,
        config: ProxyConfig,
        runtime: RuntimeConfig,
        runner: ProcessRunner,
        bus: EventBus,
        *,
        paths: ProxyPaths,
        compose_command: list[str],
        registrar_provider: RegistrarProvider,
        challenges: ChallengeRegistry,
        hook_base_url: str,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._runner = runner
        self._bus = bus
        self._paths = paths
        self._compose_command = compose_command
        self._registrar_provider = registrar_provider
        self._challenges = challenges
        self._hook_base_url = hook_base_url
        self.stage = DeployStage.IDLE

    async def deploy(self, domain: DomainConfig) -> DeployResult:
        self.stage = DeployStage.IDLE
        certs = CertificateWorkflowState()
        logger.info("Proxy deployment started", fqdn=domain.fqdn)
        try:
            if not domain.use_registrar_api:
                raise GatewayError.of(
                    ErrorKind.INVALID,
                    "Certificate issuance needs registrar API access to publish DNS challenges",
                )
            self.prepare_directories()
            self._advance(DeployStage.DIRECTORIES_READY)

            self.write_base_artifacts()
            self._advance(DeployStage.CONFIG_WRITTEN)

            await self.launch_container()
            self._advance(DeployStage.CONTAINER_UP)

            service = ChallengeService(
                self._config,
                await self._registrar_provider(domain),
                ContainerDigLookup(
                    self._runner, cli=self._runtime.cli, container=self._config.container_name
                ),
                fqdn=domain.fqdn,
            )
            token = self._challenges.register(service)
            try:
                await self.issue_certificate(domain.fqdn, token, wildcard=False)
                certs.base_done = True
                self._advance(DeployStage.CHALLENGE_BASE)

                await self.issue_certificate(domain.fqdn, token, wildcard=True)
                certs.wildcard_done = True
                self._advance(DeployStage.CHALLENGE_WILDCARD)
            finally:
                self._challenges.unregister(token)

            if self._config.dry_run:
                self._bus.log_line("Dry run: certificates were not stored, TLS config not applied")
            else:
                await self.apply_tls(domain.fqdn)
                self._advance(DeployStage.SSL_APPLIED)
        except GatewayError as exc:
            return self._fail(exc.failure, certs)
        except OSError as exc:
            return self._fail(Failure(ErrorKind.INVALID, f"Filesystem error: {exc}"), certs)

        self._advance(DeployStage.DONE)
        return DeployResult(DeployStage.DONE)

    def _advance(self, stage: DeployStage) -> None:
        self.stage = stage
        logger.info("Proxy deployment stage reached", stage=str(stage))
        self._bus.log_line(f"Proxy deployment: {stage}")

    def _fail(self, failure: Failure, certs: CertificateWorkflowState) -> DeployResult:
        failed_at = self.stage
        self.stage = DeployStage.FAILED
        logger.error(
            "Proxy deployment failed",
            failed_at=str(failed_at),
            kind=str(failure.kind),
            base_done=certs.base_done,
            wildcard_done=certs.wildcard_done,
        )
        self._bus.log_line(
            f"Proxy deployment failed after {failed_at}: {failure.describe()}", level="error"
        )
        return DeployResult(DeployStage.FAILED, reason=failure, failed_at=failed_at)

    # -- Stages -------------------------------------------------------------

    def prepare_directories(self) -> list[Path]:
        return ensure_directories(self._paths.root, self._paths.hooks, self._paths.certs)

    def write_base_artifacts(self) -> list[bool]:
        """Write config, build file, compose file and hooks. Returns per-file changed flags."""
        max_time = int(
            self._config.propagation_delay
            + self._config.poll_attempts * self._config.poll_interval
            + _HOOK_MAX_TIME_MARGIN
        )
        results = [
            write_artifact(self._paths.nginx_conf, render_nginx_conf()),
            write_artifact(self._paths.dockerfile, render_dockerfile()),
            write_artifact(
                self._paths.compose_file,
                render_proxy_compose(container_name=self._config.container_name),
            ),
            write_artifact(
                self._paths.hooks / "auth-hook.sh",
                render_hook("auth", max_time=max_time),
                mode=_HOOK_MODE,
            ),
            write_artifact(
                self._paths.hooks / "cleanup-hook.sh",
                render_hook("cleanup", max_time=60),
                mode=_HOOK_MODE,
            ),
        ]
        return [r.changed for r in results]

    async def launch_container(self) -> None:
        result = await self._runner.run(
            [*self._compose_command, "-f", str(self._paths.compose_file), "up", "-d", "--build"],
            timeout=self._config.certbot_timeout,
            cwd=self._paths.root,
        )
        log_command_result(result, label="Proxy container start")
        if not result.ok:
            raise GatewayError(failure_from_command(result, "Proxy container start"))

    def certbot_command(self, fqdn: str, token: str, *, wildcard: bool) -> list[str]:
        domains = ["-d", fqdn, "-d", f"*.{fqdn}", "--expand"] if wildcard else ["-d", fqdn]
        args = [
            self._runtime.cli, "exec",
            "-e", f"HOOK_URL={self._hook_base_url}",
            "-e", f"HOOK_TOKEN={token}",
            self._config.container_name,
            "certbot", "certonly",
            "--manual", "--preferred-challenges", "dns",
            "--manual-auth-hook", "sh /hooks/auth-hook.sh",
            "--manual-cleanup-hook", "sh /hooks/cleanup-hook.sh",
            "--non-interactive", "--agree-tos", "--register-unsafely-without-email",
            "--cert-name", fqdn,
            *domains,
        ]  # fmt: skip
        if self._config.force_renewal:
            args.append("--force-renewal")
        if self._config.dry_run:
            args.append("--dry-run")
        return args

    async def issue_certificate(self, fqdn: str, token: str, *, wildcard: bool) -> None:
        name = f"*.{fqdn}" if wildcard else fqdn
        self._bus.log_line(f"Requesting certificate for {name}")
        result = await self._runner.run(
            self.certbot_command(fqdn, token, wildcard=wildcard),
            timeout=self._config.certbot_timeout,
        )
        log_command_result(result, label="Certificate issuance", name=name)
        if not result.ok:
            raise GatewayError(failure_from_command(result, f"Certificate issuance for {name}"))

    async def apply_tls(self, fqdn: str) -> None:
        """Write the TLS config, copy it into the running proxy and reload in place."""
        write_artifact(
            self._paths.ssl_conf, render_ssl_conf(fqdn=fqdn, upstream=self._config.upstream)
        )
        container = self._config.container_name
        steps = [
            ("Copy TLS config", [self._runtime.cli, "cp", str(self._paths.ssl_conf),
                                 f"{container}:/etc/nginx/nginx.conf"]),
            ("Validate TLS config", [self._runtime.cli, "exec", container, "nginx", "-t"]),
            ("Reload proxy", [self._runtime.cli, "exec", container, "nginx", "-s", "reload"]),
        ]  # fmt: skip
        for label, args in steps:
            result = await self._runner.run(args, timeout=self._runtime.probe_timeout * 3)
            log_command_result(result, label=label)
            if not result.ok:
                raise GatewayError(failure_from_command(result, label))
