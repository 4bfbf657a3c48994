"""Gateway lifecycle sequencing.

The orchestrator owns no logic beyond ordering the components and turning
their results into operator events. Every command runs as a background task
and reports only through the event bus; nothing it does can end the process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, field_validator

from nodeforge.artifacts import ensure_directories
from nodeforge.challenge import ChallengeRegistry
from nodeforge.compose import ComposeController, SyncStatus
from nodeforge.config import Settings
from nodeforge.confirmations import ConfirmationBroker
from nodeforge.domain import (
    DomainConfig,
    DomainManager,
    fetch_public_ip,
    load_domain,
    namecheap_factory,
    save_domain,
)
from nodeforge.envfile import ensure_env_file, read_env, update_env_file, validate_entries
from nodeforge.errors import ErrorKind, Failure
from nodeforge.events import DomainLoadedEvent, EventBus, InstallCompleteEvent, RuntimeStatusEvent
from nodeforge.logger import logger
from nodeforge.network import NetworkProvisioner, UpnpForwarder, default_firewall, mappings_for
from nodeforge.proxy import ProxyDeployer, ProxyPaths
from nodeforge.reconcile import ReconciliationLoop
from nodeforge.registrar import RegistrarClient
from nodeforge.runtime import RuntimeState, RuntimeSupervisor, get_install_status
from nodeforge.utils import ProcessRunner, create_background_task
from nodeforge.wallet import import_wallet

# -- Command payloads ----------------------------------------------------------


class _Payload(BaseModel):
    model_config = {"extra": "forbid"}


class EmptyPayload(_Payload):
    pass


class SaveEnvPayload(_Payload):
    values: dict[str, str]

    @field_validator("values")
    @classmethod
    def check_entries(cls, v: dict[str, str]) -> dict[str, str]:
        return validate_entries(v)


class LoadWalletPayload(_Payload):
    path: str


class ConfirmPayload(_Payload):
    request_id: str
    accepted: bool


class UnknownCommandError(LookupError):
    pass


type Handler = Callable[[Any], Awaitable[None]]


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        bus: EventBus,
        *,
        runner: ProcessRunner | None = None,
        supervisor: RuntimeSupervisor | None = None,
        compose: ComposeController | None = None,
        network: NetworkProvisioner | None = None,
        confirmations: ConfirmationBroker | None = None,
        domains: DomainManager | None = None,
        proxy: ProxyDeployer | None = None,
        reconciler: ReconciliationLoop | None = None,
        challenges: ChallengeRegistry | None = None,
    ) -> None:
        s = settings
        self.settings = s
        self.bus = bus
        self.install_status = get_install_status()
        runner = runner or ProcessRunner()
        self.challenges = challenges or ChallengeRegistry()
        self.confirmations = confirmations or ConfirmationBroker(
            bus, timeout=s.server.confirmation_timeout
        )
        self.supervisor = supervisor or RuntimeSupervisor(s.runtime, runner)
        self.compose = compose or ComposeController(
            s.compose, runner, manifest_path=s.manifest_path, env_path=s.env_path
        )
        self.network = network or NetworkProvisioner(
            default_firewall(runner, s.network), UpnpForwarder(runner, s.network)
        )
        self.domains = domains or DomainManager(s.dns, bus, self.confirmations.ask)
        self.proxy = proxy or ProxyDeployer(
            s.proxy,
            s.runtime,
            runner,
            bus,
            paths=ProxyPaths(root=s.proxy_dir, certs=s.certs_dir),
            compose_command=s.compose.command,
            registrar_provider=self._registrar_for,
            challenges=self.challenges,
            hook_base_url=s.hook_base_url,
        )
        self.reconciler = reconciler or ReconciliationLoop(
            s.reconcile,
            self.supervisor,
            runner,
            bus,
            cli=s.runtime.cli,
            network_name=self.compose.network_name,
            install_status=self.install_status,
            timeout=s.runtime.probe_timeout,
        )
        self._reconcile_task: asyncio.Task[None] | None = None
        self._commands: dict[str, tuple[type[BaseModel], Handler]] = {
            "install-runtime": (EmptyPayload, lambda _: self.install_runtime()),
            "start-gateway": (EmptyPayload, lambda _: self.start_gateway()),
            "stop-gateway": (EmptyPayload, lambda _: self.stop_gateway()),
            "save-env": (SaveEnvPayload, lambda p: self.save_env(p.values)),
            "save-domain": (DomainConfig, self.save_domain),
            "deploy-proxy": (EmptyPayload, lambda _: self.deploy_proxy()),
            "load-wallet-file": (LoadWalletPayload, lambda p: self.load_wallet(Path(p.path))),
            "confirm": (ConfirmPayload, lambda p: self.confirm(p.request_id, p.accepted)),
        }

    @property
    def command_names(self) -> list[str]:
        return sorted(self._commands)

    async def _registrar_for(self, domain: DomainConfig) -> RegistrarClient:
        dns = self.settings.dns
        ip = await fetch_public_ip(dns.public_ip_url)
        return namecheap_factory(dns)(domain, ip)

    # -- Startup -------------------------------------------------------------

    async def startup(self) -> None:
        s = self.settings
        ensure_directories(s.node_dir, s.wallets_dir)
        if ensure_env_file(s.env_path, s.compose.default_env):
            self.bus.log_line(f"Created {s.env_path} with default settings")
        env = read_env(s.env_path)
        unset = [key for key in s.compose.default_env if not env.get(key)]
        if unset:
            self.bus.log_line(
                f"Set {', '.join(unset)} in {s.env_path} before starting the gateway",
                level="warning",
            )

        domain = load_domain(s.domain_path)
        self.bus.emit(DomainLoadedEvent(domain=domain.public_view() if domain else None))

        create_background_task(self.provision_network(), name="network-provisioning")
        # The runtime flow may wait on the operator; the loop must not wait with it
        create_background_task(self.setup_runtime(), name="runtime-setup")
        self._reconcile_task = create_background_task(self.reconciler.run(), name="reconcile-loop")
        logger.info("Orchestrator started", node_dir=str(s.node_dir))

    async def shutdown(self) -> None:
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            await asyncio.gather(self._reconcile_task, return_exceptions=True)
            self._reconcile_task = None

    async def provision_network(self) -> None:
        ports = self.settings.network.ports
        await self.network.ensure_firewall_ports(ports)
        failed = await self.network.forward_ports(mappings_for(ports))
        if failed:
            listed = ", ".join(str(p) for p in sorted(failed))
            self.bus.log_line(
                f"Could not forward port(s) {listed} on your router. "
                "Forward them to this machine manually.",
                level="warning",
            )

    async def setup_runtime(self) -> None:
        result = await self.supervisor.ensure_ready()
        self._emit_runtime_status(result)
        if isinstance(result, RuntimeState):
            self.bus.emit(InstallCompleteEvent())
            await self.prepare_environment()
        elif result.kind == ErrorKind.UNAVAILABLE:
            install = await self.confirmations.ask(
                "Install the container runtime?",
                "The container runtime is required to run the gateway. Download and install it now?",
            )
            if install:
                await self.install_runtime()
            else:
                self.bus.log_line("The container runtime is required to run the gateway", level="warning")
        else:
            self.bus.log_line(result.describe(), level="error")

    async def prepare_environment(self) -> None:
        sync = await self.compose.sync_manifest()
        if isinstance(sync, Failure):
            self.bus.log_line(f"Manifest download failed: {sync.describe()}", level="error")
        elif sync.status == SyncStatus.NEEDS_CONFIRMATION:
            pending = sync.pending_path or self.compose.pending_path
            accepted = await self.confirmations.ask(
                "Update the gateway manifest?",
                "A newer docker-compose manifest is available. Replace your local copy?",
            )
            if accepted:
                failure = self.compose.apply_update(pending)
                self.bus.log_line(failure.describe() if failure else "Manifest updated")
            else:
                self.compose.discard_update(pending)
                self.bus.log_line("Keeping the local manifest")
        elif sync.status == SyncStatus.INSTALLED:
            self.bus.log_line("Gateway manifest downloaded")
        await self.reconciler.tick()

    def _emit_runtime_status(self, result: RuntimeState | Failure) -> None:
        if isinstance(result, RuntimeState):
            event = RuntimeStatusEvent(installed=result.installed, daemon_running=result.daemon_running)
        else:
            event = RuntimeStatusEvent(
                installed=result.kind not in (ErrorKind.UNAVAILABLE, ErrorKind.INSTALL_FAILED),
                daemon_running=False,
                error=result.describe(),
                error_kind=str(result.kind),
            )
        self.bus.emit(event)

    # -- Commands --------------------------------------------------------------

    def submit(self, name: str, payload: dict[str, Any] | None = None) -> asyncio.Task[None]:
        """Validate a command now and run it in the background.

        Raises UnknownCommandError or pydantic's ValidationError (a ValueError).
        """
        try:
            schema, handler = self._commands[name]
        except KeyError:
            raise UnknownCommandError(name) from None
        params = schema.model_validate(payload or {})
        logger.info("Command accepted", command=name)
        return create_background_task(self._run_command(name, handler, params), name=f"command:{name}")

    async def _run_command(self, name: str, handler: Handler, params: Any) -> None:
        try:
            await handler(params)
        except Exception as exc:
            logger.exception("Command failed", command=name)
            self.bus.log_line(f"{name} failed: {exc}", level="error")

    async def install_runtime(self) -> None:
        self.bus.log_line("Installing the container runtime...")
        failure = await self.supervisor.install()
        if failure is not None:
            self._emit_runtime_status(failure)
            self.bus.log_line(failure.describe(), level="error")
            return
        result = await self.supervisor.ensure_ready()
        self._emit_runtime_status(result)
        if isinstance(result, RuntimeState):
            self.bus.emit(InstallCompleteEvent())
            await self.prepare_environment()
        else:
            self.bus.log_line(result.describe(), level="error")

    async def start_gateway(self) -> None:
        await self._report(await self.compose.start(), "Gateway started")

    async def stop_gateway(self) -> None:
        await self._report(await self.compose.stop(), "Gateway stopped")

    async def _report(self, result: str | Failure, done: str) -> None:
        if isinstance(result, Failure):
            self.bus.log_line(result.describe(), level="error")
        else:
            self.bus.log_line(result or done)

    async def save_env(self, values: dict[str, str]) -> None:
        update_env_file(self.settings.env_path, values)
        self.bus.log_line("Environment saved, restarting the gateway")
        await self.stop_gateway()
        await self.start_gateway()

    async def save_domain(self, domain: DomainConfig) -> None:
        save_domain(self.settings.domain_path, domain)
        self.bus.emit(DomainLoadedEvent(domain=domain.public_view()))
        self.bus.log_line(f"Domain {domain.fqdn} saved")
        await self.domains.check_and_reconcile(domain)

    async def deploy_proxy(self) -> None:
        domain = load_domain(self.settings.domain_path)
        if domain is None:
            self.bus.log_line("Save a domain before deploying the proxy", level="warning")
            return
        result = await self.proxy.deploy(domain)
        if result.ok:
            self.bus.log_line(f"Proxy deployed for {domain.fqdn}")

    async def load_wallet(self, path: Path) -> None:
        try:
            address = import_wallet(path, self.settings.wallets_dir, self.settings.env_path)
        except ValueError as exc:
            self.bus.log_line(f"Failed to load wallet: {exc}", level="error")
            return
        self.bus.log_line(f"Wallet {address} loaded and OBSERVER_WALLET set")

    async def confirm(self, request_id: str, accepted: bool) -> None:
        if not self.confirmations.answer(request_id, accepted):
            self.bus.log_line(f"No pending question {request_id}", level="warning")
