"""Tests for lifecycle sequencing and command dispatch."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import collect_events, drain
from pydantic import ValidationError

from nodeforge.compose import ManifestSync, SyncStatus
from nodeforge.domain import DomainConfig, save_domain
from nodeforge.envfile import read_env
from nodeforge.errors import ErrorKind, Failure
from nodeforge.events import DomainLoadedEvent, InstallCompleteEvent, LogLineEvent, RuntimeStatusEvent
from nodeforge.orchestrator import Orchestrator, UnknownCommandError
from nodeforge.runtime import RuntimeState

READY = RuntimeState(installed=True, daemon_running=True, version="Docker version 27")


def _compose() -> MagicMock:
    compose = MagicMock()
    compose.sync_manifest = AsyncMock(return_value=ManifestSync(SyncStatus.UNCHANGED))
    compose.start = AsyncMock(return_value="")
    compose.stop = AsyncMock(return_value="")
    compose.apply_update = MagicMock(return_value=None)
    compose.network_name = MagicMock(return_value="ar-io-network")
    return compose


def _orchestrator(settings, bus, *, answer=True, ready=READY, **overrides) -> Orchestrator:
    supervisor = MagicMock()
    supervisor.ensure_ready = AsyncMock(return_value=ready)
    supervisor.install = AsyncMock(return_value=None)
    confirmations = MagicMock()
    confirmations.ask = AsyncMock(return_value=answer)
    confirmations.answer = MagicMock(return_value=True)
    reconciler = MagicMock()
    reconciler.tick = AsyncMock(return_value=None)
    reconciler.run = AsyncMock(return_value=None)
    network = MagicMock()
    network.ensure_firewall_ports = AsyncMock()
    network.forward_ports = AsyncMock(return_value=set())
    parts = {
        "supervisor": supervisor,
        "compose": _compose(),
        "network": network,
        "confirmations": confirmations,
        "domains": MagicMock(check_and_reconcile=AsyncMock(return_value={})),
        "proxy": MagicMock(),
        "reconciler": reconciler,
    }
    parts.update(overrides)
    return Orchestrator(settings, bus, **parts)


def _lines(events) -> list[LogLineEvent]:
    return [e for e in events if isinstance(e, LogLineEvent)]


class TestSubmit:
    def test_unknown_command(self, settings, bus):
        with pytest.raises(UnknownCommandError):
            _orchestrator(settings, bus).submit("reboot-host")

    def test_invalid_payload_rejected_before_running(self, settings, bus):
        orch = _orchestrator(settings, bus)
        with pytest.raises(ValidationError):
            orch.submit("save-env", {"values": {"BAD KEY": "x"}})
        with pytest.raises(ValidationError):
            orch.submit("start-gateway", {"unexpected": 1})
        with pytest.raises(ValidationError):
            orch.submit("save-domain", {"fqdn": "example.com", "use_registrar_api": True})
        orch.compose.start.assert_not_awaited()

    def test_command_names(self, settings, bus):
        assert "deploy-proxy" in _orchestrator(settings, bus).command_names

    async def test_handler_exception_becomes_log_line(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        orch.compose.start.side_effect = RuntimeError("socket closed")
        await orch.submit("start-gateway")
        await drain()
        assert any(e.level == "error" and "start-gateway failed" in e.message for e in _lines(events))


class TestStartup:
    async def test_creates_env_and_reports_domain(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        await orch.startup()
        await drain()
        await orch.shutdown()

        assert read_env(settings.env_path) == {"AR_IO_WALLET": "", "OBSERVER_WALLET": ""}
        assert settings.wallets_dir.is_dir()
        assert DomainLoadedEvent(domain=None) in events
        orch.network.ensure_firewall_ports.assert_awaited_once_with([80, 443])
        orch.reconciler.run.assert_awaited_once()

    async def test_existing_env_untouched(self, settings, bus):
        settings.env_path.write_text("AR_IO_WALLET=abc\n")
        orch = _orchestrator(settings, bus)
        await orch.startup()
        await drain()
        await orch.shutdown()
        assert settings.env_path.read_text() == "AR_IO_WALLET=abc\n"

    async def test_unset_wallet_keys_warn(self, settings, bus):
        settings.env_path.write_text("AR_IO_WALLET=abc\n")
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        await orch.startup()
        await drain()
        await orch.shutdown()
        warnings = [e.message for e in _lines(events) if e.level == "warning"]
        assert any("OBSERVER_WALLET" in m for m in warnings)
        assert not any("AR_IO_WALLET" in m for m in warnings)

    async def test_saved_domain_hides_key(self, settings, bus):
        save_domain(
            settings.domain_path,
            DomainConfig(fqdn="example.com", use_registrar_api=True, api_user="a", api_key="s3cret"),
        )
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        await orch.startup()
        await drain()
        await orch.shutdown()
        loaded = next(e for e in events if isinstance(e, DomainLoadedEvent))
        assert loaded.domain["fqdn"] == "example.com"
        assert "s3cret" not in json.dumps(loaded.domain)

    async def test_unforwarded_ports_advise(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        orch.network.forward_ports.return_value = {443}
        await orch.provision_network()
        await drain()
        assert any(e.level == "warning" and "443" in e.message for e in _lines(events))


class TestSetupRuntime:
    async def test_ready_runtime_prepares_environment(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        await orch.setup_runtime()
        await drain()
        assert RuntimeStatusEvent(installed=True, daemon_running=True) in events
        assert InstallCompleteEvent() in events
        orch.compose.sync_manifest.assert_awaited_once()
        orch.reconciler.tick.assert_awaited_once()

    async def test_missing_runtime_installs_after_consent(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus, ready=Failure(ErrorKind.UNAVAILABLE, "not installed"))
        orch.supervisor.ensure_ready.side_effect = [Failure(ErrorKind.UNAVAILABLE, "not installed"), READY]
        await orch.setup_runtime()
        await drain()
        orch.supervisor.install.assert_awaited_once()
        assert InstallCompleteEvent() in events

    async def test_missing_runtime_declined(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus, answer=False, ready=Failure(ErrorKind.UNAVAILABLE, "not installed"))
        await orch.setup_runtime()
        await drain()
        orch.supervisor.install.assert_not_awaited()
        status = next(e for e in events if isinstance(e, RuntimeStatusEvent))
        assert status.installed is False
        assert status.error_kind == "unavailable"

    async def test_install_failure_reported(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        orch.supervisor.install.return_value = Failure(ErrorKind.TIMEOUT, "installer hung")
        await orch.install_runtime()
        await drain()
        assert any("Timed out, outcome unknown" in e.message for e in _lines(events))
        orch.supervisor.ensure_ready.assert_not_awaited()

    async def test_daemon_failure_reported(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus, ready=Failure(ErrorKind.DAEMON_START_FAILED, "daemon did not start"))
        await orch.setup_runtime()
        await drain()
        orch.confirmations.ask.assert_not_awaited()
        assert any(e.level == "error" for e in _lines(events))


class TestPrepareEnvironment:
    async def test_update_accepted(self, settings, bus):
        orch = _orchestrator(settings, bus, answer=True)
        pending = Path("docker-compose.yaml.pending")
        orch.compose.sync_manifest.return_value = ManifestSync(SyncStatus.NEEDS_CONFIRMATION, pending)
        await orch.prepare_environment()
        orch.compose.apply_update.assert_called_once_with(pending)
        orch.compose.discard_update.assert_not_called()

    async def test_update_declined(self, settings, bus):
        orch = _orchestrator(settings, bus, answer=False)
        pending = Path("docker-compose.yaml.pending")
        orch.compose.sync_manifest.return_value = ManifestSync(SyncStatus.NEEDS_CONFIRMATION, pending)
        await orch.prepare_environment()
        orch.compose.discard_update.assert_called_once_with(pending)
        orch.compose.apply_update.assert_not_called()

    async def test_update_without_pending_path_uses_controller_path(self, settings, bus):
        orch = _orchestrator(settings, bus, answer=True)
        orch.compose.pending_path = Path("fallback.pending")
        orch.compose.sync_manifest.return_value = ManifestSync(SyncStatus.NEEDS_CONFIRMATION)
        await orch.prepare_environment()
        orch.compose.apply_update.assert_called_once_with(Path("fallback.pending"))

    async def test_download_failure_still_reconciles(self, settings, bus):
        orch = _orchestrator(settings, bus)
        orch.compose.sync_manifest.return_value = Failure(ErrorKind.TRANSPORT, "offline")
        await orch.prepare_environment()
        orch.confirmations.ask.assert_not_awaited()
        orch.reconciler.tick.assert_awaited_once()


class TestCommands:
    async def test_save_env_restarts_gateway(self, settings, bus):
        orch = _orchestrator(settings, bus)
        calls = MagicMock()
        calls.attach_mock(orch.compose.stop, "stop")
        calls.attach_mock(orch.compose.start, "start")

        await orch.submit("save-env", {"values": {"AR_IO_WALLET": "abc"}})

        assert read_env(settings.env_path)["AR_IO_WALLET"] == "abc"
        assert [c[0] for c in calls.mock_calls] == ["stop", "start"]

    async def test_save_domain_persists_and_reconciles(self, settings, bus):
        orch = _orchestrator(settings, bus)
        await orch.submit("save-domain", {"fqdn": "Example.com"})
        assert json.loads(settings.domain_path.read_text())["fqdn"] == "example.com"
        orch.domains.check_and_reconcile.assert_awaited_once()

    async def test_deploy_without_domain_warns(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        orch.proxy.deploy = AsyncMock()
        await orch.submit("deploy-proxy")
        await drain()
        orch.proxy.deploy.assert_not_awaited()
        assert any(e.level == "warning" for e in _lines(events))

    async def test_bad_wallet_reported(self, settings, bus, tmp_path):
        events = collect_events(bus)
        bad = tmp_path / "wallet.json"
        bad.write_text("[]")
        await _orchestrator(settings, bus).submit("load-wallet-file", {"path": str(bad)})
        await drain()
        assert any(e.level == "error" and "Failed to load wallet" in e.message for e in _lines(events))

    async def test_confirm_forwards_answer(self, settings, bus):
        orch = _orchestrator(settings, bus)
        await orch.submit("confirm", {"request_id": "abc", "accepted": True})
        orch.confirmations.answer.assert_called_once_with("abc", True)

    async def test_gateway_failure_reported(self, settings, bus):
        events = collect_events(bus)
        orch = _orchestrator(settings, bus)
        orch.compose.stop.return_value = Failure(ErrorKind.EXTERNAL_TOOL, "compose down failed")
        await orch.submit("stop-gateway")
        await drain()
        assert any(e.level == "error" and "compose down failed" in e.message for e in _lines(events))
