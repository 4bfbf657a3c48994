"""Orchestration manifest sync and service group start/stop.

The local manifest is only ever replaced by the operator's decision: a remote
copy that differs is parked next to it as ``<manifest>.pending`` until
:meth:`ComposeController.apply_update` or :meth:`discard_update` is called.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import yaml

from nodeforge.config import ComposeConfig
from nodeforge.errors import ErrorKind, Failure, failure_from_command
from nodeforge.logger import logger
from nodeforge.utils import ProcessRunner, download_to, log_command_result


class SyncStatus(StrEnum):
    INSTALLED = "installed"  # first download, promoted without asking
    UNCHANGED = "unchanged"
    NEEDS_CONFIRMATION = "needs_confirmation"


@dataclass(frozen=True)
class ManifestSync:
    status: SyncStatus
    pending_path: Path | None = None


def file_digest(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def manifest_network(manifest_path: Path) -> str | None:
    """First network declared in the manifest, or None."""
    try:
        data = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read manifest networks", path=str(manifest_path), err=str(exc))
        return None
    if not isinstance(data, dict):
        return None
    networks = data.get("networks")
    if isinstance(networks, dict) and networks:
        return str(next(iter(networks)))
    return None


class ComposeController:
    def __init__(
        self,
        config: ComposeConfig,
        runner: ProcessRunner,
        *,
        manifest_path: Path,
        env_path: Path,
    ) -> None:
        self._config = config
        self._runner = runner
        self._manifest_path = manifest_path
        self._env_path = env_path

    @property
    def manifest_path(self) -> Path:
        return self._manifest_path

    @property
    def pending_path(self) -> Path:
        # Same directory, so promotion is an atomic rename
        return self._manifest_path.with_name(self._manifest_path.name + ".pending")

    async def sync_manifest(self) -> ManifestSync | Failure:
        pending = self.pending_path
        failure = await download_to(
            self._config.manifest_url, pending, timeout=self._config.download_timeout
        )
        if failure is not None:
            logger.warning("Manifest download failed", err=failure.describe())
            return failure

        if not self._manifest_path.exists():
            pending.replace(self._manifest_path)
            logger.info("Manifest installed", path=str(self._manifest_path))
            return ManifestSync(SyncStatus.INSTALLED)

        if file_digest(pending) == file_digest(self._manifest_path):
            pending.unlink(missing_ok=True)
            logger.debug("Manifest unchanged")
            return ManifestSync(SyncStatus.UNCHANGED)

        logger.info("Remote manifest differs from local copy", pending=str(pending))
        return ManifestSync(SyncStatus.NEEDS_CONFIRMATION, pending_path=pending)

    def apply_update(self, pending: Path) -> Failure | None:
        """Promote a confirmed pending manifest over the local one."""
        try:
            pending.replace(self._manifest_path)
        except OSError as exc:
            return Failure(ErrorKind.INVALID, f"Could not apply manifest update: {exc}")
        logger.info("Manifest updated", path=str(self._manifest_path))
        return None

    def discard_update(self, pending: Path) -> None:
        pending.unlink(missing_ok=True)
        logger.info("Manifest update declined", path=str(self._manifest_path))

    def network_name(self) -> str | None:
        return self._config.network or manifest_network(self._manifest_path)

    async def start(self) -> str | Failure:
        return await self._run("up", "-d")

    async def stop(self) -> str | Failure:
        return await self._run("down")

    async def _run(self, *action: str) -> str | Failure:
        if not self._manifest_path.exists():
            return Failure(ErrorKind.INVALID, f"No manifest at {self._manifest_path}")
        args = [
            *self._config.command,
            "-f",
            str(self._manifest_path),
            "--env-file",
            str(self._env_path),
            *action,
        ]
        result = await self._runner.run(
            args, timeout=self._config.timeout, cwd=self._manifest_path.parent
        )
        label = f"compose {action[0]}"
        log_command_result(result, label=label)
        if not result.ok:
            return failure_from_command(result, label)
        # compose writes progress to stderr
        return result.stdout or result.stderr
