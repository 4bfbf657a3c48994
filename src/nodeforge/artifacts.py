"""Idempotent materialization of generated configuration files."""

from __future__ import annotations

import stat
from dataclasses import dataclass
from pathlib import Path

from nodeforge.logger import logger
from nodeforge.utils import write_text_atomic


@dataclass(frozen=True)
class ArtifactResult:
    path: Path
    changed: bool  # False when the file already held exactly this content


def write_artifact(path: Path, content: str, *, mode: int | None = None) -> ArtifactResult:
    """Write *content* to *path* unless it is already there byte-for-byte.

    A matching file whose permission bits differ from *mode* only gets chmod'ed
    and still reports ``changed=False``.
    """
    data = content.encode("utf-8")
    if path.is_file() and path.read_bytes() == data:
        if mode is not None and stat.S_IMODE(path.stat().st_mode) != mode:
            path.chmod(mode)
        logger.debug("Artifact up to date", path=str(path))
        return ArtifactResult(path=path, changed=False)

    write_text_atomic(path, content, mode=mode)
    logger.info("Artifact written", path=str(path))
    return ArtifactResult(path=path, changed=True)


def ensure_directories(*paths: Path) -> list[Path]:
    """Create missing directories; return the ones that were created."""
    created: list[Path] = []
    for path in paths:
        if not path.is_dir():
            path.mkdir(parents=True, exist_ok=True)
            created.append(path)
    return created
