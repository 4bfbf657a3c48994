"""The node's environment file (``KEY=value`` per line).

Reads go through python-dotenv. Writes stay line-based: each updated key ends
up on exactly one line (``dotenv.set_key`` would rewrite every duplicate), and
comments, blank lines and untouched keys keep their original order.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

from nodeforge.artifacts import ArtifactResult, write_artifact
from nodeforge.logger import logger

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _line_key(line: str) -> str | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key = stripped.split("=", 1)[0].strip()
    if key.startswith("export "):
        key = key[len("export ") :].strip()
    return key or None


def validate_entries(values: Mapping[str, str]) -> dict[str, str]:
    """Reject keys the compose tool cannot parse and values that would split lines."""
    clean: dict[str, str] = {}
    for key, value in values.items():
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid environment variable name: {key!r}")
        text = "" if value is None else str(value)
        if "\n" in text or "\r" in text:
            raise ValueError(f"Value for {key} must be a single line")
        clean[key] = text
    return clean


def upsert_env_text(text: str, updates: Mapping[str, str]) -> str:
    """Return *text* with *updates* applied.

    Existing keys are rewritten in place (extra duplicate lines of an updated
    key are dropped so exactly one remains); new keys are appended in the
    order given.
    """
    updates = validate_entries(updates)
    seen: set[str] = set()
    out: list[str] = []
    for line in text.splitlines():
        key = _line_key(line)
        if key is not None and key in updates:
            if key in seen:
                continue
            out.append(f"{key}={updates[key]}")
            seen.add(key)
        else:
            out.append(line)
    for key, value in updates.items():
        if key not in seen:
            out.append(f"{key}={value}")
    return "\n".join(out) + "\n" if out else ""


def read_env(path: Path) -> dict[str, str]:
    """Current values; a key with no ``=`` reads as empty."""
    if not path.exists():
        return {}
    return {key: value or "" for key, value in dotenv_values(path, encoding="utf-8").items()}


def update_env_file(path: Path, updates: Mapping[str, str]) -> ArtifactResult:
    current = path.read_text(encoding="utf-8") if path.exists() else ""
    result = write_artifact(path, upsert_env_text(current, updates))
    logger.info("Environment file updated", path=str(path), keys=sorted(updates))
    return result


def ensure_env_file(path: Path, defaults: Mapping[str, str]) -> bool:
    """Create the env file with *defaults* if missing. Returns True if created."""
    if path.exists():
        return False
    write_artifact(path, upsert_env_text("", defaults))
    logger.info("Environment file created with defaults", path=str(path))
    return True
