"""Wallet keyfile import."""

from __future__ import annotations

import base64
import hashlib
import json
from pathlib import Path
from typing import Any

from nodeforge.artifacts import write_artifact
from nodeforge.envfile import update_env_file
from nodeforge.logger import logger

OBSERVER_WALLET_KEY = "OBSERVER_WALLET"


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def wallet_address(jwk: dict[str, Any]) -> str:
    """Address of an RSA JWK: base64url(sha256(modulus)) without padding."""
    modulus = jwk.get("n")
    if jwk.get("kty") != "RSA" or not isinstance(modulus, str) or not modulus:
        raise ValueError("Not an RSA JWK wallet (missing kty=RSA or n)")
    digest = hashlib.sha256(_b64url_decode(modulus)).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def import_wallet(source: Path, wallets_dir: Path, env_path: Path) -> str:
    """Copy the keyfile to ``wallets/<address>.json`` and point OBSERVER_WALLET at it.

    Raises ValueError for unreadable or non-wallet files.
    """
    try:
        raw = source.read_text(encoding="utf-8")
        jwk = json.loads(raw)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Could not read wallet file {source}: {exc}") from exc
    if not isinstance(jwk, dict):
        raise ValueError(f"Wallet file {source} is not a JSON object")

    address = wallet_address(jwk)
    write_artifact(wallets_dir / f"{address}.json", raw, mode=0o600)
    update_env_file(env_path, {OBSERVER_WALLET_KEY: address})
    logger.info("Wallet imported", address=address)
    return address
