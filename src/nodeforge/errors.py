"""Error taxonomy shared by every component.

Components never let exceptions escape their public methods. Internally a
stage raises :class:`GatewayError`; the component boundary catches it and
returns the wrapped :class:`Failure` as a structured result.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nodeforge.utils import CommandResult


class ErrorKind(StrEnum):
    UNAVAILABLE = "unavailable"  # dependency absent (runtime, daemon, CLI tool)
    INSTALL_FAILED = "install_failed"
    DAEMON_START_FAILED = "daemon_start_failed"
    TRANSPORT = "transport"  # download / API / DNS failure with a known outcome
    DRIFT = "drift"  # local vs remote configuration mismatch
    EXTERNAL_TOOL = "external_tool"  # non-zero exit from a spawned process
    TIMEOUT = "timeout"  # outcome unknown
    INVALID = "invalid"  # malformed operator input or local file


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    detail: str = ""

    def describe(self) -> str:
        """Operator-facing text. Timeouts are worded so they are not read as a known failure."""
        if self.kind == ErrorKind.TIMEOUT:
            text = f"Timed out, outcome unknown: {self.message}"
        else:
            text = self.message
        if self.detail:
            text = f"{text}\n{self.detail}"
        return text


class GatewayError(Exception):
    """Raised inside a component stage; carries the Failure to report."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.message)
        self.failure = failure

    @classmethod
    def of(cls, kind: ErrorKind, message: str, detail: str = "") -> GatewayError:
        return cls(Failure(kind=kind, message=message, detail=detail))


def failure_from_command(result: CommandResult, label: str) -> Failure:
    """Map an unsuccessful command result onto the taxonomy."""
    if result.start_error:
        return Failure(ErrorKind.UNAVAILABLE, f"{label}: could not start", result.start_error)
    if result.timed_out:
        return Failure(ErrorKind.TIMEOUT, f"{label} did not finish in time")
    return Failure(
        ErrorKind.EXTERNAL_TOOL,
        f"{label} failed (exit code {result.returncode})",
        result.stderr,
    )
