"""Lightweight asyncio event bus carrying operator-facing status events."""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

from nodeforge.logger import logger

# --- Event types ---


@dataclass
class RuntimeStatusEvent:
    """Result of a runtime readiness check."""

    name: ClassVar[str] = "runtime-status"

    installed: bool
    daemon_running: bool
    error: str | None = None
    error_kind: str | None = None


@dataclass
class InstallCompleteEvent:
    """The container runtime is installed and its daemon is up."""

    name: ClassVar[str] = "install-complete"


@dataclass
class LogLineEvent:
    """One line of operator-visible progress output."""

    name: ClassVar[str] = "log-line"

    message: str
    level: str = "info"


@dataclass
class ButtonStateEvent:
    name: ClassVar[str] = "button-state"

    state: str  # "start" | "stop"


@dataclass
class DomainLoadedEvent:
    """Saved domain configuration, or None when nothing is saved yet."""

    name: ClassVar[str] = "domain-loaded"

    domain: dict[str, Any] | None


@dataclass
class ConfirmationRequestEvent:
    """Ask the operator a yes/no question; answered via the ``confirm`` command."""

    name: ClassVar[str] = "confirmation-request"

    request_id: str
    title: str
    message: str
    options: list[str] = field(default_factory=lambda: ["yes", "no"])


type Event = (
    RuntimeStatusEvent
    | InstallCompleteEvent
    | LogLineEvent
    | ButtonStateEvent
    | DomainLoadedEvent
    | ConfirmationRequestEvent
)
type Listener = Callable[[Any], Coroutine[Any, Any, None]]


def to_wire(event: Event) -> dict[str, Any]:
    """Serialize an event to the ``{"event": ..., "data": ...}`` UI shape."""
    return {"event": event.name, "data": asdict(event)}


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)
        self._global: list[Listener] = []

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to every event type (used by the SSE stream)."""
        self._global.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._global.remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        for listener in [*self._listeners[type(event)], *self._global]:
            asyncio.ensure_future(_safe_call(listener, event))

    def log_line(self, message: str, *, level: str = "info") -> None:
        """Emit an operator log line and mirror it to the structured log."""
        getattr(logger, level, logger.info)(message)
        self.emit(LogLineEvent(message=message, level=level))


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning("EventBus listener error", err=str(exc))
