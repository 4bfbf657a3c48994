"""Operator yes/no prompts.

    component calls ask(title, message)
        -> broker emits confirmation-request {request_id, ...}
        -> UI posts the answer to /api/confirmations/{request_id}
        -> answer(request_id, accepted) resolves the waiting future

An unanswered prompt expires after ``timeout`` seconds and resolves to the
caller's default, which is always the non-mutating choice.
"""

from __future__ import annotations

import asyncio
import uuid

from nodeforge.events import ConfirmationRequestEvent, EventBus
from nodeforge.logger import logger

# How long a prompt waits for the operator (seconds).
DEFAULT_CONFIRMATION_TIMEOUT = 1800.0


class ConfirmationBroker:
    def __init__(self, bus: EventBus, *, timeout: float = DEFAULT_CONFIRMATION_TIMEOUT) -> None:
        self._bus = bus
        self._timeout = timeout
        self._pending: dict[str, asyncio.Future[bool]] = {}

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    async def ask(self, title: str, message: str, *, default: bool = False) -> bool:
        """Emit a confirmation request and wait for the operator's answer."""
        request_id = uuid.uuid4().hex
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        logger.info("Confirmation requested", request_id=request_id, title=title)
        self._bus.emit(ConfirmationRequestEvent(request_id=request_id, title=title, message=message))
        try:
            return await asyncio.wait_for(future, timeout=self._timeout)
        except TimeoutError:
            logger.warning("Confirmation expired", request_id=request_id, title=title)
            return default
        finally:
            self._pending.pop(request_id, None)

    def answer(self, request_id: str, accepted: bool) -> bool:
        """Resolve a pending prompt. Returns False if it is unknown or already answered."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.warning("Answer for unknown confirmation", request_id=request_id)
            return False
        future.set_result(bool(accepted))
        logger.info("Confirmation answered", request_id=request_id, accepted=accepted)
        return True
