"""Tests for operator confirmation prompts."""

from __future__ import annotations

import asyncio

from conftest import drain

from nodeforge.confirmations import ConfirmationBroker
from nodeforge.events import ConfirmationRequestEvent, EventBus


def _broker(timeout: float = 5.0) -> tuple[ConfirmationBroker, list[ConfirmationRequestEvent]]:
    bus = EventBus()
    requests: list[ConfirmationRequestEvent] = []

    async def listener(event):
        requests.append(event)

    bus.subscribe(ConfirmationRequestEvent, listener)
    return ConfirmationBroker(bus, timeout=timeout), requests


class TestConfirmationBroker:
    async def test_answer_resolves_ask(self):
        broker, requests = _broker()
        task = asyncio.create_task(broker.ask("Update?", "A new manifest is available"))
        await drain()

        assert len(requests) == 1
        assert requests[0].title == "Update?"
        assert broker.pending_ids == [requests[0].request_id]

        assert broker.answer(requests[0].request_id, True) is True
        assert await task is True
        assert broker.pending_ids == []

    async def test_declined(self):
        broker, requests = _broker()
        task = asyncio.create_task(broker.ask("Install?", "msg"))
        await drain()
        broker.answer(requests[0].request_id, False)
        assert await task is False

    async def test_timeout_returns_default(self):
        broker, _ = _broker(timeout=0.01)
        assert await broker.ask("Install?", "msg") is False
        assert await broker.ask("Install?", "msg", default=True) is True
        assert broker.pending_ids == []

    async def test_unknown_or_repeated_answer(self):
        broker, requests = _broker()
        assert broker.answer("nope", True) is False

        task = asyncio.create_task(broker.ask("Q", "msg"))
        await drain()
        request_id = requests[0].request_id
        assert broker.answer(request_id, True) is True
        assert broker.answer(request_id, False) is False
        assert await task is True

    async def test_concurrent_prompts_are_independent(self):
        broker, requests = _broker()
        first = asyncio.create_task(broker.ask("First", "msg"))
        second = asyncio.create_task(broker.ask("Second", "msg"))
        await drain()

        by_title = {r.title: r.request_id for r in requests}
        broker.answer(by_title["Second"], True)
        broker.answer(by_title["First"], False)

        assert await first is False
        assert await second is True
