"""Embedded HTTP server: the UI's command/event channel and the challenge hook callbacks.

Listens on [server] host:port. The proxy container reaches the ``/acme/*``
endpoints through ``host.docker.internal``; those are guarded by the
per-deployment hook token, the rest by the optional API token.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import time
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from nodeforge.errors import GatewayError
from nodeforge.events import Event, to_wire
from nodeforge.logger import logger
from nodeforge.orchestrator import Orchestrator, UnknownCommandError

orchestrator_key = web.AppKey("orchestrator", Orchestrator)

_start_time = time.monotonic()


def _bearer(request: web.Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


def _authorized(request: web.Request) -> bool:
    token = request.app[orchestrator_key].settings.server.api_token
    if token is None:
        return True
    return secrets.compare_digest(_bearer(request), token.get_secret_value())


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


# ------------------------------------------------------------------
# UI endpoints
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    orch = request.app[orchestrator_key]
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "installing": orch.install_status.installing,
            "pending_confirmations": orch.confirmations.pending_ids,
        }
    )


async def _handle_events(request: web.Request) -> web.StreamResponse:
    """SSE stream of every bus event."""
    orch = request.app[orchestrator_key]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    await response.prepare(request)

    queue: asyncio.Queue[Event] = asyncio.Queue()

    async def on_event(event: Event) -> None:
        await queue.put(event)

    unsubscribe = orch.bus.subscribe_all(on_event)

    try:
        while True:
            event = await queue.get()
            data = json.dumps(to_wire(event))
            await response.write(f"data: {data}\n\n".encode())
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        unsubscribe()

    return response


async def _handle_command(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response({"error": "unauthorized"}, status=401)
    orch = request.app[orchestrator_key]
    name = request.match_info["name"]
    payload = await _read_json(request)
    if payload is None:
        return web.json_response({"error": "body must be a JSON object"}, status=400)
    try:
        orch.submit(name, payload)
    except UnknownCommandError:
        return web.json_response(
            {"error": f"unknown command: {name}", "commands": orch.command_names}, status=404
        )
    except ValidationError as exc:
        return web.json_response(
            {"error": "invalid payload", "details": exc.errors(include_url=False, include_context=False)},
            status=400,
        )
    return web.json_response({"status": "accepted", "command": name}, status=202)


async def _handle_confirmation(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response({"error": "unauthorized"}, status=401)
    orch = request.app[orchestrator_key]
    body = await _read_json(request)
    if body is None or not isinstance(body.get("accepted"), bool):
        return web.json_response({"error": "accepted (bool) required"}, status=400)
    if not orch.confirmations.answer(request.match_info["request_id"], body["accepted"]):
        return web.json_response({"error": "no such pending confirmation"}, status=404)
    return web.json_response({"status": "ok"})


# ------------------------------------------------------------------
# Challenge hook callbacks
# ------------------------------------------------------------------


async def _handle_acme(request: web.Request) -> web.Response:
    orch = request.app[orchestrator_key]
    service = orch.challenges.get(_bearer(request))
    if service is None:
        return web.json_response({"error": "unauthorized"}, status=401)
    body = await _read_json(request)
    domain = (body or {}).get("domain")
    validation = (body or {}).get("validation")
    if not isinstance(domain, str) or not isinstance(validation, str) or not domain or not validation:
        return web.json_response({"error": "domain and validation required"}, status=400)

    action = request.match_info["action"]
    if action == "cleanup":
        removed = await service.cleanup(domain, validation)
        return web.json_response({"status": "ok", "removed": removed})

    try:
        attempt = await service.publish(domain, validation)
    except GatewayError as exc:
        logger.error("Challenge publish failed", domain=domain, err=exc.failure.describe())
        return web.json_response({"error": exc.failure.describe()}, status=502)
    return web.json_response({"status": "ok", "attempt": attempt})


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def create_app(orchestrator: Orchestrator) -> web.Application:
    app = web.Application()
    app[orchestrator_key] = orchestrator
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/events", _handle_events)
    app.router.add_post("/api/commands/{name}", _handle_command)
    app.router.add_post("/api/confirmations/{request_id}", _handle_confirmation)
    app.router.add_post("/acme/{action:auth|cleanup}", _handle_acme)
    return app


async def start_http_server(orchestrator: Orchestrator) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    server = orchestrator.settings.server
    runner = web.AppRunner(create_app(orchestrator))
    await runner.setup()
    site = web.TCPSite(runner, server.host, server.port)
    await site.start()
    logger.info("HTTP server listening", host=server.host, port=server.port)
    return runner
