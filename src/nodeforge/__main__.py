"""Entry point for `python -m nodeforge` / `nodeforge`.

Subcommands:
    nodeforge           Run the service (default)
    nodeforge check     Probe the runtime and print the node's state
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys


async def _serve() -> None:
    from nodeforge.config import get_settings
    from nodeforge.events import EventBus
    from nodeforge.http_server import start_http_server
    from nodeforge.logger import logger, set_level
    from nodeforge.orchestrator import Orchestrator

    s = get_settings()
    set_level(s.logging.level)
    orchestrator = Orchestrator(s, EventBus())
    runner = await start_http_server(orchestrator)
    await orchestrator.startup()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows event loops have no signal handler support
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await orchestrator.shutdown()
        await runner.cleanup()


async def _check() -> int:
    from nodeforge.compose import manifest_network
    from nodeforge.config import get_settings
    from nodeforge.domain import load_domain
    from nodeforge.runtime import RuntimeSupervisor
    from nodeforge.utils import ProcessRunner

    s = get_settings()
    state = await RuntimeSupervisor(s.runtime, ProcessRunner()).probe()
    domain = load_domain(s.domain_path)
    report = {
        "node_dir": str(s.node_dir),
        "runtime": {
            "installed": state.installed,
            "daemon_running": state.daemon_running,
            "version": state.version,
        },
        "manifest": s.manifest_path.exists(),
        "network": s.compose.network or (
            manifest_network(s.manifest_path) if s.manifest_path.exists() else None
        ),
        "env_file": s.env_path.exists(),
        "domain": domain.public_view() if domain else None,
    }
    print(json.dumps(report, indent=2))
    return 0 if state.daemon_running else 1


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="nodeforge",
        description="Gateway node provisioning and supervision",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the service (default)")
    sub.add_parser("check", help="Probe the runtime and print the node's state")

    args = parser.parse_args()

    match args.command:
        case "check":
            sys.exit(asyncio.run(_check()))
        case _:
            asyncio.run(_serve())


if __name__ == "__main__":
    main()
