from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict

from duorelay.config import load_config
from duorelay.server.runtime import RelayServer

log = logging.getLogger("duorelay.cmd.server")


async def _run(config: Dict[str, Any]) -> None:
    server = RelayServer(config)
    await server.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Two-party WebSocket message relay")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: config/default.yaml)")
    parser.add_argument("--host", default=None, help="Interface to listen on")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (overrides config and $PORT)")
    parser.add_argument("--log-level", default=None, help="Logging level, e.g. DEBUG or INFO")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.host is not None:
        config["server"]["host"] = args.host
    if args.port is not None:
        config["server"]["port"] = args.port
    level = (args.log_level or config["logging"].get("level", "INFO")).upper()

    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
