"""nettap command line.

Usage:
  nettap serve [--port N] [--host H]   Run a standalone leader in the foreground
  nettap status [--port N] [--host H]  Show the leader's health on a port
"""

import asyncio
import json
import logging
import signal
import sys

import httpx

from nettap.config import load_config
from nettap.services import NettapService
from nettap.types import Role

logger = logging.getLogger("nettap")


def _option(args: list[str], flag: str) -> str | None:
    """Value following ``flag`` in ``args``, if present."""
    if flag in args:
        index = args.index(flag)
        if index + 1 < len(args):
            return args[index + 1]
    return None


def _overrides(args: list[str]) -> dict:
    overrides: dict = {}
    port = _option(args, "--port")
    if port is not None:
        overrides["port"] = int(port)
    host = _option(args, "--host")
    if host is not None:
        overrides["host"] = host
    return overrides


async def _serve(args: list[str]) -> int:
    # A standalone leader never spawns another one
    config = load_config(**_overrides(args), detached=False)
    service = NettapService(config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    await service.start()
    if service.role != Role.LEADER:
        logger.error(f"Port {config.port} is already served by another nettap leader")
        await service.stop()
        return 1

    print(f"nettap serving on http://{config.host}:{config.port}/json")
    await stop.wait()
    await service.stop()
    return 0


def _status(args: list[str]) -> int:
    config = load_config(**_overrides(args))
    url = f"http://{config.host}:{config.port}/health"
    try:
        resp = httpx.get(url, timeout=2)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"No nettap leader on port {config.port}: {e}")
        return 1
    print(json.dumps(resp.json(), indent=2))
    return 0


def main():
    """Run a nettap subcommand from sys.argv."""
    args = sys.argv[1:]
    command = args[0] if args else "serve"

    logging.basicConfig(
        level=logging.DEBUG if "--debug" in args else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    if command == "serve":
        sys.exit(asyncio.run(_serve(args[1:])))
    elif command == "status":
        sys.exit(_status(args[1:]))
    else:
        print(f"Unknown command: {command}")
        print("Usage: nettap [serve|status] [--port N] [--host H] [--debug]")
        sys.exit(1)


if __name__ == "__main__":
    main()
