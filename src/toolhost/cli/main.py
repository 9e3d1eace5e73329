"""
Command line entry point.

    toolhost --config host.yaml servers
    toolhost --config host.yaml tools --server echo
    toolhost --config host.yaml call echo ping --args '{"text": "hi"}'
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional

from loguru import logger

from toolhost import __version__
from toolhost.config.manager import ConfigManager
from toolhost.core.logging_config import setup_logging
from toolhost.core.results import HostResult
from toolhost.mcp.host import HostRegistry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolhost",
        description="Launch stdio tool servers, list their tools and call them",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML/JSON host configuration file",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging (includes tool server stderr)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"toolhost {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("servers", help="Start configured servers and print their status")

    tools = sub.add_parser("tools", help="Print the tools discovered on configured servers")
    tools.add_argument("--server", type=str, default=None, help="Only start and list this server")

    call = sub.add_parser("call", help="Call one tool and print its JSON result")
    call.add_argument("server", help="Server id")
    call.add_argument("tool", help="Tool name")
    call.add_argument("--args", dest="arguments", type=str, default="{}", help="Tool arguments as a JSON object")

    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _run(args: argparse.Namespace, config: ConfigManager) -> int:
    host = HostRegistry.from_config(config)
    wanted = None
    if args.command == "tools" and args.server:
        wanted = args.server
    elif args.command == "call":
        wanted = args.server

    try:
        for server_config in config.server_configs():
            if wanted is not None and server_config.id != wanted:
                continue
            await host.add_server(server_config.model_copy(update={"auto_start": False}))

        if wanted is not None:
            started = {wanted: await host.start_server(wanted)}
        else:
            started = await host.start_all()

        if args.command == "servers":
            listing = await host.list_servers()
            _print_json([s.to_dict() for s in listing.data])
            return 0 if all(r.success for r in started.values()) else 1

        failed = [r for r in started.values() if not r.success]
        for r in failed:
            logger.error(f"Server failed to start: {r.error}")

        if args.command == "tools":
            listing = await host.list_tools(wanted)
            if not listing.success:
                return _report(listing)
            _print_json([t.to_dict() for t in listing.data])
            return 1 if failed else 0

        try:
            arguments = json.loads(args.arguments)
        except ValueError as e:
            logger.error(f"--args is not valid JSON: {e}")
            return 2
        if not isinstance(arguments, dict):
            logger.error("--args must be a JSON object")
            return 2

        result = await host.execute_tool({"server": args.server, "tool": args.tool, "parameters": arguments})
        if not result.success:
            return _report(result)
        _print_json(result.data)
        return 0
    finally:
        await host.shutdown()


def _report(result: HostResult) -> int:
    kind = result.error_kind.value if result.error_kind else "error"
    logger.error(f"{kind}: {result.error}")
    return 1


def run(argv: Optional[List[str]] = None) -> int:
    """Parse ``argv`` and execute; returns the process exit code."""
    args = build_parser().parse_args(argv)

    config = ConfigManager(args.config)
    config.load()
    level = "DEBUG" if args.debug else str(config.get("logging.level", "INFO"))
    setup_logging(level=level, log_file=config.get("logging.file"))

    return asyncio.run(_run(args, config))


def cli() -> None:
    """Console script entry point."""
    try:
        sys.exit(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    cli()
