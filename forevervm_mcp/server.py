"""MCP server bridging agent hosts to foreverVM REPLs."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import anyio
import httpx
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from forevervm_mcp import __version__
from forevervm_mcp.client import ForeverVMClient
from forevervm_mcp.config import ConfigError, ForeverVMOptions, load_options
from forevervm_mcp.tools import ToolDispatcher, register_tools

log = logging.getLogger(__name__)

SERVER_NAME = "forevervm"


@dataclass
class AppContext:
    """Shared resources available to all handlers via lifespan context."""

    client: ForeverVMClient
    dispatcher: ToolDispatcher
    http: httpx.AsyncClient


def build_server(options: ForeverVMOptions) -> Server:
    @asynccontextmanager
    async def lifespan(server: Server) -> AsyncIterator[AppContext]:
        """Open the HTTP client on startup, close it on shutdown."""
        http = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        client = ForeverVMClient(options, http)
        try:
            log.info("Serving foreverVM at %s", options.base_url)
            yield AppContext(
                client=client,
                dispatcher=ToolDispatcher(client, exec_timeout=options.exec_timeout),
                http=http,
            )
        finally:
            await http.aclose()

    server = Server(SERVER_NAME, version=__version__, lifespan=lifespan)

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return []

    @server.list_prompts()
    async def list_prompts() -> list[types.Prompt]:
        return []

    register_tools(server)
    return server


async def serve(options: ForeverVMOptions) -> None:
    server = build_server(options)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream, write_stream, server.create_initialization_options()
        )


def cmd_run(args: argparse.Namespace) -> None:
    """Resolve options and run the stdio server until the host disconnects."""
    try:
        options = load_options()
    except ConfigError as exc:
        log.error("%s", exc)
        sys.exit(1)
    anyio.run(serve, options)


def _configure_logging(level: str) -> None:
    # stdout carries the protocol
    logging.basicConfig(
        level=level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forevervm-mcp", description="foreverVM MCP server"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run the foreverVM MCP server over stdio")
    run.add_argument(
        "--log-level",
        default=os.environ.get("FOREVERVM_LOG_LEVEL", "WARNING"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
    )
    run.set_defaults(func=cmd_run)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return
    _configure_logging(args.log_level)
    args.func(args)


if __name__ == "__main__":
    main()
