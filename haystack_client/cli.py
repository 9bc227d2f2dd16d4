"""Command-line Haystack client.

Usage:
    haystack [options] uri [op] [name=value...]

Examples:
    # Server information
    haystack http://localhost:8080/api/demo about -u su -p su

    # First ten sites, two columns
    haystack http://localhost:8080/api/demo read filter=site -n id,dis -l 10

    # Print watch updates for two points until Ctrl-C
    haystack http://localhost:8080/api/demo -u su -p su --watch @p1,@p2
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from typing import Any

import aiohttp
from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import load_config
from .errors import HaystackClientError, SessionError
from .grid import Grid, cell_type
from .http import HaystackHttpClient
from .protocol import KNOWN_OPS
from .session import HaystackRequest, HaystackResponse, HaystackSession

_LOGGER = logging.getLogger(__name__)

OPERATIONS_HELP = """
Operations:
  about                         Read about information
  defs [filter] [limit]         Read configured definitions
  libs [filter] [limit]         Read installed libraries
  ops [filter] [limit]          Read available operations
  filetypes [filter] [limit]    Read supported file types
  nav [navId]                   Read database navigation
  read filter [limit]           Read database records
  watchSub watchId [lease]      Watch subscribe
  watchUnsub watchId [close]    Watch unsubscribe
  watchPoll watchId [refresh]   Watch poll
  pointWrite id [val]           Write point priority array
  hisRead id [range]            Read time-series data
  hisWrite ts val               Write time-series data
  invokeAction id action        Invoke user action
  close                         Close session
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="haystack",
        description="Project Haystack REST client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=OPERATIONS_HELP,
    )
    parser.add_argument("uri", help="Server API root, e.g. http://localhost:8080/api/demo")
    parser.add_argument("op", nargs="?", help="Operation name (default: about)")
    parser.add_argument(
        "params", nargs="*", metavar="name=value", help="Request grid values"
    )
    parser.add_argument("-v", "--version", action="version", version=__version__)
    parser.add_argument("-u", "--username", help="Set session username")
    parser.add_argument("-p", "--password", help="Set session password")
    parser.add_argument("-t", "--token", help="Set session token")
    parser.add_argument(
        "-k", "--keepalive", action="store_true", help="Keep session token alive"
    )
    parser.add_argument(
        "-g", "--get", action="store_true", help="Send the request with GET"
    )
    parser.add_argument("-c", "--content", metavar="MIME", help="Set request content type")
    parser.add_argument("-a", "--accept", metavar="MIME", help="Set request accept type")
    parser.add_argument("-x", "--haystack", metavar="VERSION", help="Set haystack version")
    parser.add_argument("-r", "--raw", action="store_true", help="Output raw response")
    parser.add_argument(
        "-n",
        "--names",
        type=lambda text: [name for name in text.split(",") if name],
        metavar="NAME,...",
        help="Output columns specified",
    )
    parser.add_argument("-l", "--limit", type=int, help="Output rows limit")
    parser.add_argument("-i", "--index", type=int, help="Output row index")
    parser.add_argument(
        "-w",
        "--watch",
        type=lambda text: [entity_id for entity_id in text.split(",") if entity_id],
        metavar="ID,...",
        help="Subscribe to ids and print updates until interrupted",
    )
    parser.add_argument("--config", metavar="PATH", help="YAML configuration file")
    parser.add_argument(
        "-m", "--monochrome", action="store_true", help="Disable console colours"
    )
    parser.add_argument("-s", "--silent", action="store_true", help="Disable console output")
    parser.add_argument("-d", "--debug", action="store_true", help="Output debug information")
    return parser


def parse_params(params: Sequence[str]) -> Grid:
    """Build a request grid from ``name=value`` arguments."""
    grid = Grid()
    for param in params:
        name, _, value = param.partition("=")
        grid.add(name, value)
    return grid


def render_grid(
    grid: Grid,
    *,
    names: Sequence[str] | None = None,
    limit: int | None = None,
    index: int | None = None,
) -> Table:
    """Render a grid as a table.

    With ``index`` the table lists name, value and type of that one row.

    Raises:
        ValueError: If ``index`` is outside the grid's rows
    """
    if names:
        grid.project(names)
    if limit is not None:
        grid.limit(limit)

    table = Table(header_style="bold green", style="green")

    if index is not None:
        if index < 0 or index >= grid.row_count():
            raise ValueError(f"Out of range: {index}")
        for heading in ("Name", "Value", "Type"):
            table.add_column(heading)
        for x, name in enumerate(grid.names):
            table.add_row(
                Text(name), Text(grid.value(x, index)), Text(cell_type(grid.raw(x, index)))
            )
        return table

    for name in grid.names:
        table.add_column(Text(name))
    for y in range(grid.row_count()):
        table.add_row(*(Text(grid.value(x, y)) for x in range(grid.column_count())))
    return table


def render_error(message: str) -> Table:
    table = Table(show_header=False, style="red")
    table.add_row("Error", Text(message))
    return table


def display(console: Console, res: HaystackResponse, args: argparse.Namespace) -> None:
    if res.grid is None:
        console.print(res.text, markup=False, highlight=False)
        return
    if res.error is not None:
        console.print(render_error(res.error))
        return
    console.print(render_grid(res.grid, names=args.names, limit=args.limit, index=args.index))


def _session_options(args: argparse.Namespace) -> dict[str, Any]:
    options: dict[str, Any] = {}
    for option, value in (
        ("username", args.username),
        ("password", args.password),
        ("token", args.token),
        ("content", args.content),
        ("accept", args.accept),
        ("version", args.haystack),
    ):
        if value is not None:
            options[option] = value
    return options


async def watch(session: HaystackSession, args: argparse.Namespace, console: Console) -> None:
    """Print watch updates until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    def on_update(_session: HaystackSession, grid: Grid) -> None:
        console.print(render_grid(grid, limit=args.limit))

    session.on_watch_update(on_update)
    try:
        await session.subscribe(args.watch, columns=args.names)
        if session.watch_id is None:
            raise SessionError("Failed to open watch")
        _LOGGER.info("Watching %d ids, interrupt to stop", len(args.watch))
        await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def run(args: argparse.Namespace, console: Console) -> int:
    """Run one request (or watch) against the server."""
    config = load_config(args.config)
    if args.op is not None and args.op not in KNOWN_OPS:
        _LOGGER.warning("Unknown operation: %s", args.op)

    async with aiohttp.ClientSession() as http:
        transport = HaystackHttpClient(http, timeout=config.timeout)
        session = config.create_session(transport, uri=args.uri, **_session_options(args))
        await session.start()

        try:
            if args.watch:
                await watch(session, args, console)
            else:
                req = HaystackRequest(
                    op=args.op,
                    method="GET" if args.get else None,
                    grid=parse_params(args.params),
                    raw=args.raw,
                )
                display(console, await session.request(req), args)

                if args.keepalive:
                    token = Table(show_header=False, style="green")
                    token.add_row("Token", Text(session.token or ""))
                    console.print(token)
        finally:
            if args.watch or not args.keepalive:
                await session.end()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    console = Console(no_color=args.monochrome, quiet=args.silent)
    errors = Console(stderr=True, no_color=args.monochrome)

    try:
        return asyncio.run(run(args, console))
    except (HaystackClientError, ValueError) as err:
        if args.debug:
            errors.print_exception()
        else:
            errors.print(f"Error: {err}", style="red", markup=False, highlight=False)
        return 1


if __name__ == "__main__":
    sys.exit(main())
