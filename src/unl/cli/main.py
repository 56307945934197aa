#!/usr/bin/env python3
"""
UNL CLI - Run the validators engine and query a running node.

Commands:
  unl run                    Start the engine and its RPC server
  unl print                  Show validators, scores and the Chosen set
  unl rebuild                Queue a Chosen-set rebuild
  unl sources                Show configured sources and their health
  unl check-list <file>      Parse a validator list file offline

Environment Variables:
  UNL_CONFIG          JSON configuration file
  UNL_RPC_HOST        RPC host (default: 127.0.0.1)
  UNL_RPC_PORT        RPC port (default: 8480)
  UNL_SOURCE_URLS     Comma-separated validator list URLs
  UNL_SOURCE_FILES    Comma-separated validator list files
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

import aiohttp

from ..core.config import ConfigError, get_config
from ..storage.store import StoreError
from ..validators.manager import Manager
from ..validators.sources import MalformedSourceError, StaticFileSource

logger = logging.getLogger(__name__)


class RpcRequestError(Exception):
    """Raised when a running node cannot be queried."""

    pass


# =============================================================================
# HELPERS
# =============================================================================


def _base_url(args: argparse.Namespace) -> str:
    """RPC base URL from --url, or from configuration."""
    if getattr(args, "url", None):
        url = args.url
        if not url.startswith("http"):
            url = f"http://{url}"
        return url.rstrip("/")

    config = get_config()
    return f"http://{config.rpc_host}:{config.rpc_port}"


async def _rpc_request(method: str, url: str) -> Dict[str, Any]:
    """Call a node's RPC endpoint and return the decoded JSON."""
    timeout = aiohttp.ClientTimeout(total=10)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            request = session.post if method == "POST" else session.get
            async with request(url) as resp:
                if resp.status != 200:
                    raise RpcRequestError(f"{url} returned HTTP {resp.status}")
                return await resp.json()
    except aiohttp.ClientError as e:
        raise RpcRequestError(f"Cannot reach {url}: {e}") from e
    except asyncio.TimeoutError as e:
        raise RpcRequestError(f"Request to {url} timed out") from e


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# =============================================================================
# COMMANDS
# =============================================================================


async def cmd_run(args: argparse.Namespace) -> int:
    """Start the engine and serve RPC until interrupted."""
    from ..server.rpc import RpcServer

    try:
        config = get_config(args.config)
        if args.host:
            config.rpc_host = args.host
        if args.port:
            config.rpc_port = args.port
    except ConfigError as e:
        print(f"❌ Invalid configuration: {e}", file=sys.stderr)
        return 1

    manager = Manager(config)
    server = RpcServer(manager, host=config.rpc_host, port=config.rpc_port)

    print(f"✅ Validators engine starting (RPC on {config.rpc_host}:{config.rpc_port})")
    try:
        await server.run_forever()
    except (ConfigError, StoreError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    return 0


async def cmd_print(args: argparse.Namespace) -> int:
    """Show validators, scores and the Chosen set of a running node."""
    url = f"{_base_url(args)}/validators/print"
    try:
        status = await _rpc_request("GET", url)
    except RpcRequestError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    if args.json:
        _print_json(status)
        return 0

    counts = status.get("counts", {})
    chosen = status.get("chosen", {})
    scheduler = status.get("scheduler", {})

    print(f"✅ {counts.get('trusted', 0)} trusted of {counts.get('known', 0)} known validators")
    print(f"   Sources: {counts.get('sources', 0)} ({counts.get('dynamic_sources', 0)} dynamic)")
    print(f"   Scheduler: {scheduler.get('state', 'unknown')}")
    print(
        f"   Chosen: {chosen.get('size', 0)} of target {chosen.get('target_count', 0)}"
        f" (population {chosen.get('population', 0)})"
    )
    if status.get("shortfall"):
        print(f"   ⚠️  Short by {status['shortfall']} validators")
    if status.get("chosen_stale"):
        print("   ⚠️  Chosen set contains validators no longer listed by any source")

    for validator in status.get("validators", []):
        marker = "*" if validator.get("chosen") else " "
        participation = validator.get("participation")
        shown = f"{participation:.2f}" if participation is not None else "  - "
        label = validator.get("label") or ""
        trusted = "trusted" if validator.get("trusted") else "untrusted"
        print(f" {marker} {validator['identity'][:16]}...  {shown}  {trusted:9}  {label}")
    return 0


async def cmd_rebuild(args: argparse.Namespace) -> int:
    """Ask a running node to rebuild its Chosen set."""
    url = f"{_base_url(args)}/validators/rebuild"
    try:
        result = await _rpc_request("POST", url)
    except RpcRequestError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    if args.json:
        _print_json(result)
    else:
        print(f"✅ Chosen list {result.get('chosen_list', 'rebuilding')}")
    return 0


async def cmd_sources(args: argparse.Namespace) -> int:
    """Show the sources of a running node."""
    url = f"{_base_url(args)}/validators/sources"
    try:
        result = await _rpc_request("GET", url)
    except RpcRequestError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    if args.json:
        _print_json(result)
        return 0

    sources = result.get("sources", [])
    print(f"✅ {len(sources)} sources")
    for source in sources:
        icon = "✅" if source.get("status") == "ok" else "❌"
        kind = "static" if source.get("static") else "dynamic"
        print(
            f" {icon} {source['name']} [{kind}] {source.get('status')}: "
            f"{source.get('validators', 0)} validators, "
            f"success rate {source.get('success_rate', 0):.0%}"
        )
        if source.get("last_error"):
            print(f"      {source['last_error']}")
    return 0


async def cmd_check_list(args: argparse.Namespace) -> int:
    """Parse a validator list file without contacting anything."""
    source = StaticFileSource(path=args.file)
    try:
        result = await source.pull()
    except MalformedSourceError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    if args.json:
        _print_json({
            "path": source.path,
            "validators": [
                {"identity": identity, "label": result.labels.get(identity)}
                for identity in sorted(result.identities)
            ],
        })
        return 0

    print(f"✅ {source.path}: {len(result)} validators")
    for identity in sorted(result.identities):
        label = result.labels.get(identity)
        print(f"   {identity}" + (f"  {label}" if label else ""))
    return 0


# =============================================================================
# PARSER
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="unl",
        description="UNL - Validator list aggregation and Chosen-set selection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with a config file
  unl run --config /etc/unl/config.json

  # Inspect a running node
  unl print
  unl sources --url http://127.0.0.1:8480

  # Validate a list file before deploying it
  unl check-list validators.txt
        """,
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Verbose output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Start the engine and RPC server")
    run_parser.add_argument("--config", "-c", metavar="PATH", help="JSON config file (env: UNL_CONFIG)")
    run_parser.add_argument("--host", help="RPC host (env: UNL_RPC_HOST)")
    run_parser.add_argument("--port", "-p", type=int, help="RPC port (env: UNL_RPC_PORT)")

    # query commands
    for name, help_text in (
        ("print", "Show validators, scores and the Chosen set"),
        ("rebuild", "Queue a Chosen-set rebuild"),
        ("sources", "Show sources and their last fetch"),
    ):
        query_parser = subparsers.add_parser(name, help=help_text)
        query_parser.add_argument("--url", "-u", help="Node RPC URL (default from config)")

    # check-list command
    check_parser = subparsers.add_parser("check-list", help="Parse a validator list file")
    check_parser.add_argument("file", help="Path to the list file")

    return parser


async def async_main(args: argparse.Namespace) -> int:
    """Dispatch to the command handler."""
    commands = {
        "run": cmd_run,
        "print": cmd_print,
        "rebuild": cmd_rebuild,
        "sources": cmd_sources,
        "check-list": cmd_check_list,
    }

    handler = commands.get(args.command) if args.command else None
    if handler is None:
        return 0
    return await handler(args)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        return 0

    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        return 0


# For CLI entry point
if __name__ == "__main__":
    sys.exit(main())
