"""CLI entry point for the feedback collector.

Usage:
    feedback-collector start                   # stdio MCP server
    feedback-collector start --web --port 5050 # respondent web server only
    feedback-collector health --config feedback.yaml
    feedback-collector config
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from feedback_collector.engine import __version__
from feedback_collector.engine.config import FeedbackConfig, get_config
from feedback_collector.engine.errors import ConfigurationError, StartupError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedback-collector",
        description="Collect human feedback for MCP tool calls through a web page",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    start = sub.add_parser("start", help="Start the MCP server (default)")
    start.add_argument(
        "--port",
        type=int,
        default=None,
        help="Preferred web port (overrides MCP_WEB_PORT)",
    )
    start.add_argument(
        "--web",
        action="store_true",
        help="Run only the respondent web server (no MCP stdio transport)",
    )

    health = sub.add_parser("health", help="Validate config and report port status")
    show = sub.add_parser("config", help="Print the effective configuration")

    for p in (start, health, show):
        p.add_argument(
            "--config",
            default=None,
            help="YAML config file with a 'feedback:' section",
        )
        p.add_argument(
            "--verbose", "-v",
            action="store_true",
            help="Enable debug logging",
        )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(["start", *(argv if argv is not None else sys.argv[1:])])

    if args.command == "start" and not args.web:
        from feedback_collector.engine.mcp_server.stdio_server import main as stdio_main

        stdio_main(args)
        return

    # Non-stdio commands may log to stderr freely.
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        config = get_config(args.config)
        if getattr(args, "port", None):
            config.web_port = args.port
            config.validate()
    except (ConfigurationError, FileNotFoundError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.command == "config":
        print(config.display())
    elif args.command == "health":
        sys.exit(asyncio.run(_health(config)))
    else:
        try:
            asyncio.run(_serve_web(config))
        except KeyboardInterrupt:
            print("\nInterrupted.")


async def _health(config: FeedbackConfig) -> int:
    """Print configuration validity and the status of the configured ports."""
    from feedback_collector.shared.services.port_negotiator import PortNegotiator

    negotiator = PortNegotiator(
        host=config.bind_host,
        range_start=config.port_range_start,
        range_size=config.port_range_size,
    )
    print(f"feedback-collector {__version__}")
    print("Configuration: valid")

    record = await negotiator.describe_port(config.web_port)
    print(f"Target port {record.port}: {_describe(record)}")

    records = await negotiator.port_range_status()
    free = sum(1 for r in records if r.available)
    print(f"Port range {config.port_range_start}-{config.port_range_end}: {free}/{len(records)} available")
    for r in records:
        if not r.available:
            print(f"  {r.port}: {_describe(r)}")
    return 0


def _describe(record) -> str:
    if record.available:
        return "available"
    if record.occupant is None:
        return "in use (owner unknown)"
    return f"in use by {record.occupant.name} (PID {record.occupant.pid})"


async def _serve_web(config: FeedbackConfig) -> None:
    """Run the respondent web server standalone until interrupted."""
    from feedback_collector.engine.bridge import FeedbackBridge

    bridge = FeedbackBridge(config)
    try:
        await bridge.ensure_listening()
    except StartupError as exc:
        print(f"Failed to start web server: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"Feedback web server running at {bridge.base_url}")
    print("Create a test session with: POST /api/test-session")
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Web server shutting down")
    finally:
        await bridge.shutdown()


if __name__ == "__main__":
    main()
