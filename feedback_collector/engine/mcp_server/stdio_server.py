"""Stdio MCP server exposing the interactive_feedback tool.

The web server for respondents is started inside the lifespan, so it
lives exactly as long as the MCP session. On shutdown every pending
session is aborted before the listener closes.

Usage:
    # Via .mcp.json:
    #   {"command": "feedback-collector", "args": ["start"]}
    # Or manually:
    python -m feedback_collector.engine.mcp_server.stdio_server
    python -m feedback_collector.engine.mcp_server.stdio_server \
        --config feedback.yaml --verbose
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from ..bridge import FeedbackBridge
from ..config import get_config
from ..errors import StartupError
from ..session_broker import SessionBroker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

# Parsed CLI args, set in main() before the server starts
_parsed_args: argparse.Namespace | None = None


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI args for the MCP server process."""
    parser = argparse.ArgumentParser(
        prog="feedback-collector-mcp",
        description="Interactive feedback MCP server",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file. Also reads MCP_CONFIG_FILE env var.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Preferred web port (overrides MCP_WEB_PORT)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def configure(args: argparse.Namespace) -> None:
    """Use *args* for the next server lifespan instead of sys.argv."""
    global _parsed_args
    _parsed_args = args


@asynccontextmanager
async def feedback_lifespan(server: FastMCP):
    """Build the bridge and start the respondent web server.

    Yields context dict accessible via ctx.request_context.lifespan_context
    in tool handlers.
    """
    global _parsed_args
    if _parsed_args is None:
        _parsed_args = _parse_args()

    config_file = getattr(_parsed_args, "config", None) or os.getenv("MCP_CONFIG_FILE")
    config = get_config(config_file)
    if getattr(_parsed_args, "port", None):
        config.web_port = _parsed_args.port
        config.validate()

    verbose = getattr(_parsed_args, "verbose", False)
    _configure_stderr_logging()
    logging.getLogger().setLevel(logging.DEBUG if verbose else config.logging_level)
    if config_file:
        logger.info("Config source: %s", config_file)
    else:
        logger.info("No config file specified; using env vars / defaults")

    bridge = FeedbackBridge(config, broker=SessionBroker())
    try:
        port = await bridge.ensure_listening()
        logger.info("Respondent page available at %s", bridge.base_url)
    except StartupError as exc:
        # The first tool call retries the startup.
        port = None
        logger.error("Web server not started yet: %s", exc)

    logger.info(
        "Feedback MCP server initialized (port=%s, timeout=%ss, fixed_url=%s)",
        port, config.dialog_timeout, config.use_fixed_url,
    )

    try:
        yield {
            "config": config,
            "bridge": bridge,
        }
    finally:
        await bridge.shutdown()
        logger.info("Feedback MCP server shut down")


# Create the FastMCP instance
mcp = FastMCP(
    name="feedback-collector",
    instructions=(
        "Use interactive_feedback to show a human a summary of the work "
        "you have done and wait for their reply. The reply can contain "
        "text and images. Call it whenever you need confirmation or "
        "direction before continuing."
    ),
    lifespan=feedback_lifespan,
)

# Register feedback tools
from .tools import register_tools  # noqa: E402

register_tools(mcp)


def _configure_stderr_logging() -> None:
    # Logging must go to stderr (stdout is the stdio transport).
    # No-op when main() already configured the root logger.
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _attach_log_file() -> None:
    """Best-effort persistent log under ~/.feedback-collector/logs/."""
    try:
        log_dir = Path.home() / ".feedback-collector" / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"feedback-stdio-{os.getpid()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        root = logging.getLogger()
        root.setLevel(logging.INFO)
        root.addHandler(file_handler)
    except OSError as exc:
        print(f"Could not open log file: {exc}", file=sys.stderr)


def main(args: argparse.Namespace | None = None) -> None:
    """Entry point for the MCP server."""
    configure(args if args is not None else _parse_args())
    _configure_stderr_logging()
    _attach_log_file()
    logger.info("Starting stdio MCP server (pid=%s, argv=%s)", os.getpid(), sys.argv)

    try:
        mcp.run(transport="stdio")
    except Exception:
        logger.exception("Fatal stdio MCP server error (pid=%s)", os.getpid())
        raise


if __name__ == "__main__":
    main()
