import os
import sys
import signal
import logging
import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server

from figma_communicator import FigmaCommunicator, ToolExecutionError, set_communicator
from tool_registry import ToolRegistry
from channel_tools import register_channel_tools
from component_tools import register_component_tools

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

SERVER_NAME = "FigmaComponentTools"
DEFAULT_BRIDGE_URL = "ws://localhost:3055"
DEFAULT_TOOL_TIMEOUT = 30.0
DEFAULT_LOG_LEVEL = "INFO"


@dataclass
class Config:
    bridge_url: str = DEFAULT_BRIDGE_URL
    channel: Optional[str] = None
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL


def _parse_timeout(raw: Optional[str]) -> float:
    if raw is None or raw == "":
        return DEFAULT_TOOL_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid tool timeout {raw!r}, using {DEFAULT_TOOL_TIMEOUT}s")
        return DEFAULT_TOOL_TIMEOUT
    if value <= 0:
        logger.warning(f"Tool timeout must be positive, using {DEFAULT_TOOL_TIMEOUT}s")
        return DEFAULT_TOOL_TIMEOUT
    return value


def get_config(argv: Optional[List[str]] = None) -> Config:
    """Get configuration from environment variables or CLI args"""
    bridge_url = os.getenv("BRIDGE_URL", DEFAULT_BRIDGE_URL)
    channel = os.getenv("FIGMA_CHANNEL")
    timeout = os.getenv("FIGMA_TOOL_TIMEOUT")
    log_level = os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL)

    # Parse CLI args for overrides
    args = sys.argv[1:] if argv is None else argv
    for arg in args:
        if arg.startswith("--channel="):
            channel = arg.split("=", 1)[1]
        elif arg.startswith("--bridge-url="):
            bridge_url = arg.split("=", 1)[1]
        elif arg.startswith("--timeout="):
            timeout = arg.split("=", 1)[1]
        elif arg.startswith("--log-level="):
            log_level = arg.split("=", 1)[1]

    return Config(
        bridge_url=bridge_url,
        channel=channel or None,
        tool_timeout=_parse_timeout(timeout),
        log_level=log_level.upper(),
    )


def configure_logging(level: str) -> None:
    # stdout carries the MCP stdio stream; logs go to stderr
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='[%(asctime)s] [mcp] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S',
        stream=sys.stderr,
    )


def create_server() -> Tuple[Server, ToolRegistry]:
    """Build the MCP server with channel and component tools registered."""
    server = Server(SERVER_NAME)
    registry = ToolRegistry(server)
    register_channel_tools(registry)
    register_component_tools(registry)
    logger.info(f"🧰 Tools enabled: {', '.join(registry.tools)}")
    return server, registry


async def connect_to_figma(communicator: FigmaCommunicator, channel: Optional[str]) -> bool:
    """Best-effort startup connection; tools connect lazily if this fails."""
    try:
        await communicator.connect()
        if channel:
            await communicator.join_channel(channel)
        return True
    except ToolExecutionError as e:
        logger.warning(f"⚠️ Figma relay not ready at startup: {e}")
        return False


async def serve(config: Config) -> None:
    communicator = FigmaCommunicator(config.bridge_url, timeout=config.tool_timeout, channel=config.channel)
    set_communicator(communicator)
    server, _ = create_server()

    await connect_to_figma(communicator, config.channel)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await communicator.close()
        logger.info("Closed Figma relay connection")


def main():
    config = get_config()
    configure_logging(config.log_level)

    logger.info(f"Starting {SERVER_NAME} MCP server")
    logger.info(f"Bridge URL: {config.bridge_url}")
    logger.info(f"Channel: {config.channel or '(join via join_channel)'}")
    logger.info(f"Tool timeout: {config.tool_timeout}s")

    def signal_handler(signum, frame):
        logger.info("Received shutdown signal")
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Server interrupted")


if __name__ == "__main__":
    main()
