"""
Channel Tools - relay channel management

The relay only routes commands inside a joined channel; the plugin shows
its channel name to the user, who hands it to the agent.
"""

import logging

from pydantic import BaseModel, ConfigDict, Field

from figma_communicator import join_channel as join_relay_channel, ToolExecutionError
from tool_registry import Failure, Success, ToolRegistry, ToolResult, ToolSpec

logger = logging.getLogger(__name__)


class JoinChannelParams(BaseModel):
    model_config = ConfigDict(strict=True)

    channel: str = Field(default="", description="The name of the channel to join")


async def join_channel(params: JoinChannelParams) -> ToolResult:
    if not params.channel:
        return Failure("Error joining channel", "Please provide a channel name to join")

    try:
        await join_relay_channel(params.channel)
        return Success(f"Successfully joined channel: {params.channel}")
    except ToolExecutionError as te:
        logger.error(f"❌ Joining channel {params.channel} failed: {te.message or te.code}")
        return Failure("Error joining channel", te)
    except Exception as e:
        logger.error(f"❌ Communication/system error joining channel {params.channel}: {str(e)}")
        return Failure("Error joining channel", e)


CHANNEL_TOOLS = [
    ToolSpec(
        name="join_channel",
        description="Join a specific channel to communicate with Figma",
        params=JoinChannelParams,
        handler=join_channel,
    ),
]


def register_channel_tools(registry: ToolRegistry) -> None:
    registry.register_all(CHANNEL_TOOLS)
