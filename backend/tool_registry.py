"""
Tool Registry - Declarative MCP Tool Registration

Tools are plain records of name, description, parameter model and async
handler. The registry exposes them through a low-level MCP server and
keeps the success/failure distinction internal until the text boundary.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type, Union

from mcp.server import Server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


def describe_failure(error: Any) -> str:
    """Human-readable form of a failure: its message when present, else str()."""
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error)


@dataclass(frozen=True)
class Success:
    text: str

    @property
    def ok(self) -> bool:
        return True

    def to_content(self) -> List[TextContent]:
        return [TextContent(type="text", text=self.text)]


@dataclass(frozen=True)
class Failure:
    """A failed tool call. `prefix` names what was being attempted."""

    prefix: str
    error: Any

    @property
    def ok(self) -> bool:
        return False

    @property
    def text(self) -> str:
        return f"{self.prefix}: {describe_failure(self.error)}"

    def to_content(self) -> List[TextContent]:
        return [TextContent(type="text", text=self.text)]


ToolResult = Union[Success, Failure]
ToolHandler = Callable[[Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    params: Type[BaseModel]
    handler: ToolHandler

    def to_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.params.model_json_schema(),
        )


class ToolRegistry:
    """
    Holds registered tools and serves them to an MCP server.

    Attaching to a server installs `list_tools` and `call_tool` handlers;
    `invoke` is the programmatic entry point that returns a ToolResult.
    """

    def __init__(self, server: Optional[Server] = None):
        self.tools: Dict[str, ToolSpec] = {}
        if server is not None:
            self.attach(server)

    def attach(self, server: Server) -> None:
        server.list_tools()(self.list_tools)
        # Arguments are validated by the pydantic models in invoke()
        server.call_tool(validate_input=False)(self.call_tool)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self.tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self.tools[spec.name] = spec
        logger.debug(f"🧰 Registered tool: {spec.name}")

    def register_all(self, specs: Iterable[ToolSpec]) -> None:
        for spec in specs:
            self.register(spec)

    async def list_tools(self) -> List[Tool]:
        return [spec.to_tool() for spec in self.tools.values()]

    async def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        spec = self.tools.get(name)
        if spec is None:
            logger.warning(f"❓ Unknown tool requested: {name}")
            return Failure("Unknown tool", name)

        try:
            params = spec.params.model_validate(arguments or {})
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid arguments for {name}: {e.error_count()} error(s)")
            return Failure(f"Invalid arguments for {name}", e)

        logger.info(f"🛠️ Invoking tool: {name}")
        return await spec.handler(params)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> List[TextContent]:
        result = await self.invoke(name, arguments)
        return result.to_content()
