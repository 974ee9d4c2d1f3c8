from unittest.mock import AsyncMock

import pytest
from mcp.server import Server
from mcp.types import CallToolRequest, CallToolRequestParams, ListToolsRequest
from pydantic import BaseModel

import component_tools
from component_tools import register_component_tools
from figma_communicator import ToolExecutionError
from tool_registry import Failure, Success, ToolRegistry, ToolSpec, describe_failure


class EchoParams(BaseModel):
    text: str


async def echo(params: EchoParams):
    return Success(params.text)


@pytest.fixture
def registry():
    registry = ToolRegistry()
    register_component_tools(registry)
    return registry


def test_describe_failure_prefers_message_attribute():
    error = ToolExecutionError({"code": "timeout", "message": "Request to Figma timed out"})
    assert describe_failure(error) == "Request to Figma timed out"


def test_describe_failure_falls_back_to_string_form():
    assert describe_failure("oops") == "oops"
    assert describe_failure(ValueError("bad value")) == "bad value"
    assert describe_failure(42) == "42"


def test_success_and_failure_share_the_envelope():
    ok = Success("done").to_content()
    failed = Failure("Error doing thing", "broken").to_content()

    assert len(ok) == len(failed) == 1
    assert ok[0].type == failed[0].type == "text"
    assert failed[0].text == "Error doing thing: broken"


def test_duplicate_registration_is_rejected(registry):
    with pytest.raises(ValueError):
        register_component_tools(registry)


@pytest.mark.asyncio
async def test_list_tools_in_registration_order(registry):
    tools = await registry.list_tools()

    assert [tool.name for tool in tools] == [
        "create_component_instance",
        "create_component_from_node",
        "create_component_set",
    ]
    instance = tools[0]
    assert set(instance.inputSchema["properties"]) == {"componentId", "componentKey", "x", "y"}
    assert set(instance.inputSchema["required"]) == {"x", "y"}
    component_set = tools[2]
    assert component_set.inputSchema["properties"]["componentIds"]["type"] == "array"
    assert component_set.inputSchema["required"] == ["componentIds"]


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_as_text(registry):
    content = await registry.call_tool("delete_everything", {})

    assert len(content) == 1
    assert content[0].text == "Unknown tool: delete_everything"


@pytest.mark.asyncio
async def test_invalid_arguments_do_not_reach_transport(registry, monkeypatch):
    send = AsyncMock()
    monkeypatch.setattr(component_tools, "send_command", send)

    result = await registry.invoke("create_component_instance", {"componentId": "1:2", "x": "left"})

    assert not result.ok
    assert result.text.startswith("Invalid arguments for create_component_instance")
    send.assert_not_awaited()


@pytest.mark.asyncio
async def test_call_tool_converts_transport_failure_to_text(registry, monkeypatch):
    monkeypatch.setattr(
        component_tools,
        "send_command",
        AsyncMock(side_effect=ToolExecutionError({"code": "timeout", "message": "timeout"})),
    )

    content = await registry.call_tool("create_component_set", {"componentIds": ["1:1"]})

    assert content[0].type == "text"
    assert content[0].text == "Error creating component set: timeout"


@pytest.mark.asyncio
async def test_extra_arguments_are_ignored(registry, monkeypatch):
    send = AsyncMock(return_value={"id": "1:9", "name": "Card", "key": "k"})
    monkeypatch.setattr(component_tools, "send_command", send)

    result = await registry.invoke("create_component_from_node", {"nodeId": "1:1", "parentId": "0:1"})

    assert result.ok
    send.assert_awaited_once_with("create_component_from_node", {"nodeId": "1:1", "name": None})


@pytest.mark.asyncio
async def test_attach_installs_server_handlers():
    server = Server("test")
    registry = ToolRegistry(server)
    registry.register(ToolSpec(name="echo", description="Echo text", params=EchoParams, handler=echo))

    result = await registry.invoke("echo", {"text": "hi"})

    assert result.ok and result.text == "hi"
    assert ListToolsRequest in server.request_handlers
    assert CallToolRequest in server.request_handlers


@pytest.mark.asyncio
async def test_server_reports_invalid_arguments_as_tool_text(monkeypatch):
    send = AsyncMock()
    monkeypatch.setattr(component_tools, "send_command", send)
    server = Server("test")
    register_component_tools(ToolRegistry(server))
    request = CallToolRequest(
        method="tools/call",
        params=CallToolRequestParams(name="create_component_instance", arguments={"componentId": "1:2", "x": "left"}),
    )

    response = await server.request_handlers[CallToolRequest](request)

    result = response.root
    assert not result.isError
    assert result.content[0].text.startswith("Invalid arguments for create_component_instance")
    send.assert_not_awaited()
