"""
Component Tools - MCP tools for Figma components

This module defines the component-related tools: creating instances of
components, converting nodes into components, and combining components
into variant sets. Each tool forwards one command to the plugin through
the figma_communicator and renders the reply as text.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from figma_communicator import send_command, ToolExecutionError
from tool_registry import Failure, Success, ToolRegistry, ToolResult, ToolSpec

logger = logging.getLogger(__name__)


class DecodeError(ValueError):
    """The plugin answered, but not with the shape the tool expects."""

    def __init__(self, command: str, error: ValidationError):
        self.command = command
        problems = "; ".join(
            f"{'.'.join(str(part) for part in item['loc']) or 'result'}: {item['msg']}"
            for item in error.errors()
        )
        self.message = f"Unexpected response for {command}: {problems}"
        super().__init__(self.message)


# ============================================
# ============ PARAMETER MODELS ==============
# ============================================

class CreateComponentInstanceParams(BaseModel):
    # Both or neither id/key may be given; the plugin decides what that means
    model_config = ConfigDict(strict=True)

    componentId: Optional[str] = Field(default=None, description="ID of a local component in the same file")
    componentKey: Optional[str] = Field(default=None, description="Key of a remote component from team libraries")
    x: float = Field(description="X position")
    y: float = Field(description="Y position")


class CreateComponentFromNodeParams(BaseModel):
    model_config = ConfigDict(strict=True)

    nodeId: str = Field(description="The ID of the node to convert into a component")
    name: Optional[str] = Field(default=None, description="Optional new name for the component")


class CreateComponentSetParams(BaseModel):
    model_config = ConfigDict(strict=True)

    componentIds: List[str] = Field(description="Array of component node IDs to combine into a component set")
    name: Optional[str] = Field(default=None, description="Optional name for the component set")


# ============================================
# ============ RESPONSE MODELS ===============
# ============================================

class ComponentInfo(BaseModel):
    id: str
    name: str
    key: str


class ComponentSetInfo(ComponentInfo):
    variantCount: int


def decode_response(model: Type[BaseModel], command: str, result: Any) -> Any:
    """Validate a plugin result against `model`, raising DecodeError on mismatch."""
    try:
        return model.model_validate(result)
    except ValidationError as e:
        raise DecodeError(command, e) from e


# ============================================
# ============ INTERNAL HELPERS ==============
# ============================================

async def _run_command(command: str, payload: Dict[str, Any], error_prefix: str, render: Callable[[Any], str]) -> ToolResult:
    """Send one command and turn the outcome into a ToolResult; never raises."""
    try:
        result = await send_command(command, payload)
        return Success(render(result))
    except ToolExecutionError as te:
        logger.error(f"❌ Tool {command} failed: {te.message or te.code}")
        return Failure(error_prefix, te)
    except DecodeError as de:
        logger.error(f"❌ {de.message}")
        return Failure(error_prefix, de)
    except Exception as e:
        logger.error(f"❌ Communication/system error in {command}: {str(e)}")
        return Failure(error_prefix, e)


def _render_created_component(result: Any) -> str:
    component = decode_response(ComponentInfo, "create_component_from_node", result)
    return (
        f'Created component "{component.name}" with ID: {component.id} and key: {component.key}. '
        "You can now create instances of this component using the key."
    )


def _render_created_component_set(result: Any) -> str:
    component_set = decode_response(ComponentSetInfo, "create_component_set", result)
    return (
        f'Created component set "{component_set.name}" with ID: {component_set.id}, '
        f"key: {component_set.key}, containing {component_set.variantCount} variants."
    )


# ============================================
# ===============  TOOLS  ====================
# ============================================

async def create_component_instance(params: CreateComponentInstanceParams) -> ToolResult:
    """Place an instance of a local (by id) or library (by key) component at x/y.

    The plugin's reply is returned as raw JSON.
    """
    logger.info(
        f"🧩 create_component_instance: id={params.componentId} key={params.componentKey} x={params.x} y={params.y}"
    )
    return await _run_command(
        "create_component_instance",
        params.model_dump(),
        "Error creating component instance",
        lambda result: json.dumps(result, ensure_ascii=False, separators=(",", ":")),
    )


async def create_component_from_node(params: CreateComponentFromNodeParams) -> ToolResult:
    logger.info(f"🧩 create_component_from_node: node_id={params.nodeId}, name={params.name}")
    return await _run_command(
        "create_component_from_node",
        params.model_dump(),
        "Error creating component from node",
        _render_created_component,
    )


async def create_component_set(params: CreateComponentSetParams) -> ToolResult:
    """Combine existing components into a variant set.

    An empty `componentIds` list is forwarded as-is; the plugin reports
    whether it can build a set from it.
    """
    logger.info(f"🧩 create_component_set: {len(params.componentIds)} component(s), name={params.name}")
    return await _run_command(
        "create_component_set",
        params.model_dump(),
        "Error creating component set",
        _render_created_component_set,
    )


COMPONENT_TOOLS: List[ToolSpec] = [
    ToolSpec(
        name="create_component_instance",
        description=(
            "Create an instance of a component in Figma. For local components in the same file, "
            "use componentId. For remote components from team libraries, use componentKey."
        ),
        params=CreateComponentInstanceParams,
        handler=create_component_instance,
    ),
    ToolSpec(
        name="create_component_from_node",
        description="Convert an existing node (frame, group, etc.) into a reusable component in Figma",
        params=CreateComponentFromNodeParams,
        handler=create_component_from_node,
    ),
    ToolSpec(
        name="create_component_set",
        description="Create a component set (variants) from multiple component nodes in Figma",
        params=CreateComponentSetParams,
        handler=create_component_set,
    ),
]


def register_component_tools(registry: ToolRegistry) -> None:
    """Register the component tools on `registry`."""
    registry.register_all(COMPONENT_TOOLS)
