"""Tool registry -- uniform contract for capabilities the model can invoke.

Provides:
- ToolParam / Tool: schema-described parameters plus async execute()
- FunctionTool: wraps a plain async function as a Tool
- ToolRegistry: registers tools, looks them up by name, validates params
  and executes a ToolCall with a timeout, never raising

A failing or unknown tool is reported as a failed ToolResult so the model
can recover in its next turn.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from zbot.engine.schemas import ToolCall, ToolResult

logger = logging.getLogger(__name__)

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


@dataclass
class ToolParam:
    """One declared tool parameter."""

    name: str
    type: str = "string"  # string, number, boolean, object, array
    description: str = ""
    required: bool = False


@dataclass
class ToolContext:
    """What a tool gets to know about the turn that invoked it."""

    channel: Any
    thread_id: str
    sender_id: str = ""
    sender_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class Tool:
    """Base class for tools. Subclasses set name/description/parameters."""

    name: str = ""
    description: str = ""
    parameters: Sequence[ToolParam] = ()

    async def execute(self, params: dict[str, Any], context: ToolContext) -> ToolResult:
        raise NotImplementedError

    def validate(self, params: dict[str, Any]) -> str | None:
        """Return an error message, or None when params fit the schema."""
        for param in self.parameters:
            if param.name not in params:
                if param.required:
                    return f"Missing required parameter: {param.name}"
                continue
            check = _TYPE_CHECKS.get(param.type)
            if check is not None and not check(params[param.name]):
                return (
                    f"Parameter '{param.name}' must be of type {param.type}, "
                    f"got {type(params[param.name]).__name__}"
                )
        return None

    def usage(self) -> str:
        """One catalogue entry for the system prompt."""
        lines = [f"- {self.name}: {self.description}"]
        for param in self.parameters:
            flag = "required" if param.required else "optional"
            lines.append(f"    {param.name} ({param.type}, {flag}): {param.description}")
        return "\n".join(lines)


class FunctionTool(Tool):
    """Adapts `async def handler(params, context) -> ToolResult` to the Tool contract."""

    def __init__(
        self,
        name: str,
        handler: Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]],
        parameters: list[ToolParam] | None = None,
        description: str = "",
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = tuple(parameters or ())
        self._handler = handler

    async def execute(self, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return await self._handler(params, context)


class ToolRegistry:
    """Name -> Tool map with a never-raising execute()."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("Tool must have a name")
        if tool.name in self._tools:
            logger.warning("Tool %s registered twice, replacing", tool.name)
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def register_function(
        self,
        name: str,
        handler: Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]],
        parameters: list[ToolParam] | None = None,
        description: str = "",
    ) -> Tool:
        tool = FunctionTool(name, handler, parameters, description)
        self.register(tool)
        return tool

    def lookup(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def describe(self) -> str:
        """Tool catalogue injected into the system prompt."""
        if not self._tools:
            return ""
        return "\n".join(tool.usage() for tool in self._tools.values())

    async def execute(
        self,
        call: ToolCall,
        context: ToolContext,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run one ToolCall. Unknown tools, bad params, timeouts and
        exceptions all come back as ToolResult(success=False)."""
        tool = self.lookup(call.tool_name)
        if tool is None:
            logger.warning("Unknown tool requested: %s", call.tool_name)
            return ToolResult.fail(f"Unknown tool: {call.tool_name}")

        error = tool.validate(call.params)
        if error:
            logger.info("Rejected %s call: %s", call.tool_name, error)
            return ToolResult.fail(error)

        start = time.monotonic()
        try:
            if timeout:
                result = await asyncio.wait_for(tool.execute(call.params, context), timeout=timeout)
            else:
                result = await tool.execute(call.params, context)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.0fs", call.tool_name, timeout)
            return ToolResult.fail(f"Tool {call.tool_name} timed out after {timeout:.0f}s")
        except Exception as e:
            logger.exception("Tool execution error for %s", call.tool_name)
            return ToolResult.fail(f"Tool error: {e}")

        if not isinstance(result, ToolResult):
            logger.warning("Tool %s returned %s, not ToolResult", call.tool_name, type(result).__name__)
            result = ToolResult.ok(result)

        logger.debug(
            "Tool %s finished in %dms (success=%s)",
            call.tool_name,
            int((time.monotonic() - start) * 1000),
            result.success,
        )
        return result
