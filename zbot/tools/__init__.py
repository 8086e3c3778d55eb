"""Built-in tools the model can call."""

import httpx

from zbot.engine.tools import ToolRegistry
from zbot.tools.weather import WeatherTool


def register_builtin_tools(registry: ToolRegistry, http: httpx.AsyncClient) -> None:
    """Register every built-in tool, sharing one outbound httpx client."""
    registry.register(WeatherTool(http))


__all__ = ["WeatherTool", "register_builtin_tools"]
