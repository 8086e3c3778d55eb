"""Tool invocation loop -- executes tool calls and re-prompts the model.

Iterative, with an explicit depth counter scoped to one user turn. The
depth check happens before every upstream call, so at most max_tool_depth
re-invocations occur; past the bound, remaining tool calls are stripped
and whatever else the model said is still delivered.

A failing tool never aborts the loop. Its error is written into the
follow-up prompt and the model decides what to tell the user.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from zbot.config import Settings
from zbot.engine.gateway import ModelGateway
from zbot.engine.parser import parse
from zbot.engine.provider import HistoryTurn
from zbot.engine.schemas import (
    Action,
    ActionSet,
    ToolCall,
    ToolResult,
    default_action_set,
)
from zbot.engine.tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

RESULTS_FOOTER = (
    "Answer the user using the results above. Use the usual tags; call another "
    "tool only if you still need information."
)


def _strip_binary(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_binary(v) for k, v in value.items() if not isinstance(v, (bytes, bytearray))}
    if isinstance(value, (list, tuple)):
        return [_strip_binary(v) for v in value if not isinstance(v, (bytes, bytearray))]
    return value


def format_tool_results(results: list[tuple[ToolCall, ToolResult]]) -> str:
    """Render tool results as the follow-up user turn."""
    blocks: list[str] = []
    for call, result in results:
        if result.success:
            data = _strip_binary(result.data)
            body = json.dumps(data, ensure_ascii=False, indent=2, default=str)
        else:
            body = f"Error: {result.error or 'unknown error'}"
        blocks.append(f"[tool_result:{call.tool_name}]\n{body}\n[/tool_result]")
    blocks.append(RESULTS_FOOTER)
    return "\n\n".join(blocks)


class ToolInvocationLoop:
    def __init__(self, gateway: ModelGateway, registry: ToolRegistry, settings: Settings) -> None:
        self._gateway = gateway
        self._registry = registry
        self._settings = settings

    async def run(
        self,
        thread_id: str,
        action_set: ActionSet,
        context: ToolContext,
        depth: int = 0,
        history: list[HistoryTurn] | None = None,
    ) -> ActionSet:
        """Resolve every tool call in action_set into a final ActionSet.

        `history` is extended in place with each tool-result prompt and the
        model reply to it. Returns action_set unchanged when it has no tool
        calls.
        """
        if not action_set.has_tool_calls:
            return action_set

        max_depth = self._settings.max_tool_depth
        carried: list[Action] = []
        current = action_set

        while current.has_tool_calls:
            if depth >= max_depth:
                logger.warning(
                    "Tool depth limit (%d) reached for %s, dropping %d tool call(s)",
                    max_depth,
                    thread_id,
                    len(current.tool_calls),
                )
                current = current.without_tool_calls()
                break

            calls = current.tool_calls
            carried.extend(a for a in current.actions if not isinstance(a, ToolCall))
            await self._notify(thread_id, calls, context)

            results: list[tuple[ToolCall, ToolResult]] = []
            for call in calls:
                logger.info("Tool call %s (depth %d, thread %s)", call.tool_name, depth, thread_id)
                result = await self._registry.execute(call, context, timeout=self._settings.tool_timeout_s)
                results.append((call, result))

            prompt = format_tool_results(results)
            depth += 1
            reply = await self._gateway.generate(thread_id, prompt, history=history)
            if not reply.success:
                logger.error("Follow-up after tools failed for %s: %s", thread_id, reply.error)
                current = default_action_set(busy=reply.rate_limited)
                break

            if history is not None:
                history.append(HistoryTurn(role="user", text=prompt))
                history.append(HistoryTurn(role="model", text=reply.text))
            current = parse(reply.text)

        actions = carried + current.actions
        if not actions:
            return default_action_set()
        return ActionSet(actions=actions, fallback=current.fallback and not carried)

    async def _notify(self, thread_id: str, calls: list[ToolCall], context: ToolContext) -> None:
        notify = getattr(context.channel, "notify_tool_use", None)
        if notify is None:
            return
        try:
            await notify(thread_id, [c.tool_name for c in calls])
        except Exception as e:
            logger.warning("Tool notification failed for %s: %s", thread_id, e)
