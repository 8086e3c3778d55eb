"""System prompt that teaches the model the action tag grammar."""

from __future__ import annotations

from zbot.engine.tools import ToolRegistry

DEFAULT_PERSONA = (
    "You are a friendly, concise chat companion. Reply in the user's language "
    "and keep messages short, the way people text each other."
)

ACTION_GRAMMAR = """\
Everything you write is delivered to a chat. You can shape the delivery with tags:

[reaction:EMOTION]        react to the newest message (EMOTION: heart, haha, wow, sad, angry, like)
[reaction:N:EMOTION]      react to message N of the current batch (0 = first)
[sticker:ID]              send a sticker
[quote:N]text[/quote]     send text as a reply to message N (negative N = your own recent messages)
[msg]text[/msg]           send text as a separate message
[undo:N]                  take back one of your recent messages (-1 = the latest)
[card] / [card:USERID]    share your own contact, or someone else's

Plain text outside any tag is sent as one message before everything else.
Use at most one reaction per message. Don't explain the tags to the user."""

TOOL_GRAMMAR = """\
You can call tools. Write the call on its own, then stop and wait for the result:

[tool:NAME key=value other="quoted value"][/tool]
[tool:NAME]{"key": "value", "nested": {"a": 1}}[/tool]

Results come back as [tool_result:NAME] blocks. Use them to answer the user.

Available tools:
{catalogue}"""


def build_system_prompt(registry: ToolRegistry | None = None, persona: str = DEFAULT_PERSONA) -> str:
    parts = [persona.strip(), ACTION_GRAMMAR]
    catalogue = registry.describe() if registry is not None else ""
    if catalogue:
        parts.append(TOOL_GRAMMAR.replace("{catalogue}", catalogue))
    return "\n\n".join(parts)
