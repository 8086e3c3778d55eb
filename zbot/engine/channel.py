"""Messaging channel contract the engine talks to.

Any chat platform adapter implementing these coroutines can carry the
engine's output. Every operation may fail independently.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from zbot.engine.message_store import MessageHandle
from zbot.engine.schemas import Emotion


@runtime_checkable
class MessagingChannel(Protocol):
    async def send_message(
        self,
        content: str,
        thread_id: str,
        quote: MessageHandle | None = None,
    ) -> MessageHandle | None: ...

    async def add_reaction(self, emotion: Emotion, target: MessageHandle) -> None: ...

    async def send_sticker(self, sticker_id: str, thread_id: str) -> MessageHandle | None: ...

    async def share_contact(self, user_id: str | None, thread_id: str) -> MessageHandle | None: ...

    async def retract(self, handle: MessageHandle) -> None: ...

    async def notify_tool_use(self, thread_id: str, tool_names: list[str]) -> None: ...
