"""Response engine -- one user turn from prompt to dispatched actions.

handle_turn() runs generate -> parse -> tool loop -> dispatch while holding
the thread's lock, so turns of one conversation never interleave while
different conversations proceed concurrently. It never raises: any
failure ends in the fallback reply being sent.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field

from zbot.config import Settings
from zbot.engine.dispatcher import ActionDispatcher
from zbot.engine.gateway import ModelGateway
from zbot.engine.message_store import MessageHandle
from zbot.engine.parser import parse
from zbot.engine.provider import HistoryTurn
from zbot.engine.schemas import ActionSet, MediaPart, default_action_set
from zbot.engine.tool_loop import ToolInvocationLoop
from zbot.engine.tools import ToolContext

logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    """History and turn lock for one thread."""

    thread_id: str
    history: list[HistoryTurn] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ResponseEngine:
    def __init__(
        self,
        gateway: ModelGateway,
        tool_loop: ToolInvocationLoop,
        dispatcher: ActionDispatcher,
        settings: Settings,
    ) -> None:
        self._gateway = gateway
        self._tool_loop = tool_loop
        self._dispatcher = dispatcher
        self._settings = settings
        self._conversations: OrderedDict[str, Conversation] = OrderedDict()

    def history(self, thread_id: str) -> list[HistoryTurn]:
        conversation = self._conversations.get(thread_id)
        return list(conversation.history) if conversation else []

    async def handle_turn(
        self,
        thread_id: str,
        prompt: str,
        media: list[MediaPart] | None = None,
        context: ToolContext | None = None,
        batch: list[MessageHandle] | None = None,
    ) -> ActionSet:
        """Answer one user turn and dispatch the result to context.channel."""
        if context is None:
            raise ValueError("handle_turn needs a ToolContext carrying the channel")

        conversation = self._get_or_create_conversation(thread_id)
        async with conversation.lock:
            try:
                final = await self._respond(conversation, prompt, media, context)
            except Exception:
                logger.exception("Turn failed for thread %s", thread_id)
                final = default_action_set()

            try:
                await self._dispatcher.dispatch(thread_id, final, context.channel, batch)
            except Exception:
                logger.exception("Dispatch failed for thread %s", thread_id)
            return final

    async def reset_thread(self, thread_id: str) -> None:
        """Forget the history and upstream session of a thread."""
        conversation = self._conversations.get(thread_id)
        if conversation is None:
            self._gateway.drop_session(thread_id)
            return
        async with conversation.lock:
            conversation.history.clear()
            self._gateway.drop_session(thread_id)
        logger.info("Conversation %s reset", thread_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _respond(
        self,
        conversation: Conversation,
        prompt: str,
        media: list[MediaPart] | None,
        context: ToolContext,
    ) -> ActionSet:
        thread_id = conversation.thread_id
        prior = conversation.history[-self._history_window():]

        result = await self._gateway.generate(thread_id, prompt, media, history=prior)
        if not result.success:
            return default_action_set(busy=result.rate_limited)

        conversation.history.append(HistoryTurn(role="user", text=prompt))
        conversation.history.append(HistoryTurn(role="model", text=result.text))

        action_set = parse(result.text)
        final = await self._tool_loop.run(
            thread_id,
            action_set,
            context,
            depth=0,
            history=conversation.history,
        )
        self._trim(conversation)
        return final

    def _history_window(self) -> int:
        # History grows in user/model pairs; an even window keeps a user turn first
        limit = self._settings.max_history_messages
        return limit - limit % 2

    def _trim(self, conversation: Conversation) -> None:
        window = self._history_window()
        if len(conversation.history) > window:
            del conversation.history[:-window]

    def _get_or_create_conversation(self, thread_id: str) -> Conversation:
        """Get existing or create new conversation with LRU eviction."""
        if thread_id in self._conversations:
            self._conversations.move_to_end(thread_id)
            return self._conversations[thread_id]

        # Evict idle conversations only; a locked one is mid-turn
        while len(self._conversations) >= self._settings.max_conversations:
            victim = next(
                (tid for tid, c in self._conversations.items() if not c.lock.locked()),
                None,
            )
            if victim is None:
                break
            del self._conversations[victim]
            self._gateway.drop_session(victim)

        conversation = Conversation(thread_id=thread_id)
        self._conversations[thread_id] = conversation
        return conversation
