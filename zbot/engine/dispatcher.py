"""Action dispatcher -- applies a final ActionSet to a messaging channel.

Three fixed phases:
1. reactions, at most one per target (last one wins)
2. text messages, stickers and contact cards, in parse order, with a small
   random pause between consecutive sends
3. undos, resolved against the thread's sent-message window

Every action is isolated: a channel failure is logged and the next action
still runs. Unresolvable indices are skipped, never errors.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from zbot.config import Settings
from zbot.engine.channel import MessagingChannel
from zbot.engine.message_store import MessageHandle, MessageStore
from zbot.engine.schemas import (
    ActionSet,
    CardShare,
    Reaction,
    Sticker,
    TextMessage,
    Undo,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """Counts of what one dispatch() actually did."""

    sent: int = 0
    reacted: int = 0
    retracted: int = 0
    skipped: int = 0
    failed: int = 0


class ActionDispatcher:
    def __init__(
        self,
        store: MessageStore,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def dispatch(
        self,
        thread_id: str,
        action_set: ActionSet,
        channel: MessagingChannel,
        batch: list[MessageHandle] | None = None,
    ) -> DispatchReport:
        """Apply every action in action_set. Never raises."""
        report = DispatchReport()
        batch = batch or []

        await self._apply_reactions(action_set, channel, batch, report)
        await self._send_outbound(thread_id, action_set, channel, batch, report)
        await self._apply_undos(thread_id, action_set, channel, report)

        logger.info(
            "Dispatched to %s: %d sent, %d reactions, %d undone, %d skipped, %d failed",
            thread_id,
            report.sent,
            report.reacted,
            report.retracted,
            report.skipped,
            report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # Phase 1: reactions
    # ------------------------------------------------------------------

    async def _apply_reactions(
        self,
        action_set: ActionSet,
        channel: MessagingChannel,
        batch: list[MessageHandle],
        report: DispatchReport,
    ) -> None:
        by_target: dict[int | None, Reaction] = {}
        for action in action_set.actions:
            if isinstance(action, Reaction):
                by_target[action.target_index] = action

        delay = self._settings.reaction_delay_ms / 1000
        for i, reaction in enumerate(by_target.values()):
            target = self._store.resolve_reaction(reaction.target_index, batch)
            if target is None:
                logger.debug("No message for reaction index %s, skipping", reaction.target_index)
                report.skipped += 1
                continue
            if i > 0 and delay > 0:
                await self._sleep(delay)
            try:
                await channel.add_reaction(reaction.emotion, target)
                report.reacted += 1
            except Exception:
                logger.exception("Failed to add reaction %s to %s", reaction.emotion, target.message_id)
                report.failed += 1

    # ------------------------------------------------------------------
    # Phase 2: messages, stickers, cards
    # ------------------------------------------------------------------

    async def _send_outbound(
        self,
        thread_id: str,
        action_set: ActionSet,
        channel: MessagingChannel,
        batch: list[MessageHandle],
        report: DispatchReport,
    ) -> None:
        outbound = [a for a in action_set.actions if isinstance(a, (TextMessage, Sticker, CardShare))]
        for i, action in enumerate(outbound):
            if i > 0:
                await self._pause()
            try:
                handle = await self._send_one(thread_id, action, channel, batch)
            except Exception:
                logger.exception("Failed to send %s to %s", action.kind, thread_id)
                report.failed += 1
                continue
            report.sent += 1
            if handle is not None:
                self._store.record_sent(handle)

    async def _send_one(
        self,
        thread_id: str,
        action: TextMessage | Sticker | CardShare,
        channel: MessagingChannel,
        batch: list[MessageHandle],
    ) -> MessageHandle | None:
        if isinstance(action, TextMessage):
            quote = None
            if action.quote_index is not None:
                quote = self._store.resolve_quote(thread_id, action.quote_index, batch)
                if quote is None:
                    logger.debug("Quote index %d unresolved, sending without quote", action.quote_index)
            return await channel.send_message(action.text, thread_id, quote)
        if isinstance(action, Sticker):
            return await channel.send_sticker(action.sticker_id, thread_id)
        return await channel.share_contact(action.user_id or None, thread_id)

    async def _pause(self) -> None:
        low = self._settings.message_delay_min_ms
        high = self._settings.message_delay_max_ms
        delay_ms = self._rng.uniform(low, high)
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    # ------------------------------------------------------------------
    # Phase 3: undos
    # ------------------------------------------------------------------

    async def _apply_undos(
        self,
        thread_id: str,
        action_set: ActionSet,
        channel: MessagingChannel,
        report: DispatchReport,
    ) -> None:
        # Resolve all targets before retracting so indices don't shift mid-phase
        targets: list[MessageHandle] = []
        for action in action_set.actions:
            if not isinstance(action, Undo):
                continue
            handle = self._store.resolve_sent(thread_id, action.target_index)
            if handle is None or handle in targets:
                logger.debug("Nothing to undo at index %d in %s", action.target_index, thread_id)
                report.skipped += 1
                continue
            targets.append(handle)

        for handle in targets:
            try:
                await channel.retract(handle)
            except Exception:
                logger.exception("Failed to retract %s", handle.message_id)
                report.failed += 1
                continue
            self._store.remove_sent(thread_id, handle.message_id)
            report.retracted += 1
