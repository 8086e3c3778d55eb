"""Recent-message window per thread.

Keeps bounded deques of what the bot sent and what it received, so that
quote, reaction and undo indices in a model reply can be turned into real
platform messages. Anything out of range resolves to None; callers skip
the action instead of failing.

Index conventions:
- sent window: negative is relative to the newest (-1 = latest), a
  non-negative index counts from the oldest message still in the window
- quotes: non-negative indices point into the current batch first, then
  back through received history (batch size = newest received); negative
  indices point into the sent window
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class MessageHandle:
    """A platform message the engine can quote, react to, or retract."""

    message_id: str
    thread_id: str
    text: str = ""
    sender_id: str = ""
    timestamp: float = field(default_factory=time.time)
    raw: Any = None  # platform payload, opaque here


class MessageStore:
    """In-memory per-thread windows of sent and received messages."""

    def __init__(self, window: int = 20) -> None:
        self._window = window
        self._sent: dict[str, deque[MessageHandle]] = {}
        self._received: dict[str, deque[MessageHandle]] = {}

    def _deque(self, table: dict[str, deque[MessageHandle]], thread_id: str) -> deque[MessageHandle]:
        if thread_id not in table:
            table[thread_id] = deque(maxlen=self._window)
        return table[thread_id]

    def record_sent(self, handle: MessageHandle) -> None:
        self._deque(self._sent, handle.thread_id).append(handle)
        logger.debug("Saved sent message %s (thread=%s)", handle.message_id, handle.thread_id)

    def record_received(self, handle: MessageHandle) -> None:
        self._deque(self._received, handle.thread_id).append(handle)

    def remove_sent(self, thread_id: str, message_id: str) -> None:
        sent = self._sent.get(thread_id)
        if not sent:
            return
        for handle in list(sent):
            if handle.message_id == message_id:
                sent.remove(handle)
                return

    def sent(self, thread_id: str) -> list[MessageHandle]:
        return list(self._sent.get(thread_id, ()))

    def received(self, thread_id: str) -> list[MessageHandle]:
        return list(self._received.get(thread_id, ()))

    def clear(self, thread_id: str) -> None:
        self._sent.pop(thread_id, None)
        self._received.pop(thread_id, None)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_sent(self, thread_id: str, index: int) -> MessageHandle | None:
        window = self._sent.get(thread_id)
        if not window:
            logger.debug("No sent messages for thread %s", thread_id)
            return None
        actual = index + len(window) if index < 0 else index
        if actual < 0 or actual >= len(window):
            logger.debug("Sent index %d out of range [0, %d)", index, len(window))
            return None
        return window[actual]

    def resolve_quote(
        self,
        thread_id: str,
        index: int,
        batch: list[MessageHandle] | None = None,
    ) -> MessageHandle | None:
        if index < 0:
            return self.resolve_sent(thread_id, index)

        batch = batch or []
        if index < len(batch):
            return batch[index]

        # Past the batch: count back through older received messages
        history = self.received(thread_id)
        history = [h for h in history if all(h.message_id != b.message_id for b in batch)]
        history_index = len(history) - 1 - (index - len(batch))
        if 0 <= history_index < len(history):
            return history[history_index]
        logger.debug("Quote index %d not found in batch (%d) or history (%d)", index, len(batch), len(history))
        return None

    @staticmethod
    def resolve_reaction(index: int | None, batch: list[MessageHandle] | None = None) -> MessageHandle | None:
        batch = batch or []
        if not batch:
            return None
        if index is None:
            return batch[-1]
        if 0 <= index < len(batch):
            return batch[index]
        return None
