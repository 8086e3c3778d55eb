"""Shared fixtures: settings with fast pacing, a fake channel, a fake provider."""

from unittest.mock import AsyncMock

import pytest

from zbot.config import Settings
from zbot.engine.message_store import MessageHandle, MessageStore
from zbot.engine.provider import ChatSession, HistoryTurn

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeChannel:
    """Records every channel call. Methods named in fail_on raise RuntimeError."""

    def __init__(self, fail_on: set[str] | None = None, fail_texts: set[str] | None = None):
        self.calls: list[tuple] = []
        self.fail_on = fail_on or set()
        self.fail_texts = fail_texts or set()
        self._next_id = 1000

    def _new(self, thread_id: str, text: str = "") -> MessageHandle:
        self._next_id += 1
        return MessageHandle(message_id=str(self._next_id), thread_id=thread_id, text=text)

    def _maybe_fail(self, method: str, text: str = "") -> None:
        if method in self.fail_on or (text and text in self.fail_texts):
            raise RuntimeError(f"{method} exploded")

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    async def send_message(self, content, thread_id, quote=None):
        self.calls.append(("send_message", content, thread_id, quote))
        self._maybe_fail("send_message", content)
        return self._new(thread_id, content)

    async def add_reaction(self, emotion, target):
        self.calls.append(("add_reaction", emotion, target))
        self._maybe_fail("add_reaction")

    async def send_sticker(self, sticker_id, thread_id):
        self.calls.append(("send_sticker", sticker_id, thread_id))
        self._maybe_fail("send_sticker")
        return self._new(thread_id)

    async def share_contact(self, user_id, thread_id):
        self.calls.append(("share_contact", user_id, thread_id))
        self._maybe_fail("share_contact")
        return self._new(thread_id)

    async def retract(self, handle):
        self.calls.append(("retract", handle))
        self._maybe_fail("retract")

    async def notify_tool_use(self, thread_id, tool_names):
        self.calls.append(("notify_tool_use", thread_id, tool_names))
        self._maybe_fail("notify_tool_use")


class FakeProvider:
    """Stands in for GeminiProvider. Each send() consumes the next outcome:
    a string is returned, an exception is raised, a callable gets the session."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.sent: list[tuple[int, list]] = []
        self.sessions: list[ChatSession] = []

    def create_session(self, thread_id, credential, prior_history=None):
        contents = [{"role": t.role, "parts": [{"text": t.text}]} for t in (prior_history or [])]
        session = ChatSession(thread_id=thread_id, credential=credential, contents=contents)
        self.sessions.append(session)
        return session

    async def send(self, session, parts):
        self.sent.append((session.credential.index, parts))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if callable(outcome) and not isinstance(outcome, Exception):
            outcome = outcome(session)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings with no pacing delays and two keys."""
    return Settings(
        gemini_api_keys="key-one-aaaaaaaaaaaa,key-two-bbbbbbbbbbbb",
        telegram_bot_token="123:abc",
        max_retries=3,
        retry_base_delay_ms=1000,
        reaction_delay_ms=0,
        message_delay_min_ms=0,
        message_delay_max_ms=0,
        max_tool_depth=3,
        tool_timeout_s=5,
    )


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def store():
    return MessageStore(window=20)


@pytest.fixture
def no_sleep():
    return AsyncMock()


def make_handle(message_id: str, thread_id: str = "t1", text: str = "") -> MessageHandle:
    return MessageHandle(message_id=message_id, thread_id=thread_id, text=text)


def turns(*pairs: tuple[str, str]) -> list[HistoryTurn]:
    return [HistoryTurn(role=r, text=t) for r, t in pairs]
