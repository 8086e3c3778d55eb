"""Pydantic DTOs for the response engine.

Actions are the structured side effects parsed out of one model reply.
An ActionSet keeps them in dispatch order.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

FALLBACK_TEXT = "Sorry, I couldn't come up with an answer just now. Could you say that again?"
BUSY_TEXT = "I'm a bit overloaded at the moment, please try again in a minute or two!"


class Emotion(StrEnum):
    HEART = "heart"
    HAHA = "haha"
    WOW = "wow"
    SAD = "sad"
    ANGRY = "angry"
    LIKE = "like"


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True)


class Reaction(_Action):
    kind: Literal["reaction"] = "reaction"
    emotion: Emotion
    target_index: int | None = None  # None = most recent message


class Sticker(_Action):
    kind: Literal["sticker"] = "sticker"
    sticker_id: str


class TextMessage(_Action):
    kind: Literal["text"] = "text"
    text: str
    quote_index: int | None = None  # None = no quote, negative = bot's own messages


class Undo(_Action):
    kind: Literal["undo"] = "undo"
    target_index: int  # negative = relative to newest


class CardShare(_Action):
    kind: Literal["card"] = "card"
    user_id: str = ""  # empty = share self


class ToolCall(_Action):
    kind: Literal["tool"] = "tool"
    tool_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    raw_span: str = ""


Action = Annotated[
    Union[Reaction, Sticker, TextMessage, Undo, CardShare, ToolCall],
    Field(discriminator="kind"),
]


class ActionSet(BaseModel):
    """Ordered actions derived from one model reply."""

    actions: list[Action] = Field(default_factory=list)
    fallback: bool = False  # True when produced by default_action_set()

    @property
    def is_empty(self) -> bool:
        return not self.actions

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [a for a in self.actions if isinstance(a, ToolCall)]

    @property
    def has_tool_calls(self) -> bool:
        return any(isinstance(a, ToolCall) for a in self.actions)

    def without_tool_calls(self) -> ActionSet:
        return ActionSet(
            actions=[a for a in self.actions if not isinstance(a, ToolCall)],
            fallback=self.fallback,
        )

    def texts(self) -> list[str]:
        return [a.text for a in self.actions if isinstance(a, TextMessage)]


def default_action_set(busy: bool = False) -> ActionSet:
    """The apologetic single-message reply used whenever nothing better exists."""
    return ActionSet(actions=[TextMessage(text=BUSY_TEXT if busy else FALLBACK_TEXT)], fallback=True)


class ToolResult(BaseModel):
    """Outcome of one tool execution. `data` is opaque to the engine."""

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


class MediaKind(StrEnum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    YOUTUBE = "youtube"


class MediaPart(BaseModel):
    """A media reference attached to a prompt. `data` holds pre-fetched bytes."""

    kind: MediaKind
    url: str | None = None
    mime_type: str | None = None
    data: bytes | None = None
