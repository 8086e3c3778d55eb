"""Action tag parser -- raw model text to an ordered ActionSet.

Grammar (tag keywords are case-insensitive):

    [reaction:EMOTION]  [reaction:N:EMOTION]
    [sticker:ID]
    [quote:N]text[/quote] trailing text
    [msg]text[/msg]
    [undo:N]
    [card]  [card:USERID]
    [tool:NAME key=value key2="quoted value"]{optional JSON body}[/tool]

Tool calls are located first and masked out, so tags that happen to appear
inside a tool's JSON body are never treated as actions. Every other family
is then scanned independently over the masked text. Whatever is left once
all matched spans are removed becomes a leading TextMessage.

parse() is pure and total: any input, including "" and garbage, yields a
non-empty ActionSet.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import json_repair

from zbot.engine.schemas import (
    Action,
    ActionSet,
    CardShare,
    Emotion,
    Reaction,
    Sticker,
    TextMessage,
    ToolCall,
    Undo,
    default_action_set,
)

logger = logging.getLogger(__name__)

VALID_EMOTIONS = frozenset(e.value for e in Emotion)

_I = re.IGNORECASE

_REACTION_RE = re.compile(r"\[reaction:(?:(-?\d+):)?(\w+)\]", _I)
_STICKER_RE = re.compile(r"\[sticker:([\w-]+)\]", _I)
_UNDO_RE = re.compile(r"\[undo:(-?\d+)\]", _I)
_CARD_RE = re.compile(r"\[card(?::(\w+))?\]", _I)

# Text blocks share one pattern so they come out in source order and never
# overlap. A quote swallows the text right after its closing tag, up to the
# next tag or the end: "[quote:0]orig[/quote] reply" is one message.
_TEXT_BLOCK_RE = re.compile(
    r"\[quote:(?P<qidx>-?\d+)\](?P<qbody>[\s\S]*?)\[/quote\]\s*(?P<after>[^\[]*?)(?=\[|$)"
    r"|\[msg\](?P<mbody>[\s\S]*?)\[/msg\]",
    _I,
)

_TOOL_OPEN_RE = re.compile(r"\[tool:(\w+)(?:\s+([^\]]*))?\]", _I)
_TOOL_CLOSE = "[/tool]"

_INLINE_PARAM_RE = re.compile(r"""(\w+)=(?:"((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'|(\S+))""")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?")
_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "'": "'", "\\": "\\"}

# Tags that may appear inside [msg]/[quote] bodies
_INLINE_TAG_RES = (_REACTION_RE, _STICKER_RE, _UNDO_RE, _CARD_RE)

_KNOWN_TAG = r"\[/?(?:reaction|sticker|quote|msg|undo|card)(?::[^\[\]\s]*)?\]"
_KNOWN_TAG_RE = re.compile(_KNOWN_TAG, _I)
_SPACES_RE = re.compile(r"[ \t]{2,}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def fix_stuck_tags(text: str) -> str:
    """Put a space between a known tag and a word glued to either side of it.

    "[reaction:heart]hi" -> "[reaction:heart] hi", "ok[msg]" -> "ok [msg]".
    Brackets that are not action tags (code, markdown links) are left alone.
    """
    out: list[str] = []
    pos = 0
    for m in _KNOWN_TAG_RE.finditer(text):
        start, end = m.span()
        out.append(text[pos:start])
        if start > 0 and not text[start - 1].isspace() and text[start - 1] not in "[]":
            out.append(" ")
        out.append(m.group(0))
        if end < len(text) and not text[end].isspace() and text[end] not in "[]":
            out.append(" ")
        pos = end
    out.append(text[pos:])
    return "".join(out)


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(0)), value)


def _coerce(key: str, value: str) -> Any:
    if value == "true":
        return True
    if value == "false":
        return False
    if _NUMBER_RE.fullmatch(value):
        # IDs, phone numbers and long digit strings must keep their exact text
        keep_text = (
            len(value) > 15
            or key.lower().endswith("id")
            or "phone" in key.lower()
            or value.startswith("0")
        )
        if keep_text:
            return value
        if "." in value or "e" in value.lower():
            return float(value)
        return int(value)
    return value


def parse_inline_params(param_str: str) -> dict[str, Any]:
    """Parse `key=value key2="quoted value" key3='x'` into a dict."""
    params: dict[str, Any] = {}
    if not param_str:
        return params
    for m in _INLINE_PARAM_RE.finditer(param_str):
        key = m.group(1)
        if m.group(2) is not None:
            params[key] = _unescape(m.group(2))
        elif m.group(3) is not None:
            params[key] = _unescape(m.group(3))
        else:
            params[key] = _coerce(key, m.group(4))
    return params


def _find_close_tag(text: str, start: int) -> int:
    """Index of the first [/tool] after start that is not inside a JSON string."""
    in_string = False
    escape = False
    close_len = len(_TOOL_CLOSE)
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
        elif ch == "\\":
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string and ch == "[" and text[i:i + close_len].lower() == _TOOL_CLOSE:
            return i
    return -1


def _loads_lenient(body: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(body)
    except ValueError:
        try:
            parsed = json_repair.loads(body)
        except Exception as e:
            logger.debug("JSON repair failed: %s", e)
            return None
        logger.debug("Repaired tool JSON body: %.100s", body)
    return parsed if isinstance(parsed, dict) else None


def parse_tool_calls(text: str) -> tuple[list[ToolCall], list[tuple[int, int]]]:
    """Find every tool call in text. Returns (calls, source spans)."""
    calls: list[ToolCall] = []
    spans: list[tuple[int, int]] = []
    pos = 0
    while True:
        m = _TOOL_OPEN_RE.search(text, pos)
        if m is None:
            break
        params = parse_inline_params(m.group(2) or "")
        end = m.end()

        close = _find_close_tag(text, end)
        if close != -1:
            body = text[end:close].strip()
            # Only a JSON body (or nothing) may sit between the tags
            if not body or body.startswith("{"):
                if body:
                    parsed = _loads_lenient(body)
                    if parsed is not None:
                        params = {**params, **parsed}
                end = close + len(_TOOL_CLOSE)

        calls.append(ToolCall(tool_name=m.group(1), params=params, raw_span=text[m.start():end]))
        spans.append((m.start(), end))
        pos = end
    return calls, spans


def has_tool_calls(text: str) -> bool:
    return _TOOL_OPEN_RE.search(text) is not None


def _clean_block_text(text: str) -> str:
    for pattern in _INLINE_TAG_RES:
        text = pattern.sub("", text)
    text = _TOOL_OPEN_RE.sub("", text)
    return _SPACES_RE.sub(" ", text).strip()


def _remove_spans(text: str, spans: list[tuple[int, int]]) -> str:
    if not spans:
        return text
    out: list[str] = []
    pos = 0
    for start, end in sorted(spans):
        if start < pos:
            start = pos
        out.append(text[pos:start])
        out.append(" ")
        pos = max(pos, end)
    out.append(text[pos:])
    return "".join(out)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def parse(raw_text: str | None) -> ActionSet:
    """Convert raw model output into an ActionSet. Never raises, never empty."""
    raw_text = raw_text or ""

    tool_calls, tool_spans = parse_tool_calls(raw_text)
    text = fix_stuck_tags(_remove_spans(raw_text, tool_spans))

    actions: list[Action] = []
    matched: list[tuple[int, int]] = []

    for m in _REACTION_RE.finditer(text):
        matched.append(m.span())
        emotion = m.group(2).lower()
        if emotion not in VALID_EMOTIONS:
            logger.debug("Dropping unknown reaction %r", emotion)
            continue
        target = int(m.group(1)) if m.group(1) is not None else None
        actions.append(Reaction(emotion=Emotion(emotion), target_index=target))

    for m in _STICKER_RE.finditer(text):
        matched.append(m.span())
        actions.append(Sticker(sticker_id=m.group(1)))

    for m in _TEXT_BLOCK_RE.finditer(text):
        matched.append(m.span())
        if m.group("qidx") is not None:
            inside = m.group("qbody").strip()
            after = m.group("after").strip()
            body = f"{inside} {after}" if after else inside
            message = _clean_block_text(body)
            if message:
                actions.append(TextMessage(text=message, quote_index=int(m.group("qidx"))))
        else:
            message = _clean_block_text(m.group("mbody"))
            if message:
                actions.append(TextMessage(text=message))

    for m in _UNDO_RE.finditer(text):
        matched.append(m.span())
        actions.append(Undo(target_index=int(m.group(1))))

    for m in _CARD_RE.finditer(text):
        matched.append(m.span())
        actions.append(CardShare(user_id=m.group(1) or ""))

    actions.extend(tool_calls)

    residual = _SPACES_RE.sub(" ", _remove_spans(text, matched)).strip()
    if residual:
        actions.insert(0, TextMessage(text=residual))

    if not actions:
        logger.debug("Model reply produced no actions, using fallback")
        return default_action_set()
    return ActionSet(actions=actions)


def strip_tool_calls(action_set: ActionSet) -> ActionSet:
    """Drop ToolCall actions, falling back when nothing else is left."""
    stripped = action_set.without_tool_calls()
    if stripped.is_empty:
        return default_action_set()
    return stripped
