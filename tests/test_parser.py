"""Tests for the action tag parser.

Covers every tag family, the residual-text rule, quote gluing, tool-call
parameter parsing, and fallback totality on malformed input.
"""

import pytest

from zbot.engine.parser import (
    fix_stuck_tags,
    has_tool_calls,
    parse,
    parse_inline_params,
    parse_tool_calls,
    strip_tool_calls,
)
from zbot.engine.schemas import (
    FALLBACK_TEXT,
    ActionSet,
    CardShare,
    Emotion,
    Reaction,
    Sticker,
    TextMessage,
    ToolCall,
    Undo,
)


def _of(action_set: ActionSet, cls) -> list:
    return [a for a in action_set.actions if isinstance(a, cls)]


# ---------------------------------------------------------------------------
# Totality
# ---------------------------------------------------------------------------


class TestFallback:
    @pytest.mark.parametrize(
        "raw",
        ["", "   ", "\n\t\n", None, "[reaction:]", "[quote:0]unterminated", "[msg][/msg]", "[tool:]", "[[[]]]"],
    )
    def test_never_empty(self, raw):
        result = parse(raw)
        assert not result.is_empty

    def test_empty_input_is_fallback_message(self):
        result = parse("")
        assert result.fallback is True
        assert result.texts() == [FALLBACK_TEXT]

    def test_deterministic(self):
        raw = "Hi [reaction:heart] [msg]one[/msg] [quote:1]q[/quote] tail [tool:weather location=Hanoi]"
        assert parse(raw) == parse(raw)

    def test_plain_text_is_single_message(self):
        result = parse("Just chatting.")
        assert result.actions == [TextMessage(text="Just chatting.")]
        assert result.fallback is False


# ---------------------------------------------------------------------------
# Tag families
# ---------------------------------------------------------------------------


class TestReactions:
    def test_reaction_targeting(self):
        result = parse("[reaction:heart] [reaction:0:wow]")
        reactions = _of(result, Reaction)
        assert reactions == [
            Reaction(emotion=Emotion.HEART, target_index=None),
            Reaction(emotion=Emotion.WOW, target_index=0),
        ]

    def test_unknown_emotion_dropped_silently(self):
        result = parse("[reaction:sparkles] ok")
        assert _of(result, Reaction) == []
        assert result.texts() == ["ok"]

    def test_case_insensitive(self):
        result = parse("[REACTION:HAHA]")
        assert _of(result, Reaction) == [Reaction(emotion=Emotion.HAHA)]


class TestMessages:
    def test_quote_glues_trailing_text(self):
        result = parse("[quote:0]Hello[/quote] World")
        assert result.actions == [TextMessage(text="Hello World", quote_index=0)]

    def test_negative_quote_index(self):
        result = parse("[quote:-1]what I said[/quote]")
        assert result.actions == [TextMessage(text="what I said", quote_index=-1)]

    def test_msg_blocks_in_order(self):
        result = parse("[msg]first[/msg][msg]second[/msg]")
        assert result.texts() == ["first", "second"]
        assert all(m.quote_index is None for m in _of(result, TextMessage))

    def test_quote_and_msg_keep_source_order(self):
        result = parse("[msg]a[/msg] [quote:2]b[/quote] [msg]c[/msg]")
        assert result.texts() == ["a", "b", "c"]
        assert _of(result, TextMessage)[1].quote_index == 2

    def test_residual_text_prepended(self):
        result = parse("[msg]second[/msg] lead text")
        assert result.texts() == ["lead text", "second"]

    def test_inline_tags_inside_msg_become_actions(self):
        result = parse("[msg]nice [sticker:cat-01] one[/msg]")
        assert result.texts() == ["nice one"]
        assert _of(result, Sticker) == [Sticker(sticker_id="cat-01")]

    def test_empty_msg_body_dropped(self):
        result = parse("[msg]  [/msg] hey")
        assert result.texts() == ["hey"]


class TestOtherTags:
    def test_sticker(self):
        assert _of(parse("[sticker:abc_123]"), Sticker) == [Sticker(sticker_id="abc_123")]

    def test_undo(self):
        assert parse("[undo:-1]").actions == [Undo(target_index=-1)]

    def test_card_self_and_user(self):
        cards = _of(parse("[card] [card:42]"), CardShare)
        assert cards == [CardShare(user_id=""), CardShare(user_id="42")]

    def test_unknown_brackets_stay_text(self):
        result = parse("see [this link](http://x.y) and [1]")
        assert result.texts() == ["see [this link](http://x.y) and [1]"]

    def test_mixed_reply(self):
        raw = "[reaction:like] [msg]Sure![/msg] [sticker:ok] [undo:-2] [card]"
        kinds = [a.kind for a in parse(raw).actions]
        assert sorted(kinds) == sorted(["reaction", "text", "sticker", "undo", "card"])


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    def test_inline_params(self):
        calls = _of(parse('[tool:weather location="Hanoi"]'), ToolCall)
        assert len(calls) == 1
        assert calls[0].tool_name == "weather"
        assert calls[0].params == {"location": "Hanoi"}
        assert calls[0].raw_span == '[tool:weather location="Hanoi"]'

    def test_json_body_overrides_inline(self):
        raw = '[tool:search q=old limit=3]{"q": "new", "extra": {"a": 1}}[/tool]'
        calls, spans = parse_tool_calls(raw)
        assert calls[0].params == {"q": "new", "limit": 3, "extra": {"a": 1}}
        assert spans == [(0, len(raw))]

    def test_close_tag_inside_json_string_ignored(self):
        raw = '[tool:note]{"text": "literal [/tool] here"}[/tool] done'
        calls, _ = parse_tool_calls(raw)
        assert calls[0].params == {"text": "literal [/tool] here"}

    def test_broken_json_is_repaired(self):
        calls, _ = parse_tool_calls("[tool:note]{'text': 'hi', 'n': 2,}[/tool]")
        assert calls[0].params == {"text": "hi", "n": 2}

    def test_tags_inside_tool_body_are_not_actions(self):
        result = parse('[tool:note]{"text": "[reaction:heart] [msg]x[/msg]"}[/tool]')
        assert _of(result, Reaction) == []
        assert _of(result, ToolCall)[0].params == {"text": "[reaction:heart] [msg]x[/msg]"}

    def test_tool_span_removed_from_residual(self):
        result = parse("Let me check. [tool:weather location=Hanoi]")
        assert result.texts() == ["Let me check."]
        assert result.has_tool_calls

    def test_unknown_tool_still_parsed(self):
        calls = _of(parse("[tool:doesNotExist]"), ToolCall)
        assert calls == [ToolCall(tool_name="doesNotExist", params={}, raw_span="[tool:doesNotExist]")]

    def test_has_tool_calls(self):
        assert has_tool_calls("x [tool:a]")
        assert not has_tool_calls("x [msg]y[/msg]")

    def test_strip_tool_calls(self):
        assert strip_tool_calls(parse("hi [tool:a]")).actions == [TextMessage(text="hi")]
        assert strip_tool_calls(parse("[tool:a]")).fallback is True


class TestInlineParams:
    def test_quoting_and_escapes(self):
        params = parse_inline_params(r"""a="x \"y\" z" b='it\'s' c=bare d="line\nbreak" """)
        assert params == {"a": 'x "y" z', "b": "it's", "c": "bare", "d": "line\nbreak"}

    def test_booleans_and_numbers(self):
        params = parse_inline_params("on=true off=false n=42 f=1.5 neg=-3")
        assert params == {"on": True, "off": False, "n": 42, "f": 1.5, "neg": -3}

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("userId=12345", {"userId": "12345"}),
            ("phone_number=912345678", {"phone_number": "912345678"}),
            ("code=0123", {"code": "0123"}),
            ("big=1234567890123456", {"big": "1234567890123456"}),
        ],
    )
    def test_numeric_strings_kept_as_text(self, raw, expected):
        assert parse_inline_params(raw) == expected

    def test_quoted_numbers_stay_strings(self):
        assert parse_inline_params('n="42"') == {"n": "42"}


class TestFixStuckTags:
    def test_separates_glued_words(self):
        assert fix_stuck_tags("hi[reaction:heart]there") == "hi [reaction:heart] there"

    def test_leaves_adjacent_tags_alone(self):
        assert fix_stuck_tags("[msg]a[/msg][msg]b[/msg]") == "[msg] a [/msg][msg] b [/msg]"

    def test_ignores_unknown_brackets(self):
        assert fix_stuck_tags("arr[0]x") == "arr[0]x"
