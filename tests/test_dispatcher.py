"""Tests for ActionDispatcher phase order, resolution and failure isolation."""

import random
from unittest.mock import AsyncMock

import pytest

from conftest import FakeChannel, make_handle
from zbot.config import Settings
from zbot.engine.dispatcher import ActionDispatcher
from zbot.engine.parser import parse
from zbot.engine.schemas import ActionSet, CardShare, Emotion, Reaction, Sticker, TextMessage, Undo


@pytest.fixture
def dispatcher(store, settings, no_sleep):
    return ActionDispatcher(store, settings, sleep=no_sleep)


class TestPhaseOrder:
    @pytest.mark.asyncio
    async def test_reactions_then_messages_then_undos(self, dispatcher, store, channel):
        store.record_sent(make_handle("old"))
        batch = [make_handle("in-1")]
        action_set = ActionSet(actions=[
            Undo(target_index=-1),
            TextMessage(text="hello"),
            Reaction(emotion=Emotion.HEART),
        ])

        await dispatcher.dispatch("t1", action_set, channel, batch)

        assert [c[0] for c in channel.calls] == ["add_reaction", "send_message", "retract"]

    @pytest.mark.asyncio
    async def test_outbound_in_parse_order(self, dispatcher, channel):
        action_set = ActionSet(actions=[
            TextMessage(text="one"),
            Sticker(sticker_id="s1"),
            CardShare(user_id=""),
            TextMessage(text="two"),
        ])
        report = await dispatcher.dispatch("t1", action_set, channel)
        assert [c[0] for c in channel.calls] == ["send_message", "send_sticker", "share_contact", "send_message"]
        assert report.sent == 4

    @pytest.mark.asyncio
    async def test_card_self_passes_none(self, dispatcher, channel):
        await dispatcher.dispatch("t1", ActionSet(actions=[CardShare(), CardShare(user_id="42")]), channel)
        assert [c[1] for c in channel.calls_to("share_contact")] == [None, "42"]


class TestReactions:
    @pytest.mark.asyncio
    async def test_last_reaction_per_target_wins(self, dispatcher, channel):
        batch = [make_handle("m0"), make_handle("m1")]
        action_set = parse("[reaction:0:heart] [reaction:0:haha] [reaction:sad]")
        report = await dispatcher.dispatch("t1", action_set, channel, batch)

        reactions = [(c[1], c[2].message_id) for c in channel.calls_to("add_reaction")]
        assert reactions == [(Emotion.HAHA, "m0"), (Emotion.SAD, "m1")]
        assert report.reacted == 2

    @pytest.mark.asyncio
    async def test_out_of_range_reaction_skipped(self, dispatcher, channel):
        report = await dispatcher.dispatch("t1", parse("[reaction:5:wow]"), channel, [make_handle("m0")])
        assert channel.calls_to("add_reaction") == []
        assert report.skipped == 1

    @pytest.mark.asyncio
    async def test_reaction_without_batch_skipped(self, dispatcher, channel):
        report = await dispatcher.dispatch("t1", parse("[reaction:heart]"), channel)
        assert channel.calls == []
        assert report.skipped == 1


class TestQuotes:
    @pytest.mark.asyncio
    async def test_quote_resolved_from_batch(self, dispatcher, channel):
        batch = [make_handle("m0", text="question")]
        await dispatcher.dispatch("t1", parse("[quote:0]answer[/quote]"), channel, batch)
        _, text, _, quote = channel.calls_to("send_message")[0]
        assert text == "answer"
        assert quote.message_id == "m0"

    @pytest.mark.asyncio
    async def test_negative_quote_uses_sent_window(self, dispatcher, store, channel):
        store.record_sent(make_handle("mine"))
        await dispatcher.dispatch("t1", parse("[quote:-1]as I said[/quote]"), channel)
        assert channel.calls_to("send_message")[0][3].message_id == "mine"

    @pytest.mark.asyncio
    async def test_unresolved_quote_sends_plain(self, dispatcher, channel):
        report = await dispatcher.dispatch("t1", parse("[quote:9]hi[/quote]"), channel, [make_handle("m0")])
        assert channel.calls_to("send_message") == [("send_message", "hi", "t1", None)]
        assert report.failed == 0


class TestUndo:
    @pytest.mark.asyncio
    async def test_undo_on_empty_window_is_noop(self, dispatcher, channel):
        report = await dispatcher.dispatch("t1", parse("[undo:-1]"), channel)
        assert channel.calls == []
        assert report.failed == 0
        assert report.skipped == 1

    @pytest.mark.asyncio
    async def test_undo_latest_sent(self, dispatcher, store, channel):
        store.record_sent(make_handle("a"))
        store.record_sent(make_handle("b"))
        report = await dispatcher.dispatch("t1", parse("[undo:-1]"), channel)
        assert channel.calls_to("retract")[0][1].message_id == "b"
        assert [h.message_id for h in store.sent("t1")] == ["a"]
        assert report.retracted == 1

    @pytest.mark.asyncio
    async def test_multiple_undos_resolved_before_retracting(self, dispatcher, store, channel):
        for mid in ("a", "b", "c"):
            store.record_sent(make_handle(mid))
        await dispatcher.dispatch("t1", parse("[undo:-1] [undo:-2]"), channel)
        assert [c[1].message_id for c in channel.calls_to("retract")] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_failed_retract_keeps_message(self, dispatcher, store):
        channel = FakeChannel(fail_on={"retract"})
        store.record_sent(make_handle("a"))
        report = await dispatcher.dispatch("t1", parse("[undo:-1]"), channel)
        assert report.failed == 1
        assert [h.message_id for h in store.sent("t1")] == ["a"]


class TestIsolation:
    @pytest.mark.asyncio
    async def test_one_failed_send_does_not_stop_others(self, dispatcher):
        channel = FakeChannel(fail_texts={"two"})
        action_set = parse("[msg]one[/msg][msg]two[/msg][msg]three[/msg]")
        report = await dispatcher.dispatch("t1", action_set, channel)
        assert [c[1] for c in channel.calls_to("send_message")] == ["one", "two", "three"]
        assert report.sent == 2
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_failed_reaction_does_not_block_messages(self, dispatcher):
        channel = FakeChannel(fail_on={"add_reaction"})
        report = await dispatcher.dispatch("t1", parse("[reaction:like] hi"), channel, [make_handle("m0")])
        assert channel.calls_to("send_message")[0][1] == "hi"
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_sent_handles_recorded(self, dispatcher, store, channel):
        await dispatcher.dispatch("t1", parse("[msg]a[/msg] [sticker:s]"), channel)
        assert len(store.sent("t1")) == 2


class TestPacing:
    @pytest.mark.asyncio
    async def test_random_delay_between_messages(self, store):
        settings = Settings(gemini_api_keys="k", message_delay_min_ms=500, message_delay_max_ms=1000)
        sleep = AsyncMock()
        dispatcher = ActionDispatcher(store, settings, sleep=sleep, rng=random.Random(7))

        await dispatcher.dispatch("t1", parse("[msg]a[/msg][msg]b[/msg][msg]c[/msg]"), FakeChannel())

        delays = [c.args[0] for c in sleep.await_args_list]
        assert len(delays) == 2
        assert all(0.5 <= d <= 1.0 for d in delays)

    @pytest.mark.asyncio
    async def test_no_delay_for_single_message(self, store):
        settings = Settings(gemini_api_keys="k")
        sleep = AsyncMock()
        dispatcher = ActionDispatcher(store, settings, sleep=sleep)
        await dispatcher.dispatch("t1", parse("only one"), FakeChannel())
        sleep.assert_not_awaited()
