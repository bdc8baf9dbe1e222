"""Tests for the answer pipeline and answer clean-up."""

from __future__ import annotations

import asyncio
from datetime import datetime

import httpx

from concierge.models import ChatTurn
from concierge.rag.pipeline import (
    ERROR_TEXT,
    NO_RESPONSE_TEXT,
    THINKING_TEXT,
    AnswerPipeline,
    format_current_datetime,
)
from concierge.rag.sanitize import clean_answer, collapse_whitespace, strip_citations
from concierge.store import ConversationStore

from fakes import FakeClient, completion, error_response, make_catalogue, make_settings, settle

FIXED_NOW = datetime(2024, 6, 1, 9, 30)


def _pipeline(client, store=None, names=("Parks",)):
    store = store or ConversationStore()
    return AnswerPipeline(
        store,
        make_catalogue(*names),
        client=client,
        settings=make_settings(system_prompt="Be brief."),
        clock=lambda: FIXED_NOW,
    )


# ======================================================================
# Sanitizing
# ======================================================================

class TestSanitize:

    def test_strip_citations(self):
        assert strip_citations("Open daily [doc1].") == "Open daily."
        assert strip_citations("A [doc1][DOC2] B") == "A B"
        assert strip_citations("Keep [note] as is") == "Keep [note] as is"

    def test_only_doc_tags_are_citations(self):
        assert clean_answer("Use arr[0] and items[12].") == "Use arr[0] and items[12]."
        assert clean_answer("See footnote [1].") == "See footnote [1]."

    def test_spacing_around_punctuation_kept(self):
        assert clean_answer("The ratio is 3 : 1 , roughly") == "The ratio is 3 : 1 , roughly"
        assert clean_answer("Open daily [doc1] , closed Mondays") == "Open daily , closed Mondays"

    def test_collapse_whitespace_keeps_lines(self):
        text = "Answer  here \t\n\n\n\nNext   line  "
        assert collapse_whitespace(text) == "Answer here\n\nNext line"

    def test_clean_answer(self):
        assert clean_answer("  Parks open 8am–dusk [doc1]. ") == "Parks open 8am–dusk."
        assert clean_answer("[doc1]") == ""
        assert clean_answer("[doc1] Parks open 8am–dusk.  ") == "Parks open 8am–dusk."


# ======================================================================
# Prompt assembly
# ======================================================================

class TestMessages:

    def test_datetime_line(self):
        assert format_current_datetime(FIXED_NOW) == (
            "Current date and time: Saturday, June 01, 2024 09:30 AM"
        )

    def test_messages_order(self):
        pipeline = _pipeline(FakeClient())
        history = (
            ChatTurn(role="user", content="hi"),
            ChatTurn(role="assistant", content="hello"),
        )
        messages = pipeline.build_messages("when?", history)
        assert messages[0]["role"] == "system"
        assert messages[0]["content"].startswith("Be brief.")
        assert "Saturday, June 01, 2024" in messages[0]["content"]
        assert messages[1:] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "when?"},
        ]


# ======================================================================
# Query handling
# ======================================================================

class TestHandleQuery:

    def test_park_hours(self):
        client = FakeClient(completion("Parks open 8am–dusk [doc1]."))
        store = ConversationStore()
        shown = []
        store.subscribe(lambda old, new: shown.append(new.recognised_text))

        accepted = asyncio.run(_pipeline(client, store).handle_query("When do parks open?"))

        assert accepted is True
        assert shown == [THINKING_TEXT, "Parks open 8am–dusk."]
        assert store.state.recognised_text == "Parks open 8am–dusk."
        assert store.history == (
            ChatTurn(role="user", content="When do parks open?"),
            ChatTurn(role="assistant", content="Parks open 8am–dusk."),
        )

        call = client.completions.calls[0]
        assert call["model"] == "chat"
        assert call["stream"] is False
        sources = call["extra_body"]["data_sources"]
        assert len(sources) == 1
        assert sources[0]["parameters"]["index_name"] == "parks"

    def test_routed_source_is_sent(self):
        client = FakeClient(completion("1"), completion("Buses run every 10 minutes."))
        store = ConversationStore()
        asyncio.run(_pipeline(client, store, ("Parks", "Transit")).handle_query("bus?"))

        routing_call, answer_call = client.completions.calls
        assert routing_call["model"] == "router"
        assert answer_call["extra_body"]["data_sources"][0]["parameters"]["index_name"] == "transit"
        assert store.state.recognised_text == "Buses run every 10 minutes."

    def test_park_hours_routed_among_three_sources(self):
        client = FakeClient(completion("2"), completion("[doc1] Parks open 8am–dusk.  "))
        store = ConversationStore()
        store.append_turns(ChatTurn(role="user", content="hello"))
        pipeline = _pipeline(client, store, ("Libraries", "Transit", "Parks"))

        asyncio.run(pipeline.handle_query("What are the park hours?"))

        answer_call = client.completions.calls[1]
        assert answer_call["extra_body"]["data_sources"][0]["parameters"]["index_name"] == "parks"
        assert store.state.recognised_text == "Parks open 8am–dusk."
        assert store.history == (
            ChatTurn(role="user", content="hello"),
            ChatTurn(role="user", content="What are the park hours?"),
            ChatTurn(role="assistant", content="Parks open 8am–dusk."),
        )

    def test_history_written_meanwhile_is_kept(self):
        client = FakeClient(completion("Parks open 8am–dusk."))
        client.completions.gate = asyncio.Event()
        store = ConversationStore()
        pipeline = _pipeline(client, store)

        async def scenario():
            task = asyncio.ensure_future(pipeline.handle_query("When do parks open?"))
            await settle()
            store.append_turns(
                ChatTurn(role="user", content="typed elsewhere"),
                ChatTurn(role="assistant", content="Answered elsewhere."),
            )
            client.completions.gate.set()
            await task

        asyncio.run(scenario())
        sent = client.completions.calls[0]["messages"]
        assert [m["content"] for m in sent[1:]] == ["When do parks open?"]
        assert [t.content for t in store.history] == [
            "typed elsewhere",
            "Answered elsewhere.",
            "When do parks open?",
            "Parks open 8am–dusk.",
        ]

    def test_history_sent_with_query(self):
        client = FakeClient(completion("Second answer."))
        store = ConversationStore()
        store.append_turns(
            ChatTurn(role="user", content="first"),
            ChatTurn(role="assistant", content="First answer."),
        )
        asyncio.run(_pipeline(client, store).handle_query("second"))

        messages = client.completions.calls[0]["messages"]
        assert [m["content"] for m in messages[1:]] == ["first", "First answer.", "second"]
        assert len(store.history) == 4

    def test_transport_failure_leaves_history(self):
        client = FakeClient(httpx.ReadTimeout("timed out"))
        store = ConversationStore()
        store.append_turns(ChatTurn(role="user", content="earlier"))
        before = store.history

        asyncio.run(_pipeline(client, store).handle_query("q"))

        assert store.state.recognised_text == ERROR_TEXT
        assert store.history == before

    def test_error_payload_leaves_history(self):
        store = ConversationStore()
        asyncio.run(_pipeline(FakeClient(error_response()), store).handle_query("q"))
        assert store.state.recognised_text == ERROR_TEXT
        assert store.history == ()

    def test_no_choices(self):
        store = ConversationStore()
        asyncio.run(_pipeline(FakeClient(completion(None)), store).handle_query("q"))
        assert store.state.recognised_text == NO_RESPONSE_TEXT
        assert store.history == ()

    def test_empty_answer_not_recorded(self):
        store = ConversationStore()
        asyncio.run(_pipeline(FakeClient(completion(" [doc1] ")), store).handle_query("q"))
        assert store.state.recognised_text == NO_RESPONSE_TEXT
        assert store.history == ()

    def test_blank_query_ignored(self):
        client = FakeClient()
        store = ConversationStore()
        assert asyncio.run(_pipeline(client, store).handle_query("   ")) is False
        assert store.state.recognised_text == ""
        assert client.completions.calls == []

    def test_repeated_queries_are_deterministic(self):
        client = FakeClient(completion("Same."), completion("Same."))
        store = ConversationStore()
        pipeline = _pipeline(client, store)

        async def run_twice():
            await pipeline.handle_query("q")
            first = store.state
            await pipeline.handle_query("q")
            return first, store.state

        first, second = asyncio.run(run_twice())
        assert first == second
        assert [t.content for t in store.history] == ["q", "Same.", "q", "Same."]


class TestSingleFlightAndCancel:

    def test_second_query_rejected_while_busy(self):
        client = FakeClient(completion("First."))
        client.completions.gate = asyncio.Event()
        store = ConversationStore()
        pipeline = _pipeline(client, store)

        async def scenario():
            first = asyncio.ensure_future(pipeline.handle_query("one"))
            await settle()
            assert pipeline.busy
            rejected = await pipeline.handle_query("two")
            client.completions.gate.set()
            return rejected, await first

        rejected, accepted = asyncio.run(scenario())
        assert rejected is False
        assert accepted is True
        assert len(client.completions.calls) == 1
        assert [t.content for t in store.history] == ["one", "First."]

    def test_cancel_clears_placeholder_and_writes_nothing_further(self):
        client = FakeClient(completion("Too late."))
        client.completions.gate = asyncio.Event()
        store = ConversationStore()
        shown = []
        store.subscribe(lambda old, new: shown.append(new.recognised_text))
        pipeline = _pipeline(client, store)

        async def scenario():
            task = asyncio.ensure_future(pipeline.handle_query("q"))
            await settle()
            assert pipeline.cancel() is True
            result = await task
            client.completions.gate.set()
            await settle()
            return result

        assert asyncio.run(scenario()) is True
        assert store.state.recognised_text == ""
        assert shown == [THINKING_TEXT, ""]
        assert store.history == ()
        assert pipeline.busy is False

    def test_cancel_when_idle(self):
        assert _pipeline(FakeClient()).cancel() is False

    def test_aclose_leaves_injected_client_open(self):
        client = FakeClient()
        asyncio.run(_pipeline(client).aclose())
        assert client.closed is False
