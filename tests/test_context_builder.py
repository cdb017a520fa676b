"""Tests for bounded conversation context building."""

import pytest

from conftest import ScriptedProvider
from tutor_pipeline.memory.conversation_manager import (
    ContextConfig,
    ConversationContextBuilder,
    InMemoryMessageLog,
    estimate_tokens,
    extract_profile,
    merge_profile,
)


def conversation(n):
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"turn-{i:02d} about loops"}
        for i in range(n)
    ]


@pytest.fixture
def summarizer():
    return ScriptedProvider("small", default="Learner asked about loops.")


@pytest.fixture
def builder(store, summarizer):
    return ConversationContextBuilder(store, summarizer)


class TestSummarizationSplit:
    async def test_twelve_messages(self, builder, summarizer):
        built = await builder.build("u1", "c1", conversation(12))

        assert built.metadata["verbatim_count"] == 3
        assert built.metadata["summary_covers_up_to"] == 9
        assert built.session.summary == "Learner asked about loops."
        assert len(summarizer.calls) == 1
        assert "turn-08" in summarizer.calls[0][1]
        assert "turn-09" not in summarizer.calls[0][1]
        for i in (9, 10, 11):
            assert f"turn-{i:02d}" in built.text
        assert "turn-08" not in built.text

    async def test_four_messages(self, builder, summarizer):
        built = await builder.build("u1", "c1", conversation(4))

        assert built.metadata["verbatim_count"] == 4
        assert built.session.summary is None
        assert summarizer.calls == []

    async def test_reads_message_log_on_cache_miss(self, store, summarizer):
        log = InMemoryMessageLog()
        for message in conversation(12):
            log.append("c1", message["role"], message["content"], user_id="u1")
        builder = ConversationContextBuilder(store, summarizer, message_log=log)

        built = await builder.build("u1", "c1")
        assert built.metadata["summary_covers_up_to"] == 9
        assert built.metadata["verbatim_count"] == 3

    async def test_covered_messages_are_not_summarized_again(self, builder, summarizer):
        messages = conversation(12)
        await builder.build("u1", "c1", messages)
        await builder.build("u1", "c1", messages)
        assert len(summarizer.calls) == 1

    async def test_failed_summary_falls_back_to_excerpt(self, store):
        builder = ConversationContextBuilder(store, ScriptedProvider("small"))
        built = await builder.build("u1", "c1", conversation(12))

        assert built.metadata["summary_failed"] is True
        assert built.session.summary is None
        assert "Earlier conversation (excerpt)" in built.text
        assert builder.stats["summary_failures"] == 1


class TestBudget:
    async def test_rendered_context_stays_within_budget(self, store, summarizer):
        config = ContextConfig(max_tokens_per_context=60)
        builder = ConversationContextBuilder(store, summarizer, config=config)
        messages = [{"role": "user", "content": "word " * 80} for _ in range(4)]

        built = await builder.build("u1", "c1", messages)
        assert built.metadata["estimated_tokens"] <= 60
        assert estimate_tokens(built.text) <= 60

    def test_estimate_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcde") == 2


class TestProfile:
    def test_extract_profile(self):
        found = extract_profile("Hi, I'm Alice and I love chess")
        assert found["name"] == "Alice"
        assert found["interests"] == ["chess"]

    def test_merge_keeps_first_values_and_unions_interests(self):
        current = {"name": "Alice", "role": None, "interests": ["chess"]}
        merged = merge_profile(current, {"name": "Bob", "role": "student", "interests": ["chess", "go"]})
        assert merged == {"name": "Alice", "role": "student", "interests": ["chess", "go"]}

    async def test_profile_is_rendered(self, builder):
        messages = [
            {"role": "user", "content": "Hi, I'm Alice"},
            {"role": "assistant", "content": "Hello Alice"},
            {"role": "user", "content": "I am a software developer"},
        ]
        built = await builder.build("u1", "c1", messages)
        assert "name=Alice" in built.text
        assert "role=software developer" in built.text


class TestSessionLifecycle:
    async def test_record_turn_then_cached_build(self, builder):
        await builder.record_turn("u1", "c1", "user", "What is a loop?")
        await builder.record_turn("u1", "c1", "assistant", "A loop repeats code.")

        built = await builder.build("u1", "c1")
        assert builder.stats["cache_hits"] == 1
        assert "A loop repeats code." in built.text
        assert await builder.history("u1", "c1") == [
            {"role": "user", "content": "What is a loop?"},
            {"role": "assistant", "content": "A loop repeats code."},
        ]

        stats = await builder.session_stats("u1", "c1")
        assert stats["total_messages"] == 2

    async def test_end_session_evicts(self, builder):
        await builder.record_turn("u1", "c1", "user", "hello")
        await builder.end_session("u1", "c1")
        assert await builder.session_stats("u1", "c1") is None
