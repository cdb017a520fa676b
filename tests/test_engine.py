"""End-to-end tests for the turn pipeline with in-process fakes."""

import asyncio
import time

import pytest

from conftest import BrokenRedis
from tutor_pipeline.core.engine import UNAVAILABLE_MESSAGE, TurnRequest, deduplicate_response
from tutor_pipeline.core.jobs import run_consolidation
from tutor_pipeline.core.routing_types import Intent, Tier
from tutor_pipeline.memory.fast_store import FastStore, FastStoreConfig
from tutor_pipeline.prompting.prompt_builder import PLATFORM_ACTION_ACK
from tutor_pipeline.quota.enforcer import CHAT_MESSAGES, COURSE_GENERATIONS, VOICE_MINUTES, QuotaEnforcer

PASSAGE = "Explain async await: async await suspends coroutines"
GOOD_SMALL = "Async await suspends coroutines until results arrive."


async def used(pipeline, user_id="u1"):
    return (await pipeline.quota.counter(user_id, CHAT_MESSAGES)).used


class TestScenarios:
    async def test_knowledge_gap_is_answered_conversationally(self, pipeline, small):
        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="What is recursion?"))

        assert response.intent == Intent.CONVERSATIONAL
        assert response.tier is None
        assert response.fallback is True
        for phrase in ("document", "knowledge base", "no material"):
            assert phrase not in response.answer.lower()
        assert len(small.calls) == 1

    async def test_repeated_question_served_from_cache(self, pipeline, small, large, seed_passages):
        await seed_passages("python", [PASSAGE])
        small.replies = [GOOD_SMALL]

        first = await pipeline.process_turn(TurnRequest(user_id="u1", text="Explain async/await", scope="python"))
        second = await pipeline.process_turn(TurnRequest(user_id="u1", text="Explain async/await", scope="python"))

        assert first.tier in (Tier.RAG_SMALL, Tier.RAG_LARGE)
        assert second.tier in (Tier.EXACT, Tier.SEMANTIC)
        assert second.answer == first.answer
        assert len(small.calls) + len(large.calls) == 1
        assert await used(pipeline) == 2

    async def test_exhausted_quota_makes_no_generation_calls(self, pipeline, store, small, large):
        pipeline.quota = QuotaEnforcer(
            store,
            plans={"learner": {CHAT_MESSAGES: 50, VOICE_MINUTES: 30, COURSE_GENERATIONS: 3}},
        )
        await pipeline.quota.counter("u1", CHAT_MESSAGES)
        await store.set_hash(pipeline.quota.counter_key("u1", CHAT_MESSAGES), {"used": 50})

        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="Explain async/await"))

        assert response.denial is not None
        assert response.denial.to_dict()["exceededResource"] == "chatMessages"
        assert response.denial.current_usage == 50
        assert response.denial.limit == 50
        assert response.answer == response.denial.message
        assert small.calls == [] and large.calls == []

    async def test_short_follow_up_uses_session_memory(self, pipeline, small):
        await pipeline.process_turn(TurnRequest(user_id="u1", text="Tell me about Python variables"))
        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="tell me more"))

        assert response.intent == Intent.SESSION_MEMORY
        context, query = small.calls[-1]
        assert "Python variables" in context
        assert query == "tell me more"


class TestDegradation:
    async def test_total_outage_returns_fixed_message(self, pipeline, small, large, seed_passages):
        await seed_passages("python", [PASSAGE])
        small.default = None
        large.default = None

        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="Explain async/await", scope="python"))
        assert response.answer == UNAVAILABLE_MESSAGE
        assert await used(pipeline) == 0

    async def test_chat_outage_returns_fixed_message(self, pipeline, small):
        small.default = None
        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="hello how are you"))
        assert response.answer == UNAVAILABLE_MESSAGE

    async def test_embedding_outage_keeps_chat_usable(self, pipeline, backend):
        backend.fail = True
        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="something entirely new"))

        assert response.intent == Intent.CONVERSATIONAL
        assert response.answer == "Happy to help with that topic today."

    async def test_quota_store_outage_blocks_paid_calls(self, pipeline, small, large):
        pipeline.quota = QuotaEnforcer(FastStore(FastStoreConfig(redis_url=""), client=BrokenRedis()))

        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="hello how are you"))

        assert response.denial is not None
        assert response.denial.suggested_action == "retry_later"
        assert small.calls == [] and large.calls == []

    async def test_embedding_outage_keeps_exact_cache_usable(self, pipeline, backend, small, large, seed_passages):
        await seed_passages("python", [PASSAGE])
        small.replies = [GOOD_SMALL]
        first = await pipeline.process_turn(TurnRequest(user_id="u1", text="Explain async/await", scope="python"))
        assert first.tier in (Tier.RAG_SMALL, Tier.RAG_LARGE)
        generated = len(small.calls) + len(large.calls)

        backend.fail = True
        second = await pipeline.process_turn(TurnRequest(user_id="u1", text="explain async/await?", scope="python"))

        assert second.tier == Tier.EXACT
        assert second.answer == first.answer
        assert len(small.calls) + len(large.calls) == generated


class TestSideEffects:
    async def test_platform_action_is_not_billed(self, pipeline, small):
        response = await pipeline.process_turn(TurnRequest(user_id="u1", text="enroll me in the course"))

        assert response.intent == Intent.PLATFORM_ACTION
        assert response.answer == PLATFORM_ACTION_ACK
        assert small.calls == []
        assert await used(pipeline) == 0

    async def test_cancelled_turn_is_billed_but_not_recorded(self, pipeline, ledger):
        response = await pipeline.process_turn(
            TurnRequest(user_id="u1", text="My name is Alice", cancelled=lambda: True)
        )
        await pipeline.drain()

        assert response.cancelled is True
        assert await used(pipeline) == 1
        assert await pipeline.context_builder.history("u1", "default") == []
        assert await ledger.store.list_by_user("u1") == []

    async def test_completed_turn_feeds_session_and_ledger(self, pipeline, ledger):
        await pipeline.process_turn(TurnRequest(user_id="u1", text="My name is Alice"))
        await pipeline.drain()

        history = await pipeline.context_builder.history("u1", "default")
        assert [m["role"] for m in history] == ["user", "assistant"]
        assert [e.content for e in await ledger.store.list_by_user("u1")] == ["Name is Alice"]
        assert pipeline.message_log.conversations()["default"][0]["user_id"] == "u1"

    async def test_consolidation_skips_turns_already_ingested(self, pipeline, ledger):
        await pipeline.process_turn(TurnRequest(user_id="u1", text="My name is Alice"))
        await pipeline.drain()

        consolidated = await run_consolidation(ledger, pipeline.message_log, time.time() + 2 * 86400)
        assert consolidated == 0
        entries = await ledger.store.list_by_user("u1")
        assert [(e.content, e.access_count) for e in entries] == [("Name is Alice", 0)]

    async def test_same_session_turns_keep_submission_order(self, pipeline):
        await asyncio.gather(
            pipeline.process_turn(TurnRequest(user_id="u1", text="first message here")),
            pipeline.process_turn(TurnRequest(user_id="u1", text="second message here")),
        )
        history = await pipeline.context_builder.history("u1", "default")
        assert [m["content"] for m in history if m["role"] == "user"] == [
            "first message here",
            "second message here",
        ]

    async def test_queued_session_turns_leave_slots_for_other_sessions(self, pipeline, small):
        release = asyncio.Event()
        reply = small.complete

        async def gated(context, query, *, max_tokens=512):
            if query.startswith("slow"):
                await release.wait()
            return await reply(context, query, max_tokens=max_tokens)

        small.complete = gated
        pipeline._semaphore = asyncio.Semaphore(2)

        first = asyncio.create_task(pipeline.process_turn(TurnRequest(user_id="u1", text="slow first message")))
        second = asyncio.create_task(pipeline.process_turn(TurnRequest(user_id="u1", text="slow second message")))
        await asyncio.sleep(0.05)

        other = await asyncio.wait_for(
            pipeline.process_turn(TurnRequest(user_id="u2", text="hello how are you")), timeout=2
        )
        assert other.answer == "Happy to help with that topic today."

        release.set()
        await asyncio.gather(first, second)

    async def test_stats_shape(self, pipeline):
        await pipeline.process_turn(TurnRequest(user_id="u1", text="hello how are you"))
        stats = pipeline.stats()
        assert set(stats) == {"tiers", "classifier", "embeddings", "context", "fast_store_degraded"}
        assert stats["classifier"]["total"] == 1


class TestDeduplicateResponse:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("", ""),
            ("Para one.\n\nPara one.\n\nPara two.", "Para one.\n\nPara two."),
            ("A loop repeats a block of code. A loop repeats a block of code.", "A loop repeats a block of code."),
            ("Plain answer.", "Plain answer."),
            ("1. Loop\n2. Branch", "1. Loop\n2. Branch"),
        ],
    )
    def test_deduplicate(self, text, expected):
        assert deduplicate_response(text) == expected
