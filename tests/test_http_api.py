"""Tests for the OpenAI-compatible HTTP surface."""

import asyncio
import json

import httpx
import pytest

from conftest import BrokenRedis
from tutor_pipeline.api.http_api import create_app
from tutor_pipeline.memory.fast_store import FastStore, FastStoreConfig
from tutor_pipeline.quota.enforcer import CHAT_MESSAGES, COURSE_GENERATIONS, VOICE_MINUTES, QuotaEnforcer


@pytest.fixture
async def client(pipeline):
    app = create_app(pipeline, manage_lifecycle=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://tutor.test") as client:
        yield client


def chat(text, **extra):
    body = {"messages": [{"role": "user", "content": text}], "user": "u1"}
    body.update(extra)
    return body


class TestChatCompletions:
    async def test_envelope(self, client):
        response = await client.post("/v1/chat/completions", json=chat("hello how are you"))

        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "chat.completion"
        assert data["choices"][0]["message"] == {
            "role": "assistant",
            "content": "Happy to help with that topic today.",
        }
        assert data["choices"][0]["finish_reason"] == "stop"
        assert data["tutor"]["intent"] == "conversational"
        assert data["tutor"]["tier"] is None

    async def test_identity_from_headers(self, client, pipeline):
        body = {"messages": [{"role": "user", "content": "hello how are you"}]}
        response = await client.post(
            "/v1/chat/completions",
            json=body,
            headers={"x-user-id": "u2", "x-conversation-id": "c9"},
        )

        assert response.status_code == 200
        history = await pipeline.context_builder.history("u2", "c9")
        assert history[0]["content"] == "hello how are you"

    async def test_history_before_latest_user_message_is_passed_on(self, client, small):
        body = chat("tell me more")
        body["messages"] = [
            {"role": "user", "content": "Tell me about Python variables"},
            {"role": "assistant", "content": "Variables name values in Python."},
            {"role": "user", "content": "tell me more"},
        ]
        response = await client.post("/v1/chat/completions", json=body)

        assert response.json()["tutor"]["intent"] == "session-memory"
        assert small.calls[-1][1] == "tell me more"

    @pytest.mark.parametrize(
        "body,error",
        [
            ({"messages": [], "user": "u1"}, "No messages provided"),
            ({"messages": [{"role": "assistant", "content": "hi"}], "user": "u1"}, "No user message provided"),
            ({"messages": [{"role": "user", "content": "hi"}]}, "No user id provided"),
        ],
    )
    async def test_bad_requests(self, client, body, error):
        response = await client.post("/v1/chat/completions", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": error}

    async def test_quota_denial_is_429(self, client, pipeline, store, small):
        pipeline.quota = QuotaEnforcer(
            store,
            plans={"learner": {CHAT_MESSAGES: 50, VOICE_MINUTES: 30, COURSE_GENERATIONS: 3}},
        )
        await pipeline.quota.counter("u1", CHAT_MESSAGES)
        await store.set_hash(pipeline.quota.counter_key("u1", CHAT_MESSAGES), {"used": 50})

        response = await client.post("/v1/chat/completions", json=chat("Explain async/await"))

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["exceededResource"] == "chatMessages"
        assert error["currentUsage"] == 50
        assert error["limit"] == 50
        assert small.calls == []

    async def test_unreadable_quota_store_is_503(self, client, pipeline, small):
        pipeline.quota = QuotaEnforcer(FastStore(FastStoreConfig(redis_url=""), client=BrokenRedis()))

        response = await client.post("/v1/chat/completions", json=chat("hello how are you"))

        assert response.status_code == 503
        assert response.json()["error"]["suggestedAction"] == "retry_later"
        assert small.calls == []

    async def test_stream(self, client):
        response = await client.post("/v1/chat/completions", json=chat("hello how are you", stream=True))

        assert response.headers["content-type"].startswith("text/event-stream")
        events = [line[len("data: "):] for line in response.text.splitlines() if line.startswith("data: ")]
        assert events[-1] == "[DONE]"
        first = json.loads(events[0])
        assert first["choices"][0]["delta"]["content"] == "Happy to help with that topic today."
        assert json.loads(events[1])["choices"][0]["finish_reason"] == "stop"


class TestOperationalRoutes:
    async def test_health_reports_local_fallback(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "ok", "fast_store_degraded": True}

    async def test_stats(self, client):
        await client.post("/v1/chat/completions", json=chat("hello how are you"))
        stats = (await client.get("/v1/stats")).json()
        assert stats["classifier"]["total"] == 1


class TestLifespan:
    async def test_scheduler_runs_for_app_lifetime(self, pipeline):
        app = create_app(pipeline, manage_lifecycle=False)

        async with app.router.lifespan_context(app):
            scheduler = app.state.scheduler
            assert scheduler.running
            await asyncio.sleep(0.05)
            assert scheduler.runs == {"sweep": 1, "consolidation": 1, "rollover": 1}

        assert not scheduler.running

    async def test_jobs_can_be_disabled(self, pipeline):
        app = create_app(pipeline, manage_lifecycle=False, run_jobs=False)
        async with app.router.lifespan_context(app):
            assert app.state.scheduler is None
