"""
HTTP API adapter for the tutor turn pipeline.

Architectural role:
- Expose an OpenAI-compatible chat completions interface.
- Enforce adapter-level input validation.
- Delegate all routing/generation work to `TurnPipeline.process_turn`.
- Normalize pipeline output to the completion envelope (JSON or SSE).

Endpoint responsibilities:
- `POST /v1/chat/completions`: validate input, resolve user/conversation/scope,
  invoke the pipeline, format completion output.
- `GET /v1/stats`: tier, classifier, embedding and context statistics.
- `GET /health`: liveness plus fast-store mode.

Lifespan:
- Starts the pipeline (optional) and the maintenance `JobScheduler` (memory
  sweep, consolidation, quota rollover); both stop on shutdown.

Identity resolution (`POST /v1/chat/completions`):
- `user_id`: body `user` or header `X-User-Id` (required).
- `conversation_id`: body `conversation_id` or header `X-Conversation-Id`.
- `scope`: body `scope` or header `X-Scope`, then `model`, then `global`.

Input validation behavior:
- Missing `messages` -> HTTP 400.
- No user message in `messages` -> HTTP 400.
- Missing user id -> HTTP 400.

Error handling strategy:
- Quota exhaustion -> HTTP 429 with the structured denial as `error`; an
  unreadable quota store -> HTTP 503 with the same shape.
- Provider outages are absorbed by the pipeline and returned as a regular
  assistant message.
- Client disconnects are reported to the pipeline through `cancelled`.

Determinism considerations:
- IDs and timestamps are generated per request (`uuid`, `time.time()`).
"""

from dotenv import load_dotenv

load_dotenv()

import asyncio
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from tutor_pipeline.core.engine import TurnPipeline, TurnRequest
from tutor_pipeline.core.jobs import JobScheduler
from tutor_pipeline.core.routing_types import Complexity


logger = logging.getLogger(__name__)

# Sensitive request/response debug logging is opt-in.
DEBUG = os.getenv("DEBUG") == "true"
DISCONNECT_POLL_SECONDS = 0.1


# ============================================================
# Request Schema
# ============================================================

class ChatMessage(BaseModel):
    role: str
    content: str = ""


class ChatCompletionRequest(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    model: str | None = None
    stream: bool = False
    user: str | None = None
    conversation_id: str | None = None
    scope: str | None = None
    complexity: Complexity | None = None


def _latest_user_message(messages: list[ChatMessage]) -> tuple[str, list[dict[str, str]]]:
    """Return the latest user text and the messages before it."""
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == "user":
            history = [{"role": m.role, "content": m.content} for m in messages[:index]]
            return messages[index].content, history
    return "", []


def _envelope(completion_id: str, model: str, content: str, extra: dict) -> dict:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "tutor": extra,
    }


def _chunk(completion_id: str, created: int, model: str, delta: dict, finish_reason) -> str:
    data = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(data)}\n\n"


# ============================================================
# App Factory
# ============================================================

def create_app(
    pipeline: TurnPipeline,
    manage_lifecycle: bool = True,
    scheduler: JobScheduler | None = None,
    run_jobs: bool = True,
) -> FastAPI:
    """Build the FastAPI app around an already-composed pipeline.

    Args:
        manage_lifecycle: Start/close the pipeline with the app lifespan.
        scheduler: Maintenance job scheduler; when omitted one is built over the
            pipeline ledger, quota enforcer and message log.
        run_jobs: Run the scheduler for the lifetime of the app.
    """
    if scheduler is None and run_jobs:
        scheduler = JobScheduler(pipeline.ledger, pipeline.quota, pipeline.message_log)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if manage_lifecycle:
            await pipeline.start()
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            if manage_lifecycle:
                await pipeline.close()

    app = FastAPI(lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.scheduler = scheduler

    @app.get("/health")
    async def health():
        return {"status": "ok", "fast_store_degraded": pipeline.store.degraded}

    @app.get("/v1/stats")
    async def stats():
        return pipeline.stats()

    @app.post("/v1/chat/completions")
    async def chat_completions(body: ChatCompletionRequest, request: Request):
        if not body.messages:
            return JSONResponse(status_code=400, content={"error": "No messages provided"})

        user_message, history = _latest_user_message(body.messages)
        if not user_message.strip():
            return JSONResponse(status_code=400, content={"error": "No user message provided"})

        user_id = body.user or request.headers.get("x-user-id")
        if not user_id:
            return JSONResponse(status_code=400, content={"error": "No user id provided"})

        conversation_id = body.conversation_id or request.headers.get("x-conversation-id") or "default"
        scope = body.scope or request.headers.get("x-scope") or body.model or "global"
        model_name = body.model or "tutor"

        if DEBUG:
            logger.info(
                "chat request user=%s conversation=%s scope=%s message=%r",
                user_id, conversation_id, scope, user_message,
            )

        disconnected = False

        async def watch_disconnect() -> None:
            nonlocal disconnected
            while not disconnected:
                if await request.is_disconnected():
                    disconnected = True
                    return
                await asyncio.sleep(DISCONNECT_POLL_SECONDS)

        turn = TurnRequest(
            user_id=user_id,
            text=user_message,
            conversation_id=conversation_id,
            scope=scope,
            complexity=body.complexity,
            history=history or None,
            cancelled=lambda: disconnected,
        )
        watcher = asyncio.create_task(watch_disconnect())
        try:
            response = await pipeline.process_turn(turn)
        finally:
            watcher.cancel()

        if response.denial is not None:
            status = 503 if response.denial.suggested_action == "retry_later" else 429
            return JSONResponse(status_code=status, content={"error": response.denial.to_dict()})

        extra = {
            "intent": response.intent.value if response.intent else None,
            "tier": response.tier.value if response.tier else None,
            "estimated_cost": response.estimated_cost,
            "fallback": response.fallback,
            "needs_clarification": response.needs_clarification,
        }
        completion_id = f"chatcmpl-{uuid.uuid4().hex}"

        if not body.stream:
            return _envelope(completion_id, model_name, response.answer, extra)

        async def event_generator():
            created = int(time.time())
            yield _chunk(completion_id, created, model_name, {"role": "assistant", "content": response.answer}, None)
            yield _chunk(completion_id, created, model_name, {}, "stop")
            yield "data: [DONE]\n\n"

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    return app
