"""Core turn orchestration for quota, classification, tier routing and generation.

Architectural role:
    Provides the main execution pipeline used by API/CLI layers to transform one
    learner message into an answer at the lowest sufficient cost.

Control-flow model:
    1. `QuotaEnforcer.check` before any billable work; a denial ends the turn.
    2. Embed the query once (shared by classifier, caches and retrieval).
    3. `SemanticIntentClassifier.classify` (includes the knowledge check).
    4. Dispatch on intent:
       - RAG: `CacheTierRouter.resolve` (exact, semantic, small, large).
       - CONVERSATIONAL / SESSION_MEMORY: small-model chat with built context.
       - PLATFORM_ACTION: fixed acknowledgement, no generation call.
    5. `QuotaEnforcer.consume` when a cache answer or generation executed.
    6. Record both messages in the session and schedule `MemoryLedger.ingest`
       as a background task.

Concurrency:
    - One `asyncio.Lock` per (user, conversation), held in a weak registry, so
      turns of the same session run in order while other sessions proceed.
    - Overall parallelism is bounded by an `asyncio.Semaphore`, taken after the
      session lock so queued turns of one session hold no slots.

Cancellation:
    `TurnRequest.cancelled` reports a client disconnect. A cancelled turn still
    consumes quota when a remote call executed, but performs no cache, session or
    ledger writes after the cancellation is observed.

Error handling strategy:
    Provider failures degrade through the tier fallbacks. Only quota exhaustion
    and a total provider outage reach the learner, as fixed, non-technical
    messages. Knowledge-base gaps are never mentioned.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable

from tutor_pipeline.cache.answer_cache import AnswerCache
from tutor_pipeline.cache.tier_router import CacheTierRouter
from tutor_pipeline.core.errors import (
    EmbeddingUnavailable,
    FastStoreUnavailable,
    GenerationFailed,
    GenerationUnavailable,
)
from tutor_pipeline.core.routing_types import (
    ClassificationResult,
    Complexity,
    Intent,
    Query,
    TurnResponse,
)
from tutor_pipeline.llm.service import GenerationService
from tutor_pipeline.memory.conversation_manager import ConversationContextBuilder, InMemoryMessageLog
from tutor_pipeline.memory.embedding_model import EmbeddingGateway
from tutor_pipeline.memory.fast_store import FastStore
from tutor_pipeline.memory.ledger_store import JsonLedgerStore
from tutor_pipeline.memory.memory_system import MemoryLedger
from tutor_pipeline.nlp.intent_router import SemanticIntentClassifier
from tutor_pipeline.prompting.prompt_builder import PLATFORM_ACTION_ACK, build_chat_context
from tutor_pipeline.quota.enforcer import CHAT_MESSAGES, QuotaEnforcer
from tutor_pipeline.retrieval.retriever import FaissRetrievalIndex


logger = logging.getLogger(__name__)

DEBUG_ROUTING = os.getenv("DEBUG_ROUTING", "").lower() in ("1", "true", "yes")

UNAVAILABLE_MESSAGE = "The tutor is temporarily unavailable. Please try again in a moment."


@dataclass(frozen=True)
class EngineConfig:
    """Relevant environment variables:
        - `TURN_CONCURRENCY`
        - `CHAT_MAX_TOKENS`
    """

    max_concurrent_turns: int = int(os.getenv("TURN_CONCURRENCY", "64"))
    chat_max_tokens: int = int(os.getenv("CHAT_MAX_TOKENS", "512"))


@dataclass
class TurnRequest:
    """One learner message plus routing hints.

    Attributes:
        history: Authoritative prior messages when the caller has them (for
            example the OpenAI-style `messages` array). `None` means the session
            cache or message log is consulted.
        cancelled: Returns `True` after the client disconnected.
    """

    user_id: str
    text: str
    conversation_id: str = "default"
    scope: str = "global"
    complexity: Complexity | None = None
    history: list[dict[str, str]] | None = None
    force_intent: Intent | None = None
    cancelled: Callable[[], bool] | None = field(default=None, repr=False)


_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def deduplicate_response(text: str) -> str:
    """Drop repeated paragraphs, then repeated sentences, from generated text.

    Small models occasionally echo their answer twice; order of first
    occurrence is kept. Empty input returns an empty string.
    """
    if not text or not text.strip():
        return ""

    paragraphs = list(dict.fromkeys(p.strip() for p in text.strip().split("\n\n") if p.strip()))
    cleaned = []
    for paragraph in paragraphs:
        sentences = [s for s in _SENTENCE_SPLIT.split(paragraph) if s]
        unique = list(dict.fromkeys(sentences))
        cleaned.append(" ".join(unique) if len(unique) < len(sentences) else paragraph)
    return "\n\n".join(cleaned)


class TurnPipeline:
    def __init__(
        self,
        store: FastStore,
        gateway: EmbeddingGateway,
        classifier: SemanticIntentClassifier,
        router: CacheTierRouter,
        context_builder: ConversationContextBuilder,
        ledger: MemoryLedger,
        quota: QuotaEnforcer,
        generation: GenerationService,
        config: EngineConfig | None = None,
        message_log: InMemoryMessageLog | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.classifier = classifier
        self.router = router
        self.context_builder = context_builder
        self.ledger = ledger
        self.quota = quota
        self.generation = generation
        self.config = config or EngineConfig()
        self.message_log = message_log
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_turns))
        self._session_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._background: set[asyncio.Task] = set()

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start(self) -> None:
        await self.store.start()
        await self.gateway.start()
        await self.generation.start()
        await self.classifier.start()
        logger.info("Turn pipeline started")

    async def close(self) -> None:
        await self.drain()
        await self.generation.close()
        await self.gateway.close()
        await self.store.close()
        logger.info("Turn pipeline closed")

    async def drain(self) -> None:
        """Wait for scheduled background work (ledger ingestion)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _session_lock(self, user_id: str, conversation_id: str) -> asyncio.Lock:
        key = (user_id, conversation_id)
        lock = self._session_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[key] = lock
        return lock

    # =========================================================
    # TURN
    # =========================================================

    async def process_turn(self, request: TurnRequest) -> TurnResponse:
        """Process one learner message end to end.

        Returns:
            `TurnResponse`. Quota denials are returned (not raised) with `denial`
            set; a total provider outage returns `UNAVAILABLE_MESSAGE`.
        """
        request.conversation_id = request.conversation_id or "default"
        lock = self._session_lock(request.user_id, request.conversation_id)
        async with lock:
            async with self._semaphore:
                return await self._process(request)

    async def _process(self, request: TurnRequest) -> TurnResponse:
        cancelled = request.cancelled or (lambda: False)
        user_id = request.user_id
        conversation_id = request.conversation_id

        denial = await self.quota.check(user_id, CHAT_MESSAGES)
        if denial is not None:
            return TurnResponse(answer=denial.message, denial=denial)

        try:
            embedding = await self.gateway.embed(request.text)
        except EmbeddingUnavailable as exc:
            logger.warning("Query embedding unavailable: %s", exc)
            embedding = None

        history = request.history
        if history is None:
            history = await self.context_builder.history(user_id, conversation_id)

        classification = await self.classifier.classify(
            request.text,
            embedding=embedding,
            history=history,
            scope=request.scope,
            force_intent=request.force_intent,
        )
        if DEBUG_ROUTING:
            logger.info(
                "route user=%s intent=%s confidence=%.3f method=%s fallback=%s reason=%s",
                user_id,
                classification.intent.value,
                classification.confidence,
                classification.method,
                classification.fallback,
                classification.fallback_reason,
            )

        query = Query(
            text=request.text,
            embedding=embedding,
            session_id=self.context_builder.session_key(user_id, conversation_id),
            user_id=user_id,
            scope=request.scope,
            conversation_id=conversation_id,
        )

        try:
            response, billable = await self._dispatch(request, query, classification, cancelled)
        except (GenerationFailed, GenerationUnavailable) as exc:
            logger.error("Turn failed after all fallbacks user=%s: %s", user_id, exc)
            return TurnResponse(
                answer=UNAVAILABLE_MESSAGE,
                intent=classification.intent,
                fallback=classification.fallback,
                metadata={"error": type(exc).__name__},
            )

        if billable:
            try:
                await self.quota.consume(user_id, CHAT_MESSAGES)
            except FastStoreUnavailable as exc:
                logger.error("Usage not recorded user=%s: %s", user_id, exc)

        if cancelled():
            logger.info("Turn cancelled user=%s conversation=%s", user_id, conversation_id)
            response.cancelled = True
            return response

        await self._record(request, response.answer)
        self._schedule_ingest(request, response.answer)
        return response

    async def _dispatch(
        self,
        request: TurnRequest,
        query: Query,
        classification: ClassificationResult,
        cancelled: Callable[[], bool],
    ) -> tuple[TurnResponse, bool]:
        intent = classification.intent
        metadata: dict[str, Any] = {
            "method": classification.method,
            "confidence": classification.confidence,
        }

        if intent == Intent.RAG:
            async def context() -> str:
                built = await self.context_builder.build(
                    request.user_id, request.conversation_id, request.history
                )
                return built.text

            resolution = await self.router.resolve(
                query,
                classification,
                context=context,
                complexity=request.complexity,
                cancelled=cancelled,
            )
            metadata.update(
                {"cached": resolution.cached, "model": resolution.model, "similarity": resolution.similarity}
            )
            return (
                TurnResponse(
                    answer=deduplicate_response(resolution.answer),
                    intent=intent,
                    tier=resolution.tier,
                    estimated_cost=resolution.estimated_cost,
                    metadata=metadata,
                ),
                True,
            )

        if intent == Intent.CONVERSATIONAL and classification.fallback_reason == "embedding_unavailable":
            # exact cache needs no embedding; try it before paying for chat
            resolution = await self.router.lookup_exact(query)
            if resolution is not None:
                metadata["cached"] = True
                return (
                    TurnResponse(
                        answer=deduplicate_response(resolution.answer),
                        intent=intent,
                        tier=resolution.tier,
                        estimated_cost=resolution.estimated_cost,
                        fallback=True,
                        metadata=metadata,
                    ),
                    True,
                )

        if intent in (Intent.CONVERSATIONAL, Intent.SESSION_MEMORY):
            built = await self.context_builder.build(
                request.user_id, request.conversation_id, request.history
            )
            completion = await self.generation.small.complete(
                build_chat_context(built.text),
                request.text,
                max_tokens=self.config.chat_max_tokens,
            )
            metadata["model"] = completion.model
            return (
                TurnResponse(
                    answer=deduplicate_response(completion.text) or UNAVAILABLE_MESSAGE,
                    intent=intent,
                    tier=None,
                    estimated_cost=self.generation.estimate_cost(completion),
                    fallback=classification.fallback,
                    needs_clarification=classification.needs_clarification,
                    metadata=metadata,
                ),
                True,
            )

        if intent == Intent.PLATFORM_ACTION:
            return (
                TurnResponse(answer=PLATFORM_ACTION_ACK, intent=intent, metadata=metadata),
                False,
            )

        raise ValueError(f"unhandled intent: {intent!r}")

    # =========================================================
    # POST-TURN WRITES
    # =========================================================

    async def _record(self, request: TurnRequest, answer: str) -> None:
        try:
            await self.context_builder.record_turn(
                request.user_id, request.conversation_id, "user", request.text
            )
            await self.context_builder.record_turn(
                request.user_id, request.conversation_id, "assistant", answer
            )
        except Exception:
            logger.exception("Failed to record turn in session context")

        if self.message_log is not None:
            for role, content in (("user", request.text), ("assistant", answer)):
                self.message_log.append(
                    request.conversation_id, role, content, user_id=request.user_id, ingested=True
                )

    def _schedule_ingest(self, request: TurnRequest, answer: str) -> None:
        turns = [
            {"role": "user", "content": request.text},
            {"role": "assistant", "content": answer},
        ]
        task = asyncio.create_task(
            self.ledger.ingest(request.user_id, request.conversation_id, turns)
        )
        self._background.add(task)
        task.add_done_callback(self._on_ingest_done)

    def _on_ingest_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background ledger ingest failed: %s", exc)

    # =========================================================
    # STATS
    # =========================================================

    def stats(self) -> dict[str, Any]:
        return {
            "tiers": {name: dict(bucket) for name, bucket in self.router.stats.items()},
            "classifier": self.classifier.get_stats(),
            "embeddings": dict(self.gateway.stats),
            "context": dict(self.context_builder.stats),
            "fast_store_degraded": self.store.degraded,
        }


def build_pipeline(
    ledger_path: str | None = None,
    retrieval_dir: str | None = None,
) -> TurnPipeline:
    """Compose a pipeline from environment configuration.

    Relevant environment variables:
        - `LEDGER_PATH` (default `data/memory_ledger.json`)
        - `RETRIEVAL_DIR` (default `data/retrieval`)
    """
    store = FastStore()
    gateway = EmbeddingGateway()
    retrieval = FaissRetrievalIndex(
        gateway.dimension,
        retrieval_dir or os.getenv("RETRIEVAL_DIR", "data/retrieval"),
    )
    retrieval.load()
    generation = GenerationService.from_env()
    ledger = MemoryLedger(
        JsonLedgerStore(ledger_path or os.getenv("LEDGER_PATH", "data/memory_ledger.json")),
        gateway,
    )
    message_log = InMemoryMessageLog()
    context_builder = ConversationContextBuilder(
        store, generation.small, message_log=message_log, ledger=ledger
    )
    return TurnPipeline(
        store=store,
        gateway=gateway,
        classifier=SemanticIntentClassifier(gateway, retrieval),
        router=CacheTierRouter(AnswerCache(store), generation, retrieval),
        context_builder=context_builder,
        ledger=ledger,
        quota=QuotaEnforcer(store),
        generation=generation,
        message_log=message_log,
    )
