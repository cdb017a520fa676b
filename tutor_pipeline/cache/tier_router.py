"""Cheapest-tier-first answer resolution for knowledge-seeking turns.

Architectural role:
    Called by `TurnPipeline` for RAG turns. Tries, in fixed order:
        1. exact cache (normalized text hash, scoped)
        2. semantic cache (nearest cached question above threshold)
        3. retrieval + small model
        4. retrieval + large model
    and returns the first answer together with its tier and estimated cost.

Tier selection:
    - Complex topics start at tier 4.
    - Everything else starts at tier 3 and escalates once to tier 4 when the
      small model fails or its answer fails the self-consistency check.

Self-consistency check:
    Answer must be non-empty, at least `min_answer_chars` long and, when passages
    exist, share at least `min_keyword_overlap` of its content words with them.

Cache write-back:
    Only answers that pass the check and were grounded in retrieved passages are
    written back, tagged with the tier that produced them. Writes are
    best-effort and skipped when the turn was cancelled.

Failure handling:
    - Embedding missing: semantic tier skipped, retrieval skipped. The pipeline
      still calls `lookup_exact` for turns the classifier could not embed.
    - Retrieval unavailable: generation proceeds ungrounded and is not cached.
    - Generation failure at tier 4: `GenerationFailed(tier, reason)`.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

from tutor_pipeline.cache.answer_cache import AnswerCache
from tutor_pipeline.core.errors import GenerationFailed, GenerationUnavailable, RetrievalUnavailable
from tutor_pipeline.core.routing_types import (
    ClassificationResult,
    Complexity,
    Passage,
    Query,
    Tier,
    TierResolution,
)
from tutor_pipeline.llm.client import Completion
from tutor_pipeline.llm.provider_config import EXACT_LOOKUP_COST, SEMANTIC_LOOKUP_COST
from tutor_pipeline.llm.service import GenerationService
from tutor_pipeline.prompting.prompt_builder import build_rag_context
from tutor_pipeline.retrieval.retriever import RetrievalIndex


logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "this that with from have about which their there these those what when where "
    "would could should your into than then them they been were will also more "
    "some such only other very just".split()
)


def content_words(text: str) -> set[str]:
    return {w for w in _WORD.findall(text.lower()) if len(w) >= 4 and w not in _STOPWORDS}


@dataclass(frozen=True)
class TierRouterConfig:
    """Relevant environment variables:
        - `RAG_TOP_K`
        - `MIN_ANSWER_CHARS`
        - `MIN_KEYWORD_OVERLAP`
        - `SMALL_MAX_TOKENS` / `LARGE_MAX_TOKENS`
    """

    top_k: int = int(os.getenv("RAG_TOP_K", "5"))
    min_answer_chars: int = int(os.getenv("MIN_ANSWER_CHARS", "20"))
    min_keyword_overlap: float = float(os.getenv("MIN_KEYWORD_OVERLAP", "0.1"))
    small_max_tokens: int = int(os.getenv("SMALL_MAX_TOKENS", "512"))
    large_max_tokens: int = int(os.getenv("LARGE_MAX_TOKENS", "1024"))
    exact_cost: float = EXACT_LOOKUP_COST
    semantic_cost: float = SEMANTIC_LOOKUP_COST


class CacheTierRouter:
    def __init__(
        self,
        cache: AnswerCache,
        generation: GenerationService,
        retrieval: RetrievalIndex | None,
        config: TierRouterConfig | None = None,
    ) -> None:
        self.cache = cache
        self.generation = generation
        self.retrieval = retrieval
        self.config = config or TierRouterConfig()
        self.stats = {tier.value: {"hits": 0, "cost": 0.0} for tier in Tier}

    def _record(self, resolution: TierResolution) -> TierResolution:
        bucket = self.stats[resolution.tier.value]
        bucket["hits"] += 1
        bucket["cost"] += resolution.estimated_cost
        logger.info(
            "tier_resolved tier=%s cost=%.5f cached=%s",
            resolution.tier.value,
            resolution.estimated_cost,
            resolution.cached,
        )
        return resolution

    async def lookup_exact(self, query: Query) -> TierResolution | None:
        """Tier 1 only. Needs no embedding, so it stays usable during an embedding outage."""
        entry = await self.cache.get_exact(query.scope, query.text)
        if entry is None:
            return None
        await self.cache.record_hit(entry, entry.key)
        return self._record(
            TierResolution(entry.answer, Tier.EXACT, self.config.exact_cost, cached=True)
        )

    async def resolve(
        self,
        query: Query,
        classification: ClassificationResult,
        *,
        context: str | Callable[[], Awaitable[str]] = "",
        complexity: Complexity | None = None,
        cancelled: Callable[[], bool] | None = None,
    ) -> TierResolution:
        """Answer `query` at the cheapest tier able to do so.

        Args:
            query: Current turn; `embedding` may be `None`.
            classification: Classifier output, used for diagnostics.
            context: Rendered session context for the generation prompt, or an
                async callable producing it. The callable is only awaited when a
                generation tier runs.
            complexity: Topic complexity hint.
            cancelled: Returns `True` once the client has gone away.

        Raises:
            GenerationFailed: When the final generation tier cannot answer.
        """
        scope = query.scope
        logger.debug(
            "resolve scope=%s intent=%s confidence=%.2f complexity=%s",
            scope,
            classification.intent.value,
            classification.confidence,
            complexity.value if complexity else None,
        )

        # Tier 1
        exact = await self.lookup_exact(query)
        if exact is not None:
            return exact

        # Tier 2
        if query.embedding is not None:
            found = await self.cache.find_semantic(scope, query.embedding)
            if found is not None:
                entry, similarity = found
                await self.cache.record_hit(entry, entry.key)
                return self._record(
                    TierResolution(
                        entry.answer,
                        Tier.SEMANTIC,
                        self.config.semantic_cost,
                        cached=True,
                        similarity=similarity,
                    )
                )

        # Tiers 3 and 4
        if callable(context):
            context = await context()
        passages, grounded = await self._retrieve(query)
        prompt_context = build_rag_context(passages, context)
        spent = 0.0
        prompt_tokens = 0
        completion_tokens = 0

        if complexity != Complexity.COMPLEX:
            try:
                completion = await self.generation.small.complete(
                    prompt_context, query.text, max_tokens=self.config.small_max_tokens
                )
            except GenerationUnavailable as exc:
                logger.warning("Small-model tier failed, escalating: %s", exc)
            else:
                spent += self.generation.estimate_cost(completion)
                prompt_tokens += completion.prompt_tokens
                completion_tokens += completion.completion_tokens
                if self.is_consistent(completion.text, passages):
                    resolution = self._generated(
                        Tier.RAG_SMALL, completion, spent, prompt_tokens, completion_tokens,
                        passages, cacheable=grounded,
                    )
                    await self._write_back(query, resolution, cancelled)
                    return self._record(resolution)
                logger.info("Small-model answer failed self-consistency, escalating")

        try:
            completion = await self.generation.large.complete(
                prompt_context, query.text, max_tokens=self.config.large_max_tokens
            )
        except GenerationUnavailable as exc:
            raise GenerationFailed(Tier.RAG_LARGE, str(exc)) from exc

        spent += self.generation.estimate_cost(completion)
        prompt_tokens += completion.prompt_tokens
        completion_tokens += completion.completion_tokens

        if not completion.text.strip():
            raise GenerationFailed(Tier.RAG_LARGE, "empty answer")

        consistent = self.is_consistent(completion.text, passages)
        resolution = self._generated(
            Tier.RAG_LARGE, completion, spent, prompt_tokens, completion_tokens,
            passages, cacheable=grounded and consistent,
        )
        await self._write_back(query, resolution, cancelled)
        return self._record(resolution)

    # =========================================================
    # HELPERS
    # =========================================================

    async def _retrieve(self, query: Query) -> tuple[list[Passage], bool]:
        """Return `(passages, grounded)`; `grounded` is False when nothing usable came back."""
        if self.retrieval is None or query.embedding is None:
            return [], False
        try:
            passages = await self.retrieval.search(query.embedding, query.scope, self.config.top_k)
        except RetrievalUnavailable as exc:
            logger.warning("Retrieval unavailable during generation tier: %s", exc)
            return [], False
        return passages, bool(passages)

    def is_consistent(self, answer: str, passages: list[Passage]) -> bool:
        text = (answer or "").strip()
        if not text or len(text) < self.config.min_answer_chars:
            return False
        if not passages:
            return True

        answer_words = content_words(text)
        if not answer_words:
            return False
        source_words = set()
        for p in passages:
            source_words |= content_words(p.content)
        overlap = len(answer_words & source_words) / len(answer_words)
        return overlap >= self.config.min_keyword_overlap

    @staticmethod
    def _generated(
        tier: Tier,
        completion: Completion,
        cost: float,
        prompt_tokens: int,
        completion_tokens: int,
        passages: list[Passage],
        *,
        cacheable: bool,
    ) -> TierResolution:
        return TierResolution(
            answer=completion.text,
            tier=tier,
            estimated_cost=cost,
            cached=False,
            model=completion.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            passages=list(passages),
            cacheable=cacheable,
        )

    async def _write_back(
        self,
        query: Query,
        resolution: TierResolution,
        cancelled: Callable[[], bool] | None,
    ) -> None:
        if not resolution.cacheable:
            return
        if cancelled is not None and cancelled():
            logger.info("Turn cancelled, skipping cache write-back")
            return
        try:
            await self.cache.put(
                query.scope,
                query.text,
                resolution.answer,
                resolution.tier,
                query.embedding,
            )
        except Exception:
            logger.exception("Cache write-back failed tier=%s", resolution.tier.value)
