"""Semantic intent classifier producing `ClassificationResult` for the engine.

Intent classification logic:
- `force_intent` short-circuits everything (method `forced`).
- Reference-cue override: a short query (at most `short_query_words` words)
  with prior history and a cue such as "that", "more" or "continue" is routed
  to session memory without looking at embeddings.
- Otherwise the query embedding is compared against exemplar embeddings per
  intent; each intent scores its best exemplar match.
- A top-two gap below `ambiguity_gap` defaults to conversational with
  `needs_clarification=True`.

Knowledge availability:
- A RAG decision is confirmed by probing the retrieval index (top-3). When the
  index is unavailable, empty, or the best passage scores below
  `relevance_floor`, the turn is silently downgraded to conversational with
  `fallback=True` and a machine-readable reason. The user never sees this.

Lifecycle:
- Exemplars are embedded once in `start()` through the shared gateway and held
  on the instance.

Failure handling:
- `EmbeddingUnavailable` routes to conversational with reason
  `embedding_unavailable`; plain chat stays usable.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

import numpy as np

from tutor_pipeline.core.errors import EmbeddingUnavailable
from tutor_pipeline.core.routing_types import ClassificationResult, Intent
from tutor_pipeline.memory.embedding_model import EmbeddingGateway
from tutor_pipeline.retrieval.retriever import RetrievalIndex, check_knowledge_availability


logger = logging.getLogger(__name__)


# =========================================================
# EXEMPLARS
# =========================================================

DEFAULT_EXEMPLARS: dict[Intent, tuple[str, ...]] = {
    Intent.RAG: (
        "Explain the concept thoroughly with details",
        "What is the definition and meaning",
        "Teach me about this topic step by step",
        "I need to understand how something works",
        "Give me detailed information about this subject",
        "Help me learn this concept with examples",
    ),
    Intent.CONVERSATIONAL: (
        "Hello, how are you doing today",
        "I appreciate your help, thank you",
        "That was helpful, I understand now",
        "Can we have a casual conversation",
        "What do you think about this",
        "Tell me something interesting",
    ),
    Intent.SESSION_MEMORY: (
        "What did you just tell me",
        "Repeat the previous explanation",
        "Go back to what you said before",
        "Continue from where you left off",
        "Tell me more about the last topic",
        "Expand on your previous answer",
    ),
    Intent.PLATFORM_ACTION: (
        "Enroll me in this course",
        "Show my progress in the lessons",
        "Generate flashcards from this",
        "Create a learning roadmap for me",
        "Open the next lesson please",
        "Track my study analytics",
    ),
}

# =========================================================
# REFERENCE CUES
# =========================================================

REFERENCE_CUES = re.compile(
    r"\b(that|it|this|continue|previous|more|again|earlier|last|expand|elaborate)\b"
    r"|what did you say",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ClassifierConfig:
    """Relevant environment variables:
        - `CLASSIFIER_SHORT_QUERY_WORDS`
        - `CLASSIFIER_AMBIGUITY_GAP`
        - `RETRIEVAL_RELEVANCE_FLOOR`
        - `KNOWLEDGE_CHECK_TOP_K`
    """

    short_query_words: int = int(os.getenv("CLASSIFIER_SHORT_QUERY_WORDS", "5"))
    ambiguity_gap: float = float(os.getenv("CLASSIFIER_AMBIGUITY_GAP", "0.15"))
    relevance_floor: float = float(os.getenv("RETRIEVAL_RELEVANCE_FLOOR", "0.5"))
    knowledge_top_k: int = int(os.getenv("KNOWLEDGE_CHECK_TOP_K", "3"))
    reference_cue_confidence: float = 0.85
    default_scope: str = "global"


def has_reference_cue(text: str) -> bool:
    return bool(REFERENCE_CUES.search(text or ""))


class SemanticIntentClassifier:
    def __init__(
        self,
        gateway: EmbeddingGateway,
        retrieval: RetrievalIndex | None,
        config: ClassifierConfig | None = None,
        exemplars: Mapping[Intent, Sequence[str]] | None = None,
    ) -> None:
        self.gateway = gateway
        self.retrieval = retrieval
        self.config = config or ClassifierConfig()
        self.exemplars = {intent: tuple(texts) for intent, texts in (exemplars or DEFAULT_EXEMPLARS).items()}
        self._exemplar_vectors: dict[Intent, np.ndarray] = {}
        self.stats = {
            "total": 0,
            "intent_breakdown": {intent.value: 0 for intent in Intent},
            "fallbacks": 0,
            "clarifications": 0,
            "average_confidence": 0.0,
        }

    async def start(self) -> None:
        """Embed exemplars once. Leaves the classifier in degraded mode on failure."""
        try:
            for intent, texts in self.exemplars.items():
                if texts:
                    self._exemplar_vectors[intent] = await self.gateway.embed_many(list(texts))
            logger.info("Intent exemplars embedded: %d intents", len(self._exemplar_vectors))
        except EmbeddingUnavailable as exc:
            self._exemplar_vectors = {}
            logger.warning("Exemplar embedding failed, classifier degraded: %s", exc)

    @property
    def ready(self) -> bool:
        return bool(self._exemplar_vectors)

    # =========================================================
    # CLASSIFY
    # =========================================================

    async def classify(
        self,
        text: str,
        *,
        embedding: np.ndarray | None = None,
        history: Iterable = (),
        scope: str | None = None,
        force_intent: Intent | None = None,
    ) -> ClassificationResult:
        """Classify one user query.

        Args:
            text: Raw query text.
            embedding: Precomputed query embedding; computed here when `None`.
            history: Prior turns of the conversation (any non-empty sequence
                counts as history).
            scope: Retrieval scope for the knowledge check.
            force_intent: Caller override.

        Returns:
            `ClassificationResult`; never raises for provider failures.
        """
        result = await self._classify(text, embedding, list(history), scope, force_intent)
        self._update_stats(result)
        return result

    async def _classify(
        self,
        text: str,
        embedding: np.ndarray | None,
        history: list,
        scope: str | None,
        force_intent: Intent | None,
    ) -> ClassificationResult:
        if force_intent is not None:
            return ClassificationResult(intent=force_intent, confidence=1.0, method="forced")

        text = (text or "").strip()
        if not text:
            return ClassificationResult(intent=Intent.CONVERSATIONAL, method="degraded")

        has_history = bool(history)
        cue = has_reference_cue(text)
        word_count = len(text.split())

        if has_history and cue and word_count <= self.config.short_query_words:
            return ClassificationResult(
                intent=Intent.SESSION_MEMORY,
                confidence=self.config.reference_cue_confidence,
                method="reference-cue",
            )

        if not self.ready:
            return ClassificationResult(
                intent=Intent.CONVERSATIONAL,
                fallback=True,
                fallback_reason="embedding_unavailable",
                method="degraded",
            )

        if embedding is None:
            try:
                embedding = await self.gateway.embed(text)
            except EmbeddingUnavailable as exc:
                logger.warning("Query embedding failed, routing to conversational: %s", exc)
                return ClassificationResult(
                    intent=Intent.CONVERSATIONAL,
                    fallback=True,
                    fallback_reason="embedding_unavailable",
                    method="degraded",
                )

        scores = self.score(embedding)
        ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
        top_name, top_score = ranked[0]
        second_score = ranked[1][1] if len(ranked) > 1 else 0.0
        top = Intent(top_name)

        if top_score - second_score < self.config.ambiguity_gap:
            return ClassificationResult(
                intent=Intent.CONVERSATIONAL,
                confidence=top_score,
                scores=scores,
                needs_clarification=True,
                original_intent=top,
            )

        if top == Intent.SESSION_MEMORY:
            if not has_history:
                return ClassificationResult(
                    intent=Intent.CONVERSATIONAL,
                    confidence=top_score,
                    scores=scores,
                    original_intent=top,
                )
            return ClassificationResult(intent=top, confidence=top_score, scores=scores)

        if top == Intent.RAG:
            check = await check_knowledge_availability(
                self.retrieval,
                embedding,
                scope or self.config.default_scope,
                top_k=self.config.knowledge_top_k,
                relevance_floor=self.config.relevance_floor,
            )
            if not check.available:
                logger.info("RAG downgraded to conversational reason=%s", check.reason)
                return ClassificationResult(
                    intent=Intent.CONVERSATIONAL,
                    confidence=top_score,
                    scores=scores,
                    fallback=True,
                    fallback_reason=check.reason,
                    original_intent=Intent.RAG,
                    knowledge_score=check.best_score,
                )
            return ClassificationResult(
                intent=Intent.RAG,
                confidence=top_score,
                scores=scores,
                knowledge_score=check.best_score,
            )

        return ClassificationResult(intent=top, confidence=top_score, scores=scores)

    def score(self, embedding: np.ndarray) -> dict[str, float]:
        """Per-intent max cosine similarity against exemplars."""
        query = np.asarray(embedding, dtype="float32").ravel()
        norm = float(np.linalg.norm(query))
        if norm > 0:
            query = query / norm
        return {
            intent.value: float(np.max(vectors @ query))
            for intent, vectors in self._exemplar_vectors.items()
        }

    # =========================================================
    # STATS
    # =========================================================

    def _update_stats(self, result: ClassificationResult) -> None:
        stats = self.stats
        stats["total"] += 1
        stats["intent_breakdown"][result.intent.value] += 1
        if result.fallback:
            stats["fallbacks"] += 1
        if result.needs_clarification:
            stats["clarifications"] += 1
        n = stats["total"]
        stats["average_confidence"] += (result.confidence - stats["average_confidence"]) / n

    def get_stats(self) -> dict:
        total = self.stats["total"] or 1
        return {
            **self.stats,
            "intent_breakdown": dict(self.stats["intent_breakdown"]),
            "fallback_rate": self.stats["fallbacks"] / total,
        }
