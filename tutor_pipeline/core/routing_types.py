"""Shared data contracts for the turn pipeline.

Architectural role:
    Defines the closed enums and record types exchanged between the classifier,
    the tier router, the context builder, the memory ledger and the quota
    enforcer. `app`-level orchestration (`tutor_pipeline.core.engine`) maps these
    records onto concrete execution paths.

Closed unions:
    - `Intent` covers every routing outcome of the classifier. Consumers handle
      all members explicitly.
    - `Tier` covers every cost level the router can resolve a query at, ordered
      from cheapest to most expensive.

Serialization:
    Records that live in the fast store (`CacheEntry`, `SessionContext`) or the
    ledger (`MemoryEntry`) expose `to_dict` / `from_dict` pairs producing
    JSON-compatible payloads. Embeddings are stored as plain float lists.

Determinism:
    Pure data; no I/O and no module-level state.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np


class Intent(str, Enum):
    """Routing outcome of the semantic intent classifier."""

    RAG = "rag"
    CONVERSATIONAL = "conversational"
    SESSION_MEMORY = "session-memory"
    PLATFORM_ACTION = "platform-action"


class Tier(str, Enum):
    """Cost tiers of the answer router, cheapest first."""

    EXACT = "exact"
    SEMANTIC = "semantic"
    RAG_SMALL = "rag-small"
    RAG_LARGE = "rag-large"

    @property
    def is_cache(self) -> bool:
        return self in (Tier.EXACT, Tier.SEMANTIC)


class Complexity(str, Enum):
    """Topic complexity hint supplied by the caller (course metadata)."""

    SIMPLE = "simple"
    STANDARD = "standard"
    COMPLEX = "complex"


def _vector_to_list(vector: np.ndarray | None) -> list[float] | None:
    if vector is None:
        return None
    return [float(x) for x in np.asarray(vector, dtype="float32").ravel()]


def _list_to_vector(values: list[float] | None) -> np.ndarray | None:
    if values is None:
        return None
    return np.asarray(values, dtype="float32")


@dataclass(frozen=True)
class Query:
    """One user turn as seen by the router.

    Attributes:
        text: Raw query text.
        embedding: Normalized query vector, or `None` when embedding failed.
        session_id: Session key (`user:conversation`).
        user_id: Owning user.
        timestamp: Unix seconds when the turn was created.
        scope: Cache/retrieval scope such as `course:topic`.
        conversation_id: Conversation the turn belongs to.
    """

    text: str
    embedding: np.ndarray | None = field(default=None, compare=False, repr=False)
    session_id: str = ""
    user_id: str = ""
    timestamp: float = field(default_factory=time.time)
    scope: str = "global"
    conversation_id: str = "default"


@dataclass
class CacheEntry:
    """Cached answer record for the exact and semantic tiers."""

    key: str
    answer: str
    tier: Tier
    scope: str
    question: str = ""
    embedding: np.ndarray | None = field(default=None, repr=False)
    created_at: float = field(default_factory=time.time)
    expires_at: float | None = None
    hit_count: int = 0
    confidence: float = 1.0

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "answer": self.answer,
            "tier": self.tier.value,
            "scope": self.scope,
            "question": self.question,
            "embedding": _vector_to_list(self.embedding),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "hit_count": self.hit_count,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from its stored payload.

        Raises:
            ValueError: When the stored tier is not a member of `Tier`.
        """
        return cls(
            key=data["key"],
            answer=data["answer"],
            tier=Tier(data["tier"]),
            scope=data.get("scope", "global"),
            question=data.get("question", ""),
            embedding=_list_to_vector(data.get("embedding")),
            created_at=float(data.get("created_at", 0.0)),
            expires_at=data.get("expires_at"),
            hit_count=int(data.get("hit_count", 0)),
            confidence=float(data.get("confidence", 1.0)),
        )


@dataclass
class ClassificationResult:
    """Output of `SemanticIntentClassifier.classify`.

    Attributes:
        intent: Effective routing intent after overrides and fallbacks.
        confidence: Score associated with the decision.
        scores: Per-intent max cosine similarity against exemplars.
        needs_clarification: Set when the top-two gap was ambiguous.
        fallback: Set when a RAG intent was downgraded internally.
        fallback_reason: Machine-readable reason for the downgrade.
        original_intent: Intent before any downgrade.
        method: `semantic`, `reference-cue`, `forced` or `degraded`.
        knowledge_score: Best retrieval score seen by the availability check.
    """

    intent: Intent
    confidence: float = 0.0
    scores: dict[str, float] = field(default_factory=dict)
    needs_clarification: bool = False
    fallback: bool = False
    fallback_reason: str | None = None
    original_intent: Intent | None = None
    method: str = "semantic"
    knowledge_score: float | None = None


@dataclass(frozen=True)
class Passage:
    """One retrieval hit."""

    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TierResolution:
    """Answer produced by the tier router plus its accounting data."""

    answer: str
    tier: Tier
    estimated_cost: float
    cached: bool = False
    model: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    passages: list[Passage] = field(default_factory=list)
    similarity: float | None = None
    cacheable: bool = False


@dataclass
class SessionContext:
    """Derived, replaceable per-conversation context cache.

    The authoritative history lives in the external message log; this record is
    rebuilt from it whenever the fast store misses.
    """

    user_id: str
    conversation_id: str
    recent_turns: deque = field(default_factory=deque)
    summary: str | None = None
    summary_covers_up_to: int = 0
    profile: dict[str, Any] = field(
        default_factory=lambda: {"name": None, "role": None, "interests": []}
    )
    total_messages: int = 0
    cached_at: float = field(default_factory=time.time)
    ttl: int = 3600
    summary_failed: bool = False

    @property
    def session_id(self) -> str:
        return f"conversation:{self.user_id}:{self.conversation_id or 'default'}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "recent_turns": list(self.recent_turns),
            "max_turns": self.recent_turns.maxlen,
            "summary": self.summary,
            "summary_covers_up_to": self.summary_covers_up_to,
            "profile": self.profile,
            "total_messages": self.total_messages,
            "cached_at": self.cached_at,
            "ttl": self.ttl,
            "summary_failed": self.summary_failed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionContext":
        return cls(
            user_id=data["user_id"],
            conversation_id=data.get("conversation_id", "default"),
            recent_turns=deque(data.get("recent_turns", []), maxlen=data.get("max_turns")),
            summary=data.get("summary"),
            summary_covers_up_to=int(data.get("summary_covers_up_to", 0)),
            profile=data.get("profile") or {"name": None, "role": None, "interests": []},
            total_messages=int(data.get("total_messages", 0)),
            cached_at=float(data.get("cached_at", time.time())),
            ttl=int(data.get("ttl", 3600)),
            summary_failed=bool(data.get("summary_failed", False)),
        )


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


@dataclass
class MemoryEntry:
    """Long-term memory fact extracted from a completed turn."""

    user_id: str
    content: str
    type: str = "fact"
    namespace: dict[str, str] = field(default_factory=dict)
    importance_score: float = 0.5
    created_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)
    access_count: int = 0
    source_conversation_id: str | None = None
    embedding_id: str | None = None
    user_flagged: bool = False
    confidence: float = 0.8
    status: MemoryStatus = MemoryStatus.ACTIVE
    archived_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "type": self.type,
            "namespace": dict(self.namespace),
            "importance_score": self.importance_score,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "access_count": self.access_count,
            "source_conversation_id": self.source_conversation_id,
            "embedding_id": self.embedding_id,
            "user_flagged": self.user_flagged,
            "confidence": self.confidence,
            "status": self.status.value,
            "archived_at": self.archived_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEntry":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            content=data["content"],
            type=data.get("type", "fact"),
            namespace=dict(data.get("namespace") or {}),
            importance_score=float(data.get("importance_score", 0.5)),
            created_at=float(data["created_at"]),
            last_accessed_at=float(data.get("last_accessed_at", data["created_at"])),
            access_count=int(data.get("access_count", 0)),
            source_conversation_id=data.get("source_conversation_id"),
            embedding_id=data.get("embedding_id"),
            user_flagged=bool(data.get("user_flagged", False)),
            confidence=float(data.get("confidence", 0.8)),
            status=MemoryStatus(data.get("status", "active")),
            archived_at=data.get("archived_at"),
        )


@dataclass
class QuotaCounter:
    """Usage counter for one (user, resource) pair. `limit=None` is unlimited."""

    user_id: str
    resource: str
    period_start: float
    period_end: float
    used: int = 0
    limit: int | None = None
    overage: int = 0

    @property
    def unlimited(self) -> bool:
        return self.limit is None


@dataclass(frozen=True)
class QuotaDenial:
    """Structured, user-visible quota denial."""

    exceeded_resource: str
    current_usage: int
    limit: int
    suggested_action: str
    message: str
    upgrade_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exceededResource": self.exceeded_resource,
            "currentUsage": self.current_usage,
            "limit": self.limit,
            "suggestedAction": self.suggested_action,
            "upgradeTo": self.upgrade_to,
            "message": self.message,
        }


@dataclass
class TurnResponse:
    """Final result of one processed turn."""

    answer: str
    intent: Intent | None = None
    tier: Tier | None = None
    estimated_cost: float = 0.0
    fallback: bool = False
    needs_clarification: bool = False
    denial: QuotaDenial | None = None
    cancelled: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
