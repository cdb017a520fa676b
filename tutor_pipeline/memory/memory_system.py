"""Long-term memory ledger with importance decay, recall and archival.

Architectural role:
    Owns the `MemoryEntry` lifecycle for each learner:
    - `ingest`: extract facts from completed turns, merge near-duplicates,
      create the rest (runs as a background task after each turn).
    - `consolidate`: batched job over turns older than 24 hours.
    - `recall` / `profile_facts`: feed personalization into the context builder.
    - `sweep`: daily, restartable archival of decayed entries.
    - `flag` / `restore` / `health_metrics`: user and operator controls.

Importance model:
    recency   = exp(-ln2 * age / half_life), age measured from last access
    frequency = 1 - exp(-access_count / saturation)
    score     = w_r * recency + w_f * frequency + w_c * confidence, clipped to [0, 1]
    User-flagged entries score 1.0 and are never archived.
    At fixed recency the score is non-decreasing in `access_count`.

Archival:
    Entries are archived (never deleted) when importance < `archive_floor` and
    age since creation > `retention_days`. Sweeps evaluate at the explicit cutoff
    timestamp, so re-running with the same cutoff changes nothing.

Deduplication:
    Embedding cosine >= `dedupe_similarity` when the gateway is available,
    otherwise token Jaccard >= `dedupe_overlap`. A duplicate increments the
    existing entry's `access_count` instead of creating a new entry.
"""

from __future__ import annotations

import logging
import math
import os
import re
import time
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
from cachetools import LRUCache

from tutor_pipeline.core.errors import EmbeddingUnavailable
from tutor_pipeline.core.routing_types import MemoryEntry, MemoryStatus
from tutor_pipeline.memory.conversation_manager import NAME_PATTERN
from tutor_pipeline.memory.embedding_model import EmbeddingGateway
from tutor_pipeline.memory.ledger_store import LedgerStore


logger = logging.getLogger(__name__)

DAY_SECONDS = 86400.0


@dataclass(frozen=True)
class LedgerConfig:
    """Relevant environment variables:
        - `MEMORY_HALF_LIFE_DAYS`
        - `MEMORY_ARCHIVE_FLOOR`
        - `MEMORY_RETENTION_DAYS`
        - `MEMORY_DEDUPE_SIMILARITY`
        - `MEMORY_VECTOR_CACHE_SIZE`
    """

    half_life_days: float = float(os.getenv("MEMORY_HALF_LIFE_DAYS", "14"))
    frequency_saturation: float = 5.0
    weight_recency: float = 0.4
    weight_frequency: float = 0.3
    weight_confidence: float = 0.3
    archive_floor: float = float(os.getenv("MEMORY_ARCHIVE_FLOOR", "0.2"))
    retention_days: float = float(os.getenv("MEMORY_RETENTION_DAYS", "90"))
    dedupe_similarity: float = float(os.getenv("MEMORY_DEDUPE_SIMILARITY", "0.9"))
    dedupe_overlap: float = 0.8
    consolidation_age_hours: float = 24.0
    consolidation_batch_size: int = 50
    recall_weight_similarity: float = 0.7
    recall_weight_importance: float = 0.3
    vector_cache_size: int = int(os.getenv("MEMORY_VECTOR_CACHE_SIZE", "4096"))


# =========================================================
# EXTRACTION
# =========================================================

@dataclass(frozen=True)
class ExtractedFact:
    type: str
    content: str
    namespace: dict
    confidence: float


# (type, pattern, content template, namespace, confidence)
EXTRACTION_RULES = (
    (
        "fact",
        NAME_PATTERN,
        "Name is {}",
        {"category": "personal", "topic": "identity"},
        0.9,
    ),
    (
        "fact",
        re.compile(
            r"(?:i work as|i'm a|i am a)\s+(?:an?\s+)?([a-z\s]*(?:developer|engineer|designer|manager|student|teacher))",
            re.IGNORECASE,
        ),
        "Works as {}",
        {"category": "work", "topic": "occupation"},
        0.85,
    ),
    (
        "preference",
        re.compile(r"i (?:love|like|enjoy|prefer)\s+([^,.!?]+)", re.IGNORECASE),
        "Likes {}",
        {"category": "personal", "topic": "preferences"},
        0.75,
    ),
    (
        "goal",
        re.compile(
            r"i (?:want|need|would like) to (?:learn|understand|know about)\s+([^,.!?]+)",
            re.IGNORECASE,
        ),
        "Wants to learn {}",
        {"category": "education", "topic": "learning_goals"},
        0.8,
    ),
    (
        "experience",
        re.compile(r"i(?:'m| am) (?:learning|studying|working on)\s+([^,.!?]+)", re.IGNORECASE),
        "Is currently learning {}",
        {"category": "education", "topic": "current_learning"},
        0.8,
    ),
)


def extract_facts(turns: Iterable[Mapping]) -> list[ExtractedFact]:
    """Apply the extraction rules to user messages, in order."""
    facts: list[ExtractedFact] = []
    seen: set[tuple[str, str]] = set()
    for turn in turns:
        if turn.get("role") != "user":
            continue
        content = str(turn.get("content", ""))
        for fact_type, pattern, template, namespace, confidence in EXTRACTION_RULES:
            match = pattern.search(content)
            if not match:
                continue
            value = match.group(1).strip()
            if not value:
                continue
            text = template.format(value)
            if (fact_type, text.lower()) in seen:
                continue
            seen.add((fact_type, text.lower()))
            facts.append(ExtractedFact(fact_type, text, dict(namespace), confidence))
    return facts


# =========================================================
# SCORING
# =========================================================

def importance(entry: MemoryEntry, now: float, config: LedgerConfig | None = None) -> float:
    """Decayed importance of `entry` evaluated at `now`."""
    config = config or LedgerConfig()
    if entry.user_flagged:
        return 1.0

    age_days = max(0.0, now - entry.last_accessed_at) / DAY_SECONDS
    recency = math.exp(-math.log(2) * age_days / config.half_life_days)
    frequency = 1.0 - math.exp(-entry.access_count / config.frequency_saturation)
    score = (
        config.weight_recency * recency
        + config.weight_frequency * frequency
        + config.weight_confidence * entry.confidence
    )
    return min(1.0, max(0.0, score))


def _tokens(text: str) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", text.lower()))


def jaccard(a: str, b: str) -> float:
    ta, tb = _tokens(a), _tokens(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


@dataclass
class SweepReport:
    cutoff: float
    examined: int = 0
    rescored: int = 0
    archived: int = 0


# =========================================================
# LEDGER
# =========================================================

class MemoryLedger:
    def __init__(
        self,
        store: LedgerStore,
        gateway: EmbeddingGateway | None = None,
        config: LedgerConfig | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.config = config or LedgerConfig()
        self._vectors: LRUCache = LRUCache(maxsize=max(1, self.config.vector_cache_size))

    def importance(self, entry: MemoryEntry, now: float | None = None) -> float:
        return importance(entry, time.time() if now is None else now, self.config)

    async def _vector(self, entry: MemoryEntry) -> np.ndarray:
        key = entry.embedding_id or entry.id
        vector = self._vectors.get(key)
        if vector is None:
            vector = await self.gateway.embed(entry.content)
            self._vectors[key] = vector
        return vector

    async def _similarities(self, text: str, entries: list[MemoryEntry]) -> tuple[list[float], float]:
        """Similarity to each entry plus the duplicate threshold that applies.

        Cosine similarity with `dedupe_similarity`, or token Jaccard with
        `dedupe_overlap` when embeddings are unavailable.
        """
        if self.gateway is not None and entries:
            try:
                query = await self.gateway.embed(text)
                sims = []
                for entry in entries:
                    sims.append(float(np.dot(query, await self._vector(entry))))
                return sims, self.config.dedupe_similarity
            except EmbeddingUnavailable as exc:
                logger.warning("Ledger embedding unavailable, using token overlap: %s", exc)
        return [jaccard(text, e.content) for e in entries], self.config.dedupe_overlap

    # =========================================================
    # INGEST / CONSOLIDATE
    # =========================================================

    async def ingest(
        self,
        user_id: str,
        conversation_id: str | None,
        turns: Iterable[Mapping],
        now: float | None = None,
    ) -> list[MemoryEntry]:
        """Extract facts from `turns` and merge them into the user's ledger.

        Returns:
            Entries created or merged, in extraction order.
        """
        now = time.time() if now is None else now
        facts = extract_facts(turns)
        if not facts:
            return []

        active = await self.store.list_by_user(user_id, status=MemoryStatus.ACTIVE)
        touched: list[MemoryEntry] = []

        for fact in facts:
            same_type = [e for e in active if e.type == fact.type]
            duplicate = None
            if same_type:
                sims, threshold = await self._similarities(fact.content, same_type)
                best = max(range(len(sims)), key=sims.__getitem__)
                if sims[best] >= threshold:
                    duplicate = same_type[best]

            if duplicate is not None:
                duplicate.access_count += 1
                duplicate.last_accessed_at = now
                duplicate.importance_score = self.importance(duplicate, now)
                await self.store.update(duplicate)
                touched.append(duplicate)
                continue

            entry = MemoryEntry(
                user_id=user_id,
                content=fact.content,
                type=fact.type,
                namespace=fact.namespace,
                created_at=now,
                last_accessed_at=now,
                source_conversation_id=conversation_id,
                confidence=fact.confidence,
            )
            entry.embedding_id = entry.id
            entry.importance_score = self.importance(entry, now)
            await self.store.add(entry)
            active.append(entry)
            touched.append(entry)

        logger.info("Ledger ingest user=%s facts=%d touched=%d", user_id, len(facts), len(touched))
        return touched

    async def consolidate(self, conversations: Mapping[str, list[dict]], cutoff: float) -> int:
        """Ingest turns older than the consolidation age before `cutoff`.

        Args:
            conversations: conversation id -> messages carrying `user_id`,
                `role`, `content` and `created_at`. Messages flagged `ingested`
                already reached the ledger per turn and are skipped.
            cutoff: Evaluation timestamp.

        Returns:
            Number of messages consolidated in this run. A per-conversation marker
            records the newest consolidated timestamp, so re-runs are no-ops.
        """
        horizon = cutoff - self.config.consolidation_age_hours * 3600.0
        processed = 0

        for conversation_id, messages in conversations.items():
            marker_name = f"consolidated:{conversation_id}"
            marker = await self.store.get_marker(marker_name)
            done_until = float(marker) if marker is not None else float("-inf")

            eligible = [
                m for m in messages
                if m.get("user_id") and not m.get("ingested")
                and done_until < float(m.get("created_at", 0.0)) <= horizon
            ]
            if not eligible:
                continue

            batch_size = max(1, self.config.consolidation_batch_size)
            for start in range(0, len(eligible), batch_size):
                batch = eligible[start:start + batch_size]
                by_user: dict[str, list[dict]] = {}
                for message in batch:
                    by_user.setdefault(message["user_id"], []).append(message)
                for user_id, turns in by_user.items():
                    await self.ingest(user_id, conversation_id, turns, now=cutoff)
                newest = max(float(m.get("created_at", 0.0)) for m in batch)
                await self.store.set_marker(marker_name, repr(newest))
                processed += len(batch)

        logger.info("Consolidation cutoff=%.0f messages=%d", cutoff, processed)
        return processed

    # =========================================================
    # READ PATHS
    # =========================================================

    async def recall(
        self,
        user_id: str,
        query: str,
        top_k: int = 5,
        now: float | None = None,
    ) -> list[tuple[MemoryEntry, float]]:
        """Rank active entries by similarity and importance; mark them accessed."""
        now = time.time() if now is None else now
        active = await self.store.list_by_user(user_id, status=MemoryStatus.ACTIVE)
        if not active or top_k <= 0:
            return []

        sims, _threshold = await self._similarities(query, active)
        ranked = sorted(
            (
                (
                    entry,
                    self.config.recall_weight_similarity * max(0.0, sim)
                    + self.config.recall_weight_importance * self.importance(entry, now),
                )
                for entry, sim in zip(active, sims)
            ),
            key=lambda pair: pair[1],
            reverse=True,
        )[:top_k]

        for entry, _score in ranked:
            entry.access_count += 1
            entry.last_accessed_at = now
            entry.importance_score = self.importance(entry, now)
            await self.store.update(entry)

        return ranked

    async def profile_facts(self, user_id: str, now: float | None = None) -> list[MemoryEntry]:
        """Active entries only, ranked by importance recomputed at `now`."""
        now = time.time() if now is None else now
        active = await self.store.list_by_user(user_id, status=MemoryStatus.ACTIVE)
        return sorted(active, key=lambda e: self.importance(e, now), reverse=True)

    # =========================================================
    # CONTROLS
    # =========================================================

    async def flag(self, entry_id: str, flagged: bool = True) -> MemoryEntry:
        entry = await self.store.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        entry.user_flagged = flagged
        entry.importance_score = self.importance(entry)
        await self.store.update(entry)
        return entry

    async def sweep(self, cutoff: float) -> SweepReport:
        """Rescore stale entries at `cutoff` and archive decayed ones."""
        report = SweepReport(cutoff=cutoff)
        recent_horizon = cutoff - DAY_SECONDS
        retention = self.config.retention_days * DAY_SECONDS

        for entry in await self.store.all_active():
            report.examined += 1
            if entry.last_accessed_at >= recent_horizon:
                continue

            score = importance(entry, cutoff, self.config)
            changed = not math.isclose(score, entry.importance_score, abs_tol=1e-12)
            entry.importance_score = score
            if changed:
                report.rescored += 1

            if (
                not entry.user_flagged
                and score < self.config.archive_floor
                and cutoff - entry.created_at > retention
            ):
                entry.status = MemoryStatus.ARCHIVED
                entry.archived_at = cutoff
                report.archived += 1
                changed = True

            if changed:
                await self.store.update(entry)

        logger.info(
            "Memory sweep cutoff=%.0f examined=%d rescored=%d archived=%d",
            cutoff, report.examined, report.rescored, report.archived,
        )
        return report

    async def restore(self, entry_id: str, now: float | None = None) -> MemoryEntry:
        now = time.time() if now is None else now
        entry = await self.store.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        entry.status = MemoryStatus.ACTIVE
        entry.archived_at = None
        entry.last_accessed_at = now
        entry.importance_score = self.importance(entry, now)
        await self.store.update(entry)
        return entry

    async def health_metrics(self, user_id: str, now: float | None = None) -> dict:
        now = time.time() if now is None else now
        entries = await self.store.list_by_user(user_id)
        active = [e for e in entries if e.status == MemoryStatus.ACTIVE]
        total = len(entries)
        return {
            "total": total,
            "active": len(active),
            "archived": total - len(active),
            "flagged": sum(1 for e in entries if e.user_flagged),
            "type_distribution": dict(Counter(e.type for e in entries)),
            "average_importance": (sum(self.importance(e, now) for e in active) / len(active)) if active else 0.0,
            "average_confidence": (sum(e.confidence for e in entries) / total) if total else 0.0,
        }
