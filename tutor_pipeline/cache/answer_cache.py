"""Exact and semantic answer caches on top of the fast store.

Architectural role:
    Serves tiers 1 and 2 of `CacheTierRouter` and receives write-backs from the
    retrieval-generation tiers.

Key layout:
    - `anscache:exact:{scope}:{sha256}`: one JSON `CacheEntry` per normalized
      question.
    - `anscache:sem:{scope}:{sha256}`: the same entry with its question
      embedding, for semantic lookup.
    - `anscache:semidx:{scope}`: set of semantic entry hashes in the scope.

Write semantics:
    Keyed by content hash, so repeated writes of the same question overwrite
    each other (last write wins). Writes are idempotent for identical payloads.

Failure handling:
    A stored record whose tier is not a member of `Tier`, or which cannot be
    parsed, is reported as `CacheInconsistency` in the log and treated as a miss.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import time
from dataclasses import dataclass

import faiss
import numpy as np
from cachetools import TTLCache

from tutor_pipeline.core.errors import CacheInconsistency
from tutor_pipeline.core.routing_types import CacheEntry, Tier
from tutor_pipeline.memory.fast_store import FastStore


logger = logging.getLogger(__name__)

_TRAILING_PUNCT = re.compile(r"[\s?!.,;:]+$")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lower-case, collapse whitespace, strip trailing punctuation."""
    text = _WHITESPACE.sub(" ", (text or "").strip().lower())
    return _TRAILING_PUNCT.sub("", text)


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AnswerCacheConfig:
    """Relevant environment variables:
        - `ANSWER_CACHE_TTL_SECONDS`
        - `SEMANTIC_CACHE_THRESHOLD`
        - `SEMANTIC_CACHE_MAX_SCOPE_ENTRIES`
        - `SEMANTIC_INDEX_TTL_SECONDS`
    """

    ttl_seconds: int = int(os.getenv("ANSWER_CACHE_TTL_SECONDS", str(7 * 24 * 3600)))
    semantic_threshold: float = float(os.getenv("SEMANTIC_CACHE_THRESHOLD", "0.95"))
    max_scope_entries: int = int(os.getenv("SEMANTIC_CACHE_MAX_SCOPE_ENTRIES", "500"))
    index_ttl_seconds: float = float(os.getenv("SEMANTIC_INDEX_TTL_SECONDS", "5"))


class AnswerCache:
    def __init__(self, store: FastStore, config: AnswerCacheConfig | None = None) -> None:
        self.store = store
        self.config = config or AnswerCacheConfig()
        # scope -> (digests, entries, index); rebuilt when the digest set changes
        self._indexes: TTLCache = TTLCache(maxsize=256, ttl=max(0.001, self.config.index_ttl_seconds))

    @staticmethod
    def exact_key(scope: str, text: str) -> str:
        return f"anscache:exact:{scope}:{content_hash(text)}"

    @staticmethod
    def semantic_key(scope: str, digest: str) -> str:
        return f"anscache:sem:{scope}:{digest}"

    @staticmethod
    def index_key(scope: str) -> str:
        return f"anscache:semidx:{scope}"

    # =========================================================
    # READ PATH
    # =========================================================

    async def _load(self, key: str) -> CacheEntry | None:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            entry = self._decode(key, raw)
        except CacheInconsistency as exc:
            logger.warning("Cache inconsistency treated as miss: %s", exc)
            return None
        if entry.is_expired():
            return None
        return entry

    @staticmethod
    def _decode(key: str, raw: str) -> CacheEntry:
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise CacheInconsistency(f"unreadable cache record key={key}: {exc}") from exc

    async def get_exact(self, scope: str, text: str) -> CacheEntry | None:
        return await self._load(self.exact_key(scope, text))

    async def find_semantic(
        self,
        scope: str,
        embedding: np.ndarray,
    ) -> tuple[CacheEntry, float] | None:
        """Nearest cached question in `scope` at or above the threshold.

        Returns:
            `(entry, similarity)` or `None`. Among equally similar neighbours the
            most recently created entry wins.
        """
        digests = tuple(sorted(await self.store.set_members(self.index_key(scope))))
        if not digests:
            self._indexes.pop(scope, None)
            return None

        cached = self._indexes.get(scope)
        if cached is not None and cached[0] == digests:
            _digests, entries, index = cached
        else:
            built = await self._build_index(scope, digests)
            if built is None:
                return None
            entries, index = built

        if index.d != np.asarray(embedding).size:
            logger.warning("Semantic cache dimension mismatch scope=%s", scope)
            return None

        query = np.ascontiguousarray(np.atleast_2d(embedding), dtype="float32")
        faiss.normalize_L2(query)
        scores, ids = index.search(query, len(entries))

        best_score = float(scores[0][0])
        if best_score < self.config.semantic_threshold:
            return None

        tied = [
            entries[int(i)]
            for s, i in zip(scores[0], ids[0])
            if i >= 0 and abs(float(s) - best_score) <= 1e-6
        ]
        winner = max(tied, key=lambda e: e.created_at)
        if winner.is_expired():
            self._indexes.pop(scope, None)
            return None
        return winner, best_score

    async def _build_index(self, scope: str, digests: tuple[str, ...]):
        entries: list[CacheEntry] = []
        for digest in digests:
            entry = await self._load(self.semantic_key(scope, digest))
            if entry is None or entry.embedding is None:
                await self.store.remove_from_set(self.index_key(scope), digest)
                continue
            entries.append(entry)

        if not entries:
            self._indexes.pop(scope, None)
            return None

        matrix = np.ascontiguousarray(np.vstack([e.embedding for e in entries]), dtype="float32")
        faiss.normalize_L2(matrix)
        index = faiss.IndexFlatIP(matrix.shape[1])
        index.add(matrix)

        # Key on the digests that survived, so a pruned set matches next time.
        live = tuple(sorted(e.key.rsplit(":", 1)[-1] for e in entries))
        self._indexes[scope] = (live, entries, index)
        return entries, index

    async def record_hit(self, entry: CacheEntry, key: str) -> None:
        """Increment `hit_count` best-effort, keeping the remaining TTL."""
        entry.hit_count += 1
        ttl = None
        if entry.expires_at is not None:
            ttl = max(1, int(entry.expires_at - time.time()))
        try:
            await self.store.set(key, json.dumps(entry.to_dict()), ttl=ttl)
        except Exception:
            logger.exception("Failed to record cache hit key=%s", key)

    # =========================================================
    # WRITE PATH
    # =========================================================

    async def put(
        self,
        scope: str,
        question: str,
        answer: str,
        tier: Tier,
        embedding: np.ndarray | None,
        confidence: float = 1.0,
    ) -> None:
        """Write an answer into the exact cache and, with an embedding, the semantic cache."""
        now = time.time()
        digest = content_hash(question)
        ttl = self.config.ttl_seconds
        exact = CacheEntry(
            key=self.exact_key(scope, question),
            answer=answer,
            tier=tier,
            scope=scope,
            question=question,
            created_at=now,
            expires_at=now + ttl,
            confidence=confidence,
        )
        await self.store.set(exact.key, json.dumps(exact.to_dict()), ttl=ttl)

        if embedding is None:
            return

        semantic = CacheEntry(
            key=self.semantic_key(scope, digest),
            answer=answer,
            tier=tier,
            scope=scope,
            question=question,
            embedding=np.asarray(embedding, dtype="float32"),
            created_at=now,
            expires_at=now + ttl,
            confidence=confidence,
        )
        await self.store.set(semantic.key, json.dumps(semantic.to_dict()), ttl=ttl)
        await self.store.add_to_set(self.index_key(scope), digest, ttl=ttl)
        self._indexes.pop(scope, None)
        await self._trim_scope(scope)

    async def _trim_scope(self, scope: str) -> None:
        digests = await self.store.set_members(self.index_key(scope))
        overflow = len(digests) - self.config.max_scope_entries
        if overflow <= 0:
            return

        aged = []
        for digest in digests:
            entry = await self._load(self.semantic_key(scope, digest))
            aged.append((entry.created_at if entry else 0.0, digest))
        aged.sort()
        for _created, digest in aged[:overflow]:
            await self.store.remove_from_set(self.index_key(scope), digest)
            await self.store.delete(self.semantic_key(scope, digest))
