"""Embedding gateway for the memory, cache and NLP subsystems.

Architectural role:
    Provides one shared, cached, batched entry point for text vectorization. The
    classifier, the semantic cache, the retrieval index and the memory ledger all
    embed through `EmbeddingGateway.embed` / `embed_many`.

Design intent:
    - Keep embedding model initialization centralized and lazy (no model load at
      import time).
    - Apply a conservative VRAM gate before enabling GPU execution.
    - Coalesce concurrent single-text requests arriving within a short window
      into one backend call.
    - Serve repeated texts from a bounded exact-text LRU.

Failure handling:
    Backend calls run in a worker thread under a per-call timeout. Timeouts and
    backend errors are retried with exponential backoff; after the retry budget
    every waiter of the batch receives `EmbeddingUnavailable`.

Determinism:
    Identical input text yields an identical vector for a fixed backend.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Protocol

import faiss
import numpy as np
from cachetools import LRUCache

from tutor_pipeline.core.errors import EmbeddingUnavailable


logger = logging.getLogger(__name__)

EMBED_MODEL = os.getenv("EMBED_MODEL", "BAAI/bge-small-en-v1.5")
EMBED_DIMENSION = int(os.getenv("EMBED_DIMENSION", "384"))


@dataclass(frozen=True)
class EmbeddingConfig:
    """Runtime configuration for `EmbeddingGateway`.

    Relevant environment variables:
        - `EMBED_CACHE_SIZE`
        - `EMBED_BATCH_WINDOW_SECONDS`
        - `EMBED_MAX_BATCH_SIZE`
        - `EMBED_TIMEOUT_SECONDS`
        - `EMBED_RETRY_ATTEMPTS`
        - `EMBED_BACKOFF_SECONDS`
    """

    cache_size: int = int(os.getenv("EMBED_CACHE_SIZE", "4096"))
    batch_window_seconds: float = float(os.getenv("EMBED_BATCH_WINDOW_SECONDS", "0.01"))
    max_batch_size: int = int(os.getenv("EMBED_MAX_BATCH_SIZE", "32"))
    timeout_seconds: float = float(os.getenv("EMBED_TIMEOUT_SECONDS", "10"))
    retry_attempts: int = int(os.getenv("EMBED_RETRY_ATTEMPTS", "2"))
    backoff_seconds: float = float(os.getenv("EMBED_BACKOFF_SECONDS", "0.1"))


class EmbeddingBackend(Protocol):
    """Synchronous text encoder; called from a worker thread."""

    @property
    def dimension(self) -> int: ...

    def encode(self, texts: list[str]) -> np.ndarray: ...


def has_enough_vram(min_required_mb: int = 800) -> bool:
    """Return whether enough free GPU memory is available for embeddings.

    Args:
        min_required_mb: Minimum required free VRAM in megabytes.

    Returns:
        `True` when CUDA is available and free VRAM exceeds the threshold.
    """
    import torch

    if not torch.cuda.is_available():
        return False

    free_mem, _total_mem = torch.cuda.mem_get_info()
    free_mb = free_mem / 1024 / 1024

    logger.info("Free VRAM: %.0f MB", free_mb)

    return free_mb > min_required_mb


class SentenceTransformerBackend:
    """`sentence-transformers` encoder loaded on first use.

    Behavior:
        - Enables CUDA only when `has_enough_vram()` returns `True`.
        - Imports `torch`/`sentence_transformers` lazily.
    """

    def __init__(self, model_name: str = EMBED_MODEL, dimension: int = EMBED_DIMENSION) -> None:
        self.model_name = model_name
        self._dimension = dimension
        self._model = None

    @property
    def dimension(self) -> int:
        return self._dimension

    def load(self):
        if self._model is not None:
            return self._model

        logger.info("Loading embedding model %s", self.model_name)

        try:
            use_gpu = has_enough_vram()
        except (ImportError, RuntimeError):
            use_gpu = False

        from sentence_transformers import SentenceTransformer

        device = "cuda" if use_gpu else "cpu"
        logger.info("Loading embeddings on %s", device.upper())

        self._model = SentenceTransformer(self.model_name, device=device)
        self._dimension = int(self._model.get_sentence_embedding_dimension() or self._dimension)
        return self._model

    def encode(self, texts: list[str]) -> np.ndarray:
        model = self.load()
        vectors = model.encode(
            texts,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vectors, dtype="float32")


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    a = np.asarray(a, dtype="float32").ravel()
    b = np.asarray(b, dtype="float32").ravel()
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    matrix = np.ascontiguousarray(np.atleast_2d(matrix), dtype="float32")
    faiss.normalize_L2(matrix)
    return matrix


def _fail_waiters(batch: dict[str, list[asyncio.Future]], exc: Exception) -> None:
    for futures in batch.values():
        for fut in futures:
            if not fut.done():
                fut.set_exception(exc)


class EmbeddingGateway:
    """Cached, batched, retrying front of an `EmbeddingBackend`."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        backend: EmbeddingBackend | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self.backend = backend or SentenceTransformerBackend()
        self._cache: LRUCache = LRUCache(maxsize=max(1, self.config.cache_size))
        self._pending: dict[str, list[asyncio.Future]] = {}
        self._flush_task: asyncio.Task | None = None
        self._batch_tasks: set[asyncio.Task] = set()
        self.stats = {"hits": 0, "misses": 0, "batches": 0, "failures": 0}

    @property
    def dimension(self) -> int:
        return int(self.backend.dimension)

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start(self) -> None:
        """Warm the backend in a worker thread when it supports loading."""
        load = getattr(self.backend, "load", None)
        if load is not None:
            await asyncio.to_thread(load)

    async def close(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        for task in list(self._batch_tasks):
            task.cancel()
        pending, self._pending = self._pending, {}
        for futures in pending.values():
            for fut in futures:
                if not fut.done():
                    fut.set_exception(EmbeddingUnavailable("embedding gateway closed"))

    # =========================================================
    # PUBLIC API
    # =========================================================

    async def embed(self, text: str) -> np.ndarray:
        """Return the normalized embedding of `text`.

        Raises:
            EmbeddingUnavailable: After the backend retry budget is exhausted.
        """
        cached = self._cache.get(text)
        if cached is not None:
            self.stats["hits"] += 1
            return cached

        self.stats["misses"] += 1
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        self._pending.setdefault(text, []).append(fut)

        if len(self._pending) >= self.config.max_batch_size:
            self._dispatch_pending()
        elif self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_after_window())

        return await fut

    async def embed_many(self, texts: list[str]) -> np.ndarray:
        """Embed a list of texts in one backend call, bypassing the window."""
        if not texts:
            return np.zeros((0, self.dimension), dtype="float32")

        missing = [t for t in dict.fromkeys(texts) if t not in self._cache]
        self.stats["hits"] += len(texts) - len(missing)
        self.stats["misses"] += len(missing)

        if missing:
            vectors = await self._encode_with_retry(missing)
            for text, vector in zip(missing, vectors):
                self._cache[text] = vector

        return np.vstack([self._cache[t] for t in texts])

    # =========================================================
    # BATCHING
    # =========================================================

    async def _flush_after_window(self) -> None:
        try:
            await asyncio.sleep(self.config.batch_window_seconds)
        finally:
            self._flush_task = None
        self._dispatch_pending()

    def _dispatch_pending(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, {}
        if self._flush_task is not None and self._flush_task is not asyncio.current_task():
            self._flush_task.cancel()
            self._flush_task = None
        task = asyncio.create_task(self._run_batch(batch))
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)

    async def _run_batch(self, batch: dict[str, list[asyncio.Future]]) -> None:
        texts = list(batch)
        try:
            vectors = await self._encode_with_retry(texts)
            for text, vector in zip(texts, vectors):
                self._cache[text] = vector
                for fut in batch[text]:
                    if not fut.done():
                        fut.set_result(vector)
        except EmbeddingUnavailable as exc:
            _fail_waiters(batch, exc)
        except Exception as exc:
            logger.exception("Embedding batch failed size=%d", len(texts))
            self.stats["failures"] += 1
            _fail_waiters(batch, EmbeddingUnavailable(f"embedding backend error: {exc!r}"))
        finally:
            # waiters must never outlive their batch, including on cancellation
            _fail_waiters(batch, EmbeddingUnavailable("embedding batch aborted"))

    async def _encode_with_retry(self, texts: list[str]) -> np.ndarray:
        """Encode with per-call timeout and exponential backoff.

        Raises:
            EmbeddingUnavailable: After `retry_attempts` retries.
        """
        attempts = 1 + max(0, self.config.retry_attempts)
        last_error: BaseException | None = None

        for attempt in range(attempts):
            try:
                raw = await asyncio.wait_for(
                    asyncio.to_thread(self.backend.encode, texts),
                    self.config.timeout_seconds,
                )
                self.stats["batches"] += 1
                vectors = _normalize_rows(np.asarray(raw, dtype="float32"))
                if vectors.shape[0] != len(texts):
                    raise ValueError(
                        f"backend returned {vectors.shape[0]} vectors for {len(texts)} texts"
                    )
                return vectors
            except (asyncio.TimeoutError, RuntimeError, ValueError, OSError) as exc:
                last_error = exc
                logger.warning(
                    "Embedding attempt %d/%d failed: %s", attempt + 1, attempts, exc
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self._backoff(attempt))

        self.stats["failures"] += 1
        raise EmbeddingUnavailable(f"embedding backend unavailable: {last_error}")

    def _backoff(self, attempt: int) -> float:
        return self.config.backoff_seconds * (2 ** attempt)
