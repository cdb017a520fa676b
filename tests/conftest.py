"""Shared fakes for the tutor pipeline tests.

- `VocabBackend`: deterministic bag-of-words embedding backend. Every new word
  gets its own dimension, so cosine similarity equals normalized word overlap.
- `ScriptedProvider`: generation provider returning queued replies (or raising)
  and counting calls.
- `FailingRetrieval`: retrieval index that is always unavailable.
- `BrokenRedis`: Redis client whose every call fails like an unreachable server.
"""

import re

import numpy as np
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tutor_pipeline.cache.answer_cache import AnswerCache
from tutor_pipeline.cache.tier_router import CacheTierRouter
from tutor_pipeline.core.engine import TurnPipeline
from tutor_pipeline.core.errors import GenerationUnavailable, RetrievalUnavailable
from tutor_pipeline.core.routing_types import Intent
from tutor_pipeline.llm.client import Completion
from tutor_pipeline.llm.service import GenerationService
from tutor_pipeline.memory.conversation_manager import ConversationContextBuilder, InMemoryMessageLog
from tutor_pipeline.memory.embedding_model import EmbeddingConfig, EmbeddingGateway
from tutor_pipeline.memory.fast_store import FastStore, FastStoreConfig
from tutor_pipeline.memory.ledger_store import InMemoryLedgerStore
from tutor_pipeline.memory.memory_system import MemoryLedger
from tutor_pipeline.nlp.intent_router import SemanticIntentClassifier
from tutor_pipeline.quota.enforcer import QuotaEnforcer
from tutor_pipeline.retrieval.retriever import FaissRetrievalIndex


_WORD = re.compile(r"[a-z0-9]+")

TEST_EXEMPLARS = {
    Intent.RAG: ["explain async await", "what is recursion"],
    Intent.CONVERSATIONAL: ["hello how are you"],
    Intent.SESSION_MEMORY: ["repeat your previous answer"],
    Intent.PLATFORM_ACTION: ["enroll me in the course"],
}


class VocabBackend:
    def __init__(self, dimension: int = 512) -> None:
        self._dimension = dimension
        self.vocab: dict[str, int] = {}
        self.calls = 0
        self.fail = False

    @property
    def dimension(self) -> int:
        return self._dimension

    def encode(self, texts):
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding backend down")
        out = np.zeros((len(texts), self._dimension), dtype="float32")
        for row, text in enumerate(texts):
            for word in _WORD.findall(text.lower()):
                slot = self.vocab.setdefault(word, len(self.vocab) % self._dimension)
                out[row, slot] += 1.0
        return out


class ScriptedProvider:
    def __init__(self, model: str, replies=None, default: str | None = None) -> None:
        self.model = model
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[tuple[str, str]] = []

    async def complete(self, context, query, *, max_tokens=512):
        self.calls.append((context, query))
        reply = self.replies.pop(0) if self.replies else self.default
        if reply is None or isinstance(reply, Exception):
            raise reply or GenerationUnavailable(f"{self.model} down")
        return Completion(text=reply, prompt_tokens=100, completion_tokens=50, model=self.model)


class FailingRetrieval:
    async def search(self, embedding, scope, top_k):
        raise RetrievalUnavailable("index offline")


class BrokenRedis:
    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    get = set = delete = expire = sadd = smembers = srem = hgetall = hset = ping = _fail

    def register_script(self, _source):
        return self._fail


PRICING = {"small": (0.001, 0.002), "large": (0.01, 0.03)}


@pytest.fixture
def backend():
    return VocabBackend()


@pytest.fixture
def gateway(backend):
    return EmbeddingGateway(
        EmbeddingConfig(batch_window_seconds=0.001, retry_attempts=1, backoff_seconds=0.0),
        backend,
    )


@pytest.fixture
async def store():
    store = FastStore(FastStoreConfig(redis_url=""))
    await store.start()
    yield store
    await store.close()


@pytest.fixture
def retrieval(backend):
    return FaissRetrievalIndex(backend.dimension)


@pytest.fixture
def small():
    return ScriptedProvider("small", default="Happy to help with that topic today.")


@pytest.fixture
def large():
    return ScriptedProvider("large", default="Async await suspends coroutines while waiting for results.")


@pytest.fixture
def generation(small, large):
    return GenerationService(small, large, pricing=PRICING)


@pytest.fixture
async def classifier(gateway, retrieval):
    classifier = SemanticIntentClassifier(gateway, retrieval, exemplars=TEST_EXEMPLARS)
    await classifier.start()
    return classifier


@pytest.fixture
def ledger(gateway):
    return MemoryLedger(InMemoryLedgerStore(), gateway)


@pytest.fixture
async def pipeline(store, gateway, classifier, retrieval, generation, ledger):
    message_log = InMemoryMessageLog()
    context_builder = ConversationContextBuilder(
        store, generation.small, message_log=message_log, ledger=ledger
    )
    pipeline = TurnPipeline(
        store=store,
        gateway=gateway,
        classifier=classifier,
        router=CacheTierRouter(AnswerCache(store), generation, retrieval),
        context_builder=context_builder,
        ledger=ledger,
        quota=QuotaEnforcer(store),
        generation=generation,
        message_log=message_log,
    )
    yield pipeline
    await pipeline.drain()


@pytest.fixture
def seed_passages(retrieval, gateway):
    async def seed(scope, texts):
        vectors = await gateway.embed_many(texts)
        return retrieval.add_passages(scope, texts, vectors)

    return seed
