"""Small/large model service and cost estimation.

Architectural role:
    Holds the two generation providers used by the pipeline (a low-cost model for
    chat, summarization and simple grounded answers; a capable model for complex
    or escalated answers) and prices their token usage.

Determinism:
    Cost estimation is deterministic for fixed token counts and pricing.
    Generated output remains non-deterministic because inference runs remotely.
"""

from __future__ import annotations

import logging

from tutor_pipeline.llm.client import Completion, GenerationProvider, OpenAICompatibleProvider
from tutor_pipeline.llm.provider_config import (
    DEFAULT_PRICING,
    LARGE_MODEL_NAME,
    LARGE_PROVIDER,
    MODEL_PRICING,
    SMALL_MODEL_NAME,
    SMALL_PROVIDER,
)


logger = logging.getLogger(__name__)


class GenerationService:
    """Pair of providers plus per-model pricing (USD per 1k tokens)."""

    def __init__(
        self,
        small: GenerationProvider,
        large: GenerationProvider,
        pricing: dict[str, tuple[float, float]] | None = None,
    ) -> None:
        self.small = small
        self.large = large
        self.pricing = dict(MODEL_PRICING if pricing is None else pricing)
        self._unpriced: set[str] = set()

    @classmethod
    def from_env(cls) -> "GenerationService":
        return cls(
            OpenAICompatibleProvider.for_provider(SMALL_PROVIDER, SMALL_MODEL_NAME),
            OpenAICompatibleProvider.for_provider(LARGE_PROVIDER, LARGE_MODEL_NAME),
        )

    async def start(self) -> None:
        for provider in (self.small, self.large):
            start = getattr(provider, "start", None)
            if start is not None:
                await start()

    async def close(self) -> None:
        for provider in (self.small, self.large):
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

    def estimate_cost(self, completion: Completion) -> float:
        """Price a completion from its token counts."""
        prices = self.pricing.get(completion.model)
        if prices is None:
            if completion.model not in self._unpriced:
                self._unpriced.add(completion.model)
                logger.warning("No pricing for model=%s, using default rates", completion.model)
            prices = DEFAULT_PRICING
        prompt_price, completion_price = prices
        return (
            completion.prompt_tokens / 1000.0 * prompt_price
            + completion.completion_tokens / 1000.0 * completion_price
        )
