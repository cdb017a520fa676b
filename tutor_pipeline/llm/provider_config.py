"""Provider/runtime configuration for the LLM layer.

Architectural role:
    Centralizes model/provider selection, credential lookup and per-model pricing
    for `tutor_pipeline.llm.service` and `tutor_pipeline.llm.client`.

Model call flow integration:
    - `service.GenerationService.from_env` consumes `SMALL_*` / `LARGE_*` and
      `MODEL_PRICING`.
    - `client.OpenAICompatibleProvider` consumes the endpoint map and key
      resolution.

Resolution:
    Everything except API keys is read once at import time; keys are read from
    the environment or key files when a provider is built.

Failure behavior:
    Missing key material is represented as `None`; the request is then sent
    without `Authorization` and a provider rejection surfaces as
    `GenerationUnavailable`.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# Small (cheap) and large (capable) model routing controls.
SMALL_PROVIDER = os.getenv("SMALL_PROVIDER", os.getenv("PROVIDER", "local"))
SMALL_MODEL_NAME = os.getenv("SMALL_MODEL_NAME", "qwen2.5:3b")
LARGE_PROVIDER = os.getenv("LARGE_PROVIDER", SMALL_PROVIDER)
LARGE_MODEL_NAME = os.getenv("LARGE_MODEL_NAME", "qwen2.5:14b")

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_RETRY_ATTEMPTS = int(os.getenv("LLM_RETRY_ATTEMPTS", "3"))
LLM_BACKOFF_SECONDS = float(os.getenv("LLM_BACKOFF_SECONDS", "0.5"))

# OpenAI-compatible endpoint map: provider -> (chat completions URL, key file).
KEY_DIR = os.getenv("LLM_KEY_DIR", "config")

PROVIDERS = {
    name: {"url": url, "key_file": os.path.join(KEY_DIR, f"{name}.key") if name != "local" else None}
    for name, url in (
        ("local", os.getenv("LOCAL_LLM_URL", "http://127.0.0.1:8080/v1/chat/completions")),
        ("openai", "https://api.openai.com/v1/chat/completions"),
        ("groq", "https://api.groq.com/openai/v1/chat/completions"),
        ("openrouter", "https://openrouter.ai/api/v1/chat/completions"),
        ("mistral", "https://api.mistral.ai/v1/chat/completions"),
    )
}


# USD per 1k tokens as (prompt, completion). Unknown models fall back to
# `DEFAULT_PRICING`.
MODEL_PRICING = {
    SMALL_MODEL_NAME: (
        float(os.getenv("SMALL_PROMPT_PRICE_PER_1K", "0.00015")),
        float(os.getenv("SMALL_COMPLETION_PRICE_PER_1K", "0.0006")),
    ),
    LARGE_MODEL_NAME: (
        float(os.getenv("LARGE_PROMPT_PRICE_PER_1K", "0.0025")),
        float(os.getenv("LARGE_COMPLETION_PRICE_PER_1K", "0.01")),
    ),
}
DEFAULT_PRICING = (0.001, 0.002)

# Flat cost of answering from each cache tier (semantic includes the embedding).
EXACT_LOOKUP_COST = float(os.getenv("EXACT_LOOKUP_COST", "0.0001"))
SEMANTIC_LOOKUP_COST = float(os.getenv("SEMANTIC_LOOKUP_COST", "0.001"))


# Shared system instruction prepended by `prompting.prompt_builder`.
SYSTEM_MESSAGE = (
    "You are a course tutor on a learning platform.\n"
    "Answer clearly, precisely and without repetition.\n"
    "Do not claim to be a specific commercial model.\n"
)


def load_key(path):
    """Resolve a provider API key.

    `<STEM>_API_KEY` in the environment wins (`config/groq.key` -> `GROQ_API_KEY`);
    otherwise the stripped file contents are used. Returns `None` for a missing
    path or file.
    """
    if not path:
        return None
    stem = os.path.splitext(os.path.basename(path))[0]
    from_env = os.getenv(f"{stem.upper()}_API_KEY")
    if from_env:
        return from_env
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read().strip() or None
    except FileNotFoundError:
        return None
