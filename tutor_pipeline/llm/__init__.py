"""LLM access package.

Architectural role:
    Provides provider configuration, transport adapters and the small/large
    model service used by the tier router, the context builder and the engine.

Module split:
    - `provider_config`: environment-driven provider, model and pricing config.
    - `client`: OpenAI-compatible HTTP transport with retry.
    - `service`: small/large provider pair plus cost estimation.
"""
