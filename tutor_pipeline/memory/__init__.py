"""Memory subsystem package.

Architectural role:
    Groups the stateful memory components used by the pipeline:
    - `embedding_model`: batched, cached embedding gateway.
    - `fast_store`: shared key-value store (Redis or local bounded map).
    - `conversation_manager`: per-session context building and summarization.
    - `memory_system`: long-term memory ledger with importance decay.
    - `ledger_store`: durable ledger persistence.
"""
