"""Core orchestration package.

Architectural role:
    Exposes the turn-orchestration layer that sits between API/CLI entrypoints
    and lower-level subsystems (classification, tier routing, context building,
    memory, quota and LLM adapters).

Composition:
    - `engine`: `TurnPipeline`, the per-turn control flow.
    - `routing_types`: shared enums and records exchanged between subsystems.
    - `errors`: exception hierarchy.
    - `jobs`: scheduled background jobs (memory sweep, consolidation, quota
      rollover).

Determinism and side effects:
    Package import itself is deterministic and side-effect free.
"""
