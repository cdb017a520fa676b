"""Cost-optimized tutoring response pipeline.

Sub-packages are split by concern: `core` (orchestration, shared types, jobs),
`memory`, `nlp`, `retrieval`, `cache`, `quota`, `llm`, `prompting` and `api`.
"""

__version__ = "0.1.0"
