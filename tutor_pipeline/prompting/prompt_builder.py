"""Prompt assembly helpers used by the turn pipeline.

This module is intentionally narrow: it only builds prompt strings and message
lists from already routed inputs. Route selection, retrieval, token budgeting
and model invocation happen outside this module.

Design constraints:
    - Deterministic construction for identical inputs.
    - Fixed ordering of prompt components per route.
    - No hidden side effects (no I/O, no global state mutation).

Prompt safety model:
    - Safety is instruction-led, not parser-enforced.
    - Passages and session context are interpolated as raw strings; upstream
      layers bound their size.
"""

from __future__ import annotations

from typing import Iterable

from tutor_pipeline.core.routing_types import Passage
from tutor_pipeline.llm.provider_config import SYSTEM_MESSAGE


# =========================================================
# MESSAGE ENVELOPE
# =========================================================
# Ordering guarantee: `SYSTEM_MESSAGE` first, then route-specific context, all in
# the system role; the user query is always the final user message.

def build_messages(context: str, query: str) -> list[dict[str, str]]:
    """Wrap route context and the user query into a chat message list."""
    system = SYSTEM_MESSAGE
    if context and context.strip():
        system = f"{SYSTEM_MESSAGE}\n{context.strip()}\n"
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": query.strip()},
    ]


# =========================================================
# GROUNDED ANSWER (RAG TIERS)
# =========================================================
# Passages are numbered in retrieval order. When no passages are available the
# model is told to answer from general knowledge instead; the user is never
# told that course material is missing.

def build_rag_context(passages: Iterable[Passage], session_context: str = "") -> str:
    """Build the system context for a grounded answer.

    Args:
        passages: Retrieved passages, best first.
        session_context: Rendered conversation context (may be empty).

    Returns:
        Context string for `GenerationProvider.complete`.
    """
    parts = []
    if session_context:
        parts.append(f"Conversation context:\n{session_context}")

    numbered = [
        f"[{i}] {p.content.strip()}"
        for i, p in enumerate(passages, start=1)
        if p.content and p.content.strip()
    ]
    if numbered:
        parts.append(
            "Answer the learner's question using the course material below. "
            "Prefer the material over general knowledge.\n\n"
            "Course material:\n" + "\n\n".join(numbered)
        )
    else:
        parts.append("Answer the learner's question from general knowledge.")

    return "\n\n".join(parts)


# =========================================================
# CONVERSATIONAL / SESSION-MEMORY
# =========================================================

def build_chat_context(session_context: str, facts: Iterable[str] = ()) -> str:
    """Build the system context for plain chat and session-memory turns."""
    parts = []
    cleaned = [f.strip() for f in facts if f and f.strip()]
    if cleaned:
        parts.append("Known about the learner:\n" + "\n".join(f"- {f}" for f in cleaned))
    if session_context:
        parts.append(f"Conversation so far:\n{session_context}")
    parts.append(
        "Continue the conversation naturally. When the learner refers to something "
        "said earlier, use the conversation above."
    )
    return "\n\n".join(parts)


# =========================================================
# SUMMARIZATION
# =========================================================

SUMMARY_INSTRUCTION = (
    "Summarize the earlier part of this tutoring conversation in at most five "
    "sentences. Keep names, goals, topics covered and open questions."
)


def render_transcript(messages: Iterable[dict]) -> str:
    """Render `{role, content}` messages as `Role: content` lines."""
    lines = []
    for m in messages:
        role = str(m.get("role", "user")).capitalize()
        content = str(m.get("content", "")).strip()
        if content:
            lines.append(f"{role}: {content}")
    return "\n".join(lines)


def build_summary_request(messages: Iterable[dict], previous_summary: str | None = None) -> tuple[str, str]:
    """Return `(context, query)` for a summarization call."""
    transcript = render_transcript(messages)
    context = SUMMARY_INSTRUCTION
    if previous_summary:
        context += f"\n\nSummary so far:\n{previous_summary}"
    return context, f"Conversation:\n{transcript}"


# =========================================================
# PLATFORM ACTIONS
# =========================================================
# Platform actions are executed by the host application; the pipeline only
# acknowledges them without a billable generation call.

PLATFORM_ACTION_ACK = (
    "I can't change settings or enrollments from the chat, but you'll find "
    "that option in your account and course menus."
)
