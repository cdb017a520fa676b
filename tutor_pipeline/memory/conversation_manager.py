"""Per-conversation context builder with rolling summarization.

Purpose of this abstraction:
    Produce the bounded context string (profile + summary + recent turns) that
    every generation call receives, while keeping a derived `SessionContext` per
    (user, conversation) in the fast store.

Session cache vs message log:
    - The authoritative history lives in an external message log (`MessageLog`).
    - `SessionContext` is a replaceable cache of the last
      `max_messages_in_context` messages plus the rolling summary. It is rebuilt
      from the log whenever the fast store misses.

Summarization:
    Messages older than the last `recent_messages_verbatim` are compressed by one
    small-model call once at least `summarization_threshold` of them are not yet
    covered by the summary. Older messages below that threshold are rendered
    verbatim. A failed call falls back to a truncated raw excerpt of those
    messages; the turn never fails because of it.

Budget:
    Tokens are estimated at 4 characters per token (ceil). When the rendered text
    exceeds `max_tokens_per_context`, recent turns are dropped from the oldest side
    and, as a last resort, the text is hard-truncated.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

from tutor_pipeline.core.errors import GenerationUnavailable
from tutor_pipeline.core.routing_types import SessionContext
from tutor_pipeline.llm.client import GenerationProvider
from tutor_pipeline.memory.fast_store import FastStore
from tutor_pipeline.prompting.prompt_builder import build_summary_request, render_transcript


logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Estimate tokens at 4 characters per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


# =========================================================
# PROFILE EXTRACTION
# =========================================================

NAME_PATTERN = re.compile(
    r"(?i:i'm|i am|my name is|call me)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"
)
ROLE_PATTERNS = (
    re.compile(
        r"(?:i'm|i am)\s+an?\s+([a-z\s]*(?:developer|engineer|designer|student|teacher|manager))",
        re.IGNORECASE,
    ),
    re.compile(r"(?:work as|working as)\s+(?:an?\s+)?([a-z\s]+)", re.IGNORECASE),
)
INTEREST_PATTERN = re.compile(
    r"i (?:love|like|enjoy|prefer|am interested in)\s+([^,.!?]+)",
    re.IGNORECASE,
)


def extract_profile(text: str) -> dict[str, Any]:
    """Pattern-based profile fields found in one user message."""
    found: dict[str, Any] = {"name": None, "role": None, "interests": []}

    match = NAME_PATTERN.search(text)
    if match:
        found["name"] = match.group(1).strip()

    for pattern in ROLE_PATTERNS:
        match = pattern.search(text)
        if match:
            found["role"] = match.group(1).strip().lower()
            break

    for match in INTEREST_PATTERN.finditer(text):
        interest = match.group(1).strip().lower()
        if interest:
            found["interests"].append(interest)

    return found


def merge_profile(current: dict[str, Any], found: dict[str, Any]) -> dict[str, Any]:
    """Merge without overwriting non-null fields; interests are a de-duplicated union."""
    merged = {
        "name": current.get("name"),
        "role": current.get("role"),
        "interests": list(current.get("interests") or []),
    }
    for key in ("name", "role"):
        if merged[key] is None and found.get(key):
            merged[key] = found[key]
    for interest in found.get("interests") or []:
        if interest not in merged["interests"]:
            merged["interests"].append(interest)
    return merged


# =========================================================
# CONFIG / CONTRACTS
# =========================================================

@dataclass(frozen=True)
class ContextConfig:
    """Relevant environment variables:
        - `CONTEXT_MAX_MESSAGES`
        - `CONTEXT_RECENT_VERBATIM`
        - `CONTEXT_SUMMARIZATION_THRESHOLD`
        - `SESSION_TTL_SECONDS`
        - `CONTEXT_MAX_TOKENS`
    """

    max_messages_in_context: int = int(os.getenv("CONTEXT_MAX_MESSAGES", "10"))
    recent_messages_verbatim: int = int(os.getenv("CONTEXT_RECENT_VERBATIM", "3"))
    summarization_threshold: int = int(os.getenv("CONTEXT_SUMMARIZATION_THRESHOLD", "5"))
    session_ttl: int = int(os.getenv("SESSION_TTL_SECONDS", "3600"))
    max_tokens_per_context: int = int(os.getenv("CONTEXT_MAX_TOKENS", "2000"))
    summary_max_tokens: int = 256
    fallback_excerpt_chars: int = 600
    max_profile_facts: int = 5


class MessageLog(Protocol):
    """Authoritative conversation history (external store)."""

    async def fetch(self, conversation_id: str) -> list[dict[str, str]]: ...


class InMemoryMessageLog:
    """Process-local `MessageLog`, used by the CLI and tests."""

    def __init__(self) -> None:
        self._messages: dict[str, list[dict[str, str]]] = {}

    def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        user_id: str | None = None,
        created_at: float | None = None,
        ingested: bool = False,
    ) -> None:
        """Append one message; `ingested` marks it as already in the memory ledger."""
        self._messages.setdefault(conversation_id, []).append(
            {
                "role": role,
                "content": content,
                "user_id": user_id,
                "created_at": time.time() if created_at is None else created_at,
                "ingested": ingested,
            }
        )

    async def fetch(self, conversation_id: str) -> list[dict[str, str]]:
        return list(self._messages.get(conversation_id, []))

    def conversations(self) -> dict[str, list[dict[str, str]]]:
        return {cid: list(msgs) for cid, msgs in self._messages.items()}


@dataclass
class BuiltContext:
    text: str
    session: SessionContext
    metadata: dict[str, Any] = field(default_factory=dict)


# =========================================================
# BUILDER
# =========================================================

class ConversationContextBuilder:
    def __init__(
        self,
        store: FastStore,
        summarizer: GenerationProvider | None,
        message_log: MessageLog | None = None,
        config: ContextConfig | None = None,
        ledger=None,
    ) -> None:
        self.store = store
        self.summarizer = summarizer
        self.message_log = message_log
        self.config = config or ContextConfig()
        self.ledger = ledger
        self.stats = {"builds": 0, "cache_hits": 0, "summarizations": 0, "summary_failures": 0}

    @staticmethod
    def session_key(user_id: str, conversation_id: str | None) -> str:
        return f"conversation:{user_id}:{conversation_id or 'default'}"

    def _new_session(self, user_id: str, conversation_id: str) -> SessionContext:
        return SessionContext(
            user_id=user_id,
            conversation_id=conversation_id or "default",
            recent_turns=deque(maxlen=self.config.max_messages_in_context),
            ttl=self.config.session_ttl,
        )

    async def _load(self, user_id: str, conversation_id: str) -> SessionContext | None:
        raw = await self.store.get(self.session_key(user_id, conversation_id))
        if raw is None:
            return None
        try:
            session = SessionContext.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Discarding unreadable session cache: %s", exc)
            return None
        session.recent_turns = deque(session.recent_turns, maxlen=self.config.max_messages_in_context)
        return session

    async def _persist(self, session: SessionContext) -> None:
        session.cached_at = time.time()
        await self.store.set(
            session.session_id,
            json.dumps(session.to_dict()),
            ttl=session.ttl,
        )

    # =========================================================
    # BUILD
    # =========================================================

    async def build(
        self,
        user_id: str,
        conversation_id: str,
        messages: list[dict[str, str]] | None = None,
    ) -> BuiltContext:
        """Build the bounded context for the next generation call.

        Args:
            user_id: Owning user.
            conversation_id: Conversation key.
            messages: Full authoritative history, when the caller already has it.
                Otherwise the fast store is consulted, then the message log.

        Returns:
            `BuiltContext` whose `text` never exceeds `max_tokens_per_context`.
        """
        self.stats["builds"] += 1
        conversation_id = conversation_id or "default"
        session = await self._load(user_id, conversation_id)

        if session is not None and messages is None:
            self.stats["cache_hits"] += 1
            window = list(session.recent_turns)
            base = session.total_messages - len(window)
        else:
            if messages is None:
                messages = await self.message_log.fetch(conversation_id) if self.message_log else []
            previous = session
            session = self._new_session(user_id, conversation_id)
            if previous is not None:
                session.summary = previous.summary
                session.summary_covers_up_to = min(previous.summary_covers_up_to, len(messages))
                session.profile = previous.profile
            window = list(messages)
            base = 0
            session.total_messages = len(messages)
            session.recent_turns.extend(messages[-self.config.max_messages_in_context:])

        for message in window:
            if message.get("role") == "user":
                session.profile = merge_profile(session.profile, extract_profile(message.get("content", "")))

        split = max(0, session.total_messages - self.config.recent_messages_verbatim)
        pending_old = [
            m for i, m in enumerate(window, start=base)
            if session.summary_covers_up_to <= i < split
        ]
        recent = window[max(0, split - base):]

        excerpt = None
        if len(pending_old) >= self.config.summarization_threshold:
            summarized = await self._summarize(session, pending_old)
            if summarized:
                session.summary_covers_up_to = split
                session.summary_failed = False
                pending_old = []
            else:
                session.summary_failed = True
                excerpt = render_transcript(pending_old)[-self.config.fallback_excerpt_chars:]
                pending_old = []

        verbatim = pending_old + recent
        facts = await self._profile_facts(user_id)
        text, kept = self._render(session, facts, excerpt, verbatim)

        try:
            await self._persist(session)
        except Exception:
            logger.exception("Failed to persist session context %s", session.session_id)

        return BuiltContext(
            text=text,
            session=session,
            metadata={
                "verbatim_count": kept,
                "summary_covers_up_to": session.summary_covers_up_to,
                "summary_failed": session.summary_failed,
                "estimated_tokens": estimate_tokens(text),
            },
        )

    async def _summarize(self, session: SessionContext, old: list[dict[str, str]]) -> bool:
        if self.summarizer is None:
            return False
        context, query = build_summary_request(old, session.summary)
        try:
            completion = await self.summarizer.complete(
                context, query, max_tokens=self.config.summary_max_tokens
            )
        except GenerationUnavailable as exc:
            self.stats["summary_failures"] += 1
            logger.warning("Summarization failed, using raw excerpt: %s", exc)
            return False

        if not completion.text.strip():
            self.stats["summary_failures"] += 1
            return False

        session.summary = completion.text.strip()
        self.stats["summarizations"] += 1
        return True

    async def _profile_facts(self, user_id: str) -> list[str]:
        if self.ledger is None:
            return []
        try:
            entries = await self.ledger.profile_facts(user_id)
        except Exception:
            logger.exception("Ledger profile lookup failed user=%s", user_id)
            return []
        return [e.content for e in entries[: self.config.max_profile_facts]]

    def _render(
        self,
        session: SessionContext,
        facts: list[str],
        excerpt: str | None,
        verbatim: list[dict[str, str]],
    ) -> tuple[str, int]:
        budget = self.config.max_tokens_per_context
        head = []

        profile = session.profile or {}
        profile_bits = []
        if profile.get("name"):
            profile_bits.append(f"name={profile['name']}")
        if profile.get("role"):
            profile_bits.append(f"role={profile['role']}")
        if profile.get("interests"):
            profile_bits.append("interests=" + ", ".join(profile["interests"]))
        if profile_bits:
            head.append("Learner profile: " + "; ".join(profile_bits))

        if facts:
            head.append("Learner notes:\n" + "\n".join(f"- {f}" for f in facts))

        if session.summary and not excerpt:
            head.append("Summary of earlier conversation:\n" + session.summary)
        elif excerpt:
            head.append("Earlier conversation (excerpt):\n" + excerpt)

        turns = list(verbatim)
        while True:
            parts = list(head)
            if turns:
                parts.append("Recent messages:\n" + render_transcript(turns))
            text = "\n\n".join(parts)
            if estimate_tokens(text) <= budget or not turns:
                break
            turns.pop(0)

        if estimate_tokens(text) > budget:
            text = text[: budget * 4]

        return text, len(turns)

    # =========================================================
    # TURN RECORDING / LIFECYCLE
    # =========================================================

    async def record_turn(self, user_id: str, conversation_id: str, role: str, content: str) -> SessionContext:
        """Append one message to the session cache and refresh its TTL."""
        conversation_id = conversation_id or "default"
        session = await self._load(user_id, conversation_id) or self._new_session(user_id, conversation_id)
        session.recent_turns.append({"role": role, "content": content})
        session.total_messages += 1
        if role == "user":
            session.profile = merge_profile(session.profile, extract_profile(content))
        await self._persist(session)
        return session

    async def history(self, user_id: str, conversation_id: str) -> list[dict[str, str]]:
        """Recent prior messages, from the session cache or else the message log."""
        session = await self._load(user_id, conversation_id or "default")
        if session is not None:
            return list(session.recent_turns)
        if self.message_log is None:
            return []
        messages = await self.message_log.fetch(conversation_id or "default")
        return messages[-self.config.max_messages_in_context:]

    async def end_session(self, user_id: str, conversation_id: str) -> None:
        await self.store.delete(self.session_key(user_id, conversation_id))

    async def session_stats(self, user_id: str, conversation_id: str) -> dict[str, Any] | None:
        session = await self._load(user_id, conversation_id or "default")
        if session is None:
            return None
        return {
            "session_id": session.session_id,
            "total_messages": session.total_messages,
            "cached_turns": len(session.recent_turns),
            "has_summary": session.summary is not None,
            "summary_covers_up_to": session.summary_covers_up_to,
            "profile": dict(session.profile),
            "age_seconds": max(0.0, time.time() - session.cached_at),
            "ttl": session.ttl,
        }
