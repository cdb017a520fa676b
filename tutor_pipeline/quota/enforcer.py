"""Per-user usage quotas with role-based plans.

Architectural role:
    Gate in front of every billable operation. The engine calls `check` before
    classification and `consume` only after a billable answer was produced.

Plans:
    Limits per role and resource (`chatMessages`, `voiceMinutes`,
    `courseGenerations`). `None` means unlimited. Subscription tier (`free`,
    `basic`, `pro`) only drives the upgrade guidance of a denial.

Counter storage (fast store):
    - `quota:counter:{user}:{resource}`: hash with `used`, `overage`, `limit`
      (`-1` for unlimited), `period_start`, `period_end`.
    - `quota:plan:{user}`: hash with `role` and `tier`.

Atomicity:
    - `consume` is a single increment-with-ceiling: `used` never exceeds
      `limit`; the excess is recorded as `overage`.
    - Usage is reset only by `rollover`, a compare-and-set on `period_end`, so
      concurrent or repeated rollovers of the same period apply once.
    - `check` reads without reserving. Concurrent turns of one user that pass
      `check` at `limit - 1` all run their paid call; `consume` then clamps
      `used` at `limit` and books the extra as `overage`.

Store outage:
    Counter operations run strict against the shared store. When Redis is
    configured but unreachable, `check` denies with `retry_later` rather than
    counting from zero in a local map; `consume` raises `FastStoreUnavailable`.

Periods:
    Fixed length (`period_days`, default 30). A counter resets only once
    `now >= period_end`; the new period is aligned to whole periods after the old
    `period_end`.
"""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Mapping

from tutor_pipeline.core.errors import FastStoreUnavailable, QuotaExceeded
from tutor_pipeline.core.routing_types import QuotaCounter, QuotaDenial
from tutor_pipeline.memory.fast_store import FastStore


logger = logging.getLogger(__name__)

CHAT_MESSAGES = "chatMessages"
VOICE_MINUTES = "voiceMinutes"
COURSE_GENERATIONS = "courseGenerations"
RESOURCES = (CHAT_MESSAGES, VOICE_MINUTES, COURSE_GENERATIONS)

DEFAULT_PLANS: dict[str, dict[str, int | None]] = {
    "learner": {CHAT_MESSAGES: 100, VOICE_MINUTES: 30, COURSE_GENERATIONS: 3},
    "verified_instructor": {CHAT_MESSAGES: 1000, VOICE_MINUTES: 300, COURSE_GENERATIONS: 20},
    "platform_author": {CHAT_MESSAGES: None, VOICE_MINUTES: None, COURSE_GENERATIONS: None},
    "admin": {CHAT_MESSAGES: None, VOICE_MINUTES: None, COURSE_GENERATIONS: None},
}

STORE_UNAVAILABLE_MESSAGE = "We can't check your usage right now. Please try again in a moment."

# tier -> (message, next tier, monthly price in cents)
UPGRADE_PATHS: dict[str, tuple[str, str | None, int | None]] = {
    "free": (
        "Your free AI messages are over. Continue learning with a Pro Subscription.",
        "basic",
        999,
    ),
    "basic": (
        "You've reached your monthly limit. Upgrade to Pro for unlimited messages.",
        "pro",
        1999,
    ),
    "pro": (
        "You've reached your monthly limit. Please wait for next billing cycle.",
        None,
        None,
    ),
}


@dataclass(frozen=True)
class QuotaConfig:
    """Relevant environment variables:
        - `QUOTA_PERIOD_DAYS`
        - `QUOTA_DEFAULT_ROLE`
        - `QUOTA_DEFAULT_TIER`
    """

    period_days: float = float(os.getenv("QUOTA_PERIOD_DAYS", "30"))
    default_role: str = os.getenv("QUOTA_DEFAULT_ROLE", "learner")
    default_tier: str = os.getenv("QUOTA_DEFAULT_TIER", "free")

    @property
    def period_seconds(self) -> float:
        return self.period_days * 86400.0


class QuotaEnforcer:
    def __init__(
        self,
        store: FastStore,
        config: QuotaConfig | None = None,
        plans: Mapping[str, Mapping[str, int | None]] | None = None,
    ) -> None:
        self.store = store
        self.config = config or QuotaConfig()
        self.plans = {role: dict(limits) for role, limits in (plans or DEFAULT_PLANS).items()}

    @staticmethod
    def counter_key(user_id: str, resource: str) -> str:
        return f"quota:counter:{user_id}:{resource}"

    @staticmethod
    def plan_key(user_id: str) -> str:
        return f"quota:plan:{user_id}"

    @staticmethod
    def _check_resource(resource: str) -> None:
        if resource not in RESOURCES:
            raise ValueError(f"unknown quota resource: {resource}")

    # =========================================================
    # PLANS
    # =========================================================

    async def plan(self, user_id: str) -> tuple[str, str]:
        stored = await self.store.get_hash(self.plan_key(user_id), strict=True)
        role = stored.get("role") or self.config.default_role
        tier = stored.get("tier") or self.config.default_tier
        if role not in self.plans:
            role = self.config.default_role
        return role, tier

    async def limit_for(self, user_id: str, resource: str) -> int | None:
        role, _tier = await self.plan(user_id)
        return self.plans[role].get(resource)

    async def set_plan(self, user_id: str, role: str, tier: str | None = None) -> None:
        """Assign a role (and optionally a subscription tier) and re-limit counters."""
        if role not in self.plans:
            raise ValueError(f"unknown plan role: {role}")
        mapping = {"role": role}
        if tier is not None:
            mapping["tier"] = tier
        await self.store.set_hash(self.plan_key(user_id), mapping, strict=True)

        for resource in RESOURCES:
            key = self.counter_key(user_id, resource)
            if await self.store.get_hash(key, strict=True):
                limit = self.plans[role].get(resource)
                await self.store.set_hash(key, {"limit": -1 if limit is None else limit}, strict=True)
        logger.info("Quota plan set user=%s role=%s tier=%s", user_id, role, tier)

    # =========================================================
    # COUNTERS
    # =========================================================

    async def counter(self, user_id: str, resource: str, now: float | None = None) -> QuotaCounter:
        """Current counter, created on first use.

        An elapsed period is returned as stored; only `rollover` resets usage.
        """
        self._check_resource(resource)
        now = time.time() if now is None else now
        key = self.counter_key(user_id, resource)
        limit = await self.limit_for(user_id, resource)

        await self.store.compare_and_set_hash(
            key,
            "period_end",
            None,
            {
                "used": 0,
                "overage": 0,
                "limit": -1 if limit is None else limit,
                "period_start": repr(now),
                "period_end": repr(now + self.config.period_seconds),
            },
            strict=True,
        )

        data = await self.store.get_hash(key, strict=True)
        return self._to_counter(user_id, resource, data, limit)

    @staticmethod
    def _to_counter(user_id: str, resource: str, data: Mapping[str, str], limit: int | None) -> QuotaCounter:
        return QuotaCounter(
            user_id=user_id,
            resource=resource,
            period_start=float(data.get("period_start", 0.0)),
            period_end=float(data.get("period_end", 0.0)),
            used=int(float(data.get("used", 0))),
            limit=limit,
            overage=int(float(data.get("overage", 0))),
        )

    async def _roll(self, key: str, data: Mapping[str, str], now: float) -> bool:
        period = self.config.period_seconds
        old_end = float(data["period_end"])
        if old_end > now:
            return False
        elapsed = math.floor((now - old_end) / period)
        new_start = old_end + elapsed * period
        rolled = await self.store.compare_and_set_hash(
            key,
            "period_end",
            data["period_end"],
            {
                "used": 0,
                "overage": 0,
                "period_start": repr(new_start),
                "period_end": repr(new_start + period),
            },
            strict=True,
        )
        if rolled:
            logger.info("Quota period rolled key=%s new_start=%.0f", key, new_start)
        return rolled

    # =========================================================
    # CHECK / CONSUME
    # =========================================================

    async def check(
        self,
        user_id: str,
        resource: str,
        amount: int = 1,
        now: float | None = None,
    ) -> QuotaDenial | None:
        """Return a denial when `amount` more units would exceed the limit.

        Counters that cannot be read (shared store down) deny with
        `suggested_action="retry_later"`.
        """
        try:
            counter = await self.counter(user_id, resource, now)
        except FastStoreUnavailable as exc:
            logger.error("Quota store unavailable, denying user=%s resource=%s: %s", user_id, resource, exc)
            return QuotaDenial(
                exceeded_resource=resource,
                current_usage=0,
                limit=0,
                suggested_action="retry_later",
                message=STORE_UNAVAILABLE_MESSAGE,
            )
        if counter.unlimited:
            return None
        if counter.used + amount <= counter.limit:
            return None

        _role, tier = await self.plan(user_id)
        message, next_tier, _price = UPGRADE_PATHS.get(tier, UPGRADE_PATHS["free"])
        logger.info(
            "Quota denied user=%s resource=%s used=%d limit=%d",
            user_id, resource, counter.used, counter.limit,
        )
        return QuotaDenial(
            exceeded_resource=resource,
            current_usage=counter.used,
            limit=counter.limit,
            suggested_action="upgrade" if next_tier else "wait_for_reset",
            message=message,
            upgrade_to=next_tier,
        )

    async def require(self, user_id: str, resource: str, amount: int = 1, now: float | None = None) -> None:
        """Like `check`, but raises `QuotaExceeded` on denial."""
        denial = await self.check(user_id, resource, amount, now)
        if denial is not None:
            raise QuotaExceeded(denial)

    async def consume(
        self,
        user_id: str,
        resource: str,
        amount: int = 1,
        now: float | None = None,
    ) -> QuotaCounter:
        """Record usage after a successful billable operation."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        counter = await self.counter(user_id, resource, now)
        used, overage = await self.store.increment_with_ceiling(
            self.counter_key(user_id, resource),
            amount,
            counter.limit,
            strict=True,
        )
        counter.used = used
        counter.overage = overage
        if overage:
            logger.warning("Quota overage user=%s resource=%s overage=%d", user_id, resource, overage)
        return counter

    # =========================================================
    # ROLLOVER
    # =========================================================

    async def rollover(self, now: float | None = None) -> int:
        """Roll every elapsed counter forward. Safe to re-run.

        Returns:
            Number of counters rolled by this call.
        """
        now = time.time() if now is None else now
        rolled = 0
        for key in await self.store.scan("quota:counter:", strict=True):
            data = await self.store.get_hash(key, strict=True)
            if not data or "period_end" not in data:
                continue
            if await self._roll(key, data, now):
                rolled += 1
        logger.info("Quota rollover now=%.0f rolled=%d", now, rolled)
        return rolled
