"""Subscription-tier limits on starting new attempts."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime

from ielts_core.errors import NotFound, QuotaExceeded
from ielts_core.models import Module, SessionStatus, SubscriptionTier, utcnow

logger = logging.getLogger(__name__)

UNLIMITED = -1

DEFAULT_FREE_LIMITS = {
    Module.LISTENING: 5,
    Module.READING: 1,
    Module.WRITING: 5,
}


@dataclass(frozen=True, slots=True)
class QuotaDecision:
    allowed: bool
    tier: SubscriptionTier
    reason: str = ""
    retry_at: datetime | None = None
    remaining: int = UNLIMITED
    completed: int = 0

    def to_dict(self):
        return {
            "allowed": self.allowed,
            "tier": self.tier.value,
            "reason": self.reason,
            "retry_at": self.retry_at,
            "remaining_tests": self.remaining,
            "completed_tests": self.completed,
        }


class QuotaPolicy:
    """Free tier: hard cap per module. Premium: cooldown. Enterprise: unlimited."""

    def __init__(self, store, free_limits=None, clock=utcnow):
        self.store = store
        self.free_limits = dict(DEFAULT_FREE_LIMITS)
        if free_limits:
            self.free_limits.update(free_limits)
        self.clock = clock

    def _tier(self, user_id):
        tier = self.store.get_subscription_tier(user_id)
        if tier is None:
            raise NotFound("User not found", user_id=user_id)
        return tier

    def can_start(self, user_id, module: Module) -> QuotaDecision:
        tier = self._tier(user_id)
        completed = self.store.count_attempts(user_id, module, (SessionStatus.COMPLETED,))

        if tier is SubscriptionTier.FREE:
            limit = self.free_limits[module]
            if completed >= limit:
                return QuotaDecision(
                    allowed=False,
                    tier=tier,
                    reason=(
                        f"Free users are limited to {limit} {module.label.capitalize()} "
                        "Module tests. Please upgrade to Premium for unlimited tests."
                    ),
                    remaining=0,
                    completed=completed,
                )
            return QuotaDecision(
                allowed=True, tier=tier, remaining=limit - completed, completed=completed
            )

        if tier is SubscriptionTier.PREMIUM:
            analytics = self.store.get_analytics(user_id, module)
            retry_at = analytics.next_allowed_attempt_at if analytics else None
            now = self.clock()
            if retry_at is not None and now < retry_at:
                hours = math.ceil((retry_at - now).total_seconds() / 3600)
                return QuotaDecision(
                    allowed=False,
                    tier=tier,
                    reason=(
                        f"Please wait {hours} hours before taking another "
                        f"{module.label.capitalize()} Module test."
                    ),
                    retry_at=retry_at,
                    completed=completed,
                )

        return QuotaDecision(allowed=True, tier=tier, completed=completed)

    def ensure_can_start(self, user_id, module: Module) -> QuotaDecision:
        decision = self.can_start(user_id, module)
        if not decision.allowed:
            logger.info("Quota denied %s start for user %s: %s", module.value, user_id, decision.reason)
            context = {"module": module.value, "tier": decision.tier.value}
            if decision.retry_at is not None:
                context["hours_remaining"] = math.ceil(
                    (decision.retry_at - self.clock()).total_seconds() / 3600
                )
            raise QuotaExceeded(decision.reason, retry_at=decision.retry_at, **context)
        return decision
