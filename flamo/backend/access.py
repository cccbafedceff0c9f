"""Access decisions composed from the entitlement ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .ledger import EntitlementLedger
from .models import KIND_CHAT_UNLOCK, KIND_SUBSCRIPTION, KIND_TIME_BOXED, UNLIMITED_MESSAGING, PremiumStatus
from .state import build_grant_view, build_premium_view

TIER_VIP = "vip"
TIER_TIME_BOXED = "timeBoxed"


@dataclass
class AccessResolver:
    ledger: EntitlementLedger

    def can_message(self, user_id: int, target_user: int) -> bool:
        # cheapest and most likely first
        return (
            self.ledger.is_active(user_id, KIND_SUBSCRIPTION)
            or self.ledger.is_active(user_id, KIND_CHAT_UNLOCK, str(target_user))
            or self.ledger.is_active(user_id, KIND_TIME_BOXED, UNLIMITED_MESSAGING)
        )

    def premium_status(self, user_id: int) -> PremiumStatus:
        subscription = self.ledger.active_grant(user_id, KIND_SUBSCRIPTION)
        if subscription is not None:
            return PremiumStatus(is_premium=True, tier=TIER_VIP, expires_at=subscription.expires_at)
        unlimited = self.ledger.active_grant(user_id, KIND_TIME_BOXED, UNLIMITED_MESSAGING)
        if unlimited is not None:
            return PremiumStatus(is_premium=True, tier=TIER_TIME_BOXED, expires_at=unlimited.expires_at)
        return PremiumStatus(is_premium=False)

    def access_summary(self, user_id: int) -> dict[str, Any]:
        summary = build_premium_view(self.premium_status(user_id))
        summary["superLikes"] = self.ledger.super_like_balance(user_id)
        summary["powerUps"] = [build_grant_view(grant) for grant in self.ledger.active_power_ups(user_id)]
        summary["chatUnlocks"] = self.ledger.chat_unlock_targets(user_id)
        return summary
