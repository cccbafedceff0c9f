"""Domain records and result types for the matching and entitlement core."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any


EDGE_PENDING = "pending"
EDGE_MATCHED = "matched"
EDGE_DECLINED = "declined"
EDGE_UNMATCHED = "unmatched"

SESSION_WAITING = "waiting"
SESSION_ACTIVE = "active"
SESSION_ENDED = "ended"

KIND_SUBSCRIPTION = "subscription"
KIND_CHAT_UNLOCK = "chatUnlock"
KIND_TIME_BOXED = "timeBoxedAccess"
KIND_POWER_UP = "powerUp"
KIND_CONSUMABLE = "consumableBalance"

GRANT_ACTIVE = "active"
GRANT_CANCELLED = "cancelled"

# scope_key of the time-boxed pass that lifts the messaging gate
UNLIMITED_MESSAGING = "unlimited_messaging"


@dataclass(frozen=True)
class InterestEdge:
    edge_id: int
    from_user: int
    to_user: int
    status: str
    created_at: datetime
    matched_at: datetime | None = None
    chat_unlocked: bool = False

    def involves(self, user_id: int) -> bool:
        return user_id in (self.from_user, self.to_user)

    def other_party(self, user_id: int) -> int:
        return self.to_user if user_id == self.from_user else self.from_user


@dataclass(frozen=True)
class EntitlementGrant:
    """One grant row; ``kind`` selects which of the optional fields carry meaning."""

    grant_id: int
    owner_user: int
    kind: str
    created_at: datetime
    scope_key: str | None = None
    plan: str | None = None
    expires_at: datetime | None = None
    remaining_uses: int | None = None
    multiplier: float | None = None
    status: str = GRANT_ACTIVE


@dataclass(frozen=True)
class PresenceSession:
    session_id: str
    host_user: int
    mode_id: str
    status: str
    created_at: datetime
    guest_user: int | None = None
    ended_at: datetime | None = None

    @property
    def has_guest(self) -> bool:
        return self.guest_user is not None

    def is_party(self, user_id: int) -> bool:
        return user_id == self.host_user or (self.guest_user is not None and user_id == self.guest_user)


@dataclass(frozen=True)
class SyncRound:
    round_id: int
    match_id: int
    question: str
    user1: int
    user2: int
    created_at: datetime
    answer1: str | None = None
    answer2: str | None = None
    score: int | None = None
    completed: bool = False

    def slot_for(self, user_id: int) -> int | None:
        if user_id == self.user1:
            return 1
        if user_id == self.user2:
            return 2
        return None

    def answer_in(self, slot: int) -> str | None:
        return self.answer1 if slot == 1 else self.answer2


@dataclass(frozen=True)
class InterestInsert:
    """Result of the atomic interest write performed by a store."""

    edge: InterestEdge
    created: bool
    promoted: InterestEdge | None = None


@dataclass(frozen=True)
class InterestResult:
    edge: InterestEdge
    is_new_match: bool
    match_id: int | None = None


@dataclass(frozen=True)
class PremiumStatus:
    is_premium: bool
    tier: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class PurchaseEvent:
    """Completed purchase as reported by the payment collaborator."""

    user_id: int
    product_type: str
    product_id: str | None = None
    plan: str | None = None
    target_user_id: int | None = None
    duration: timedelta | None = None
    quantity: int | None = None
    multiplier: float | None = None


@dataclass(frozen=True)
class Outcome:
    ok: bool
    value: Any = None
    error: str | None = None
    reason: str | None = None

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, reason: str) -> "Outcome":
        return cls(ok=False, error=error, reason=reason)
