"""Entitlement ledger: the single writer of grants and consumable balances."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable

from .collaborators import Notifier, notify_safely
from .entitlements import PLAN_MONTHS, compute_expiry, find_product, grant_is_active
from .errors import ErrorCode
from .models import (
    KIND_CHAT_UNLOCK,
    KIND_CONSUMABLE,
    KIND_POWER_UP,
    KIND_SUBSCRIPTION,
    KIND_TIME_BOXED,
    EntitlementGrant,
    Outcome,
    PurchaseEvent,
)
from .state import utc_now
from .store import CoreStore

logger = logging.getLogger(__name__)


@dataclass
class EntitlementLedger:
    store: CoreStore
    notifier: Notifier | None = None
    clock: Callable[[], datetime] = utc_now
    tz: tzinfo = field(default=timezone.utc)

    def is_active(self, user_id: int, kind: str, scope_key: str | None = None) -> bool:
        if kind == KIND_CONSUMABLE:
            return self.store.get_balance(user_id) > 0
        return self.active_grant(user_id, kind, scope_key) is not None

    def active_grant(self, user_id: int, kind: str, scope_key: str | None = None) -> EntitlementGrant | None:
        """Active grant of ``kind`` with the latest expiry (open-ended grants first)."""
        now = self.clock()
        active = [grant for grant in self.store.list_grants(user_id, kind, scope_key) if grant_is_active(grant, now)]
        if not active:
            return None
        return max(active, key=lambda grant: (grant.expires_at is None, grant.expires_at or now))

    def _new_grant(self, user_id: int, kind: str, **fields: object) -> EntitlementGrant:
        return EntitlementGrant(grant_id=0, owner_user=user_id, kind=kind, created_at=self.clock(), **fields)

    def grant_subscription(self, user_id: int, plan: str) -> Outcome:
        if plan not in PLAN_MONTHS:
            return Outcome.failure(ErrorCode.CONFLICT, "unknown_plan")
        now = self.clock()
        grant = self._new_grant(
            user_id, KIND_SUBSCRIPTION, plan=plan, expires_at=compute_expiry(KIND_SUBSCRIPTION, now, plan=plan)
        )
        stored = self.store.insert_subscription_unless_active(grant, now)
        if stored is None:
            return Outcome.failure(ErrorCode.CONFLICT, "already_active")
        logger.info("Subscription %s granted", plan, extra={"user_id": user_id, "kind": KIND_SUBSCRIPTION})
        notify_safely(
            self.notifier,
            "New Premium Subscription",
            f"User {user_id} subscribed to {plan} premium.",
            user_id=user_id,
        )
        return Outcome.success(stored)

    def cancel_subscription(self, user_id: int) -> Outcome:
        current = self.active_grant(user_id, KIND_SUBSCRIPTION)
        if current is None or not self.store.cancel_grant(current.grant_id):
            return Outcome.failure(ErrorCode.NOT_FOUND, "no_active_subscription")
        logger.info("Subscription %s cancelled", current.grant_id, extra={"user_id": user_id})
        return Outcome.success(current)

    def grant_chat_unlock(self, user_id: int, target_user: int) -> Outcome:
        """Idempotent: a second unlock for the same target returns the first grant."""
        grant = self._new_grant(user_id, KIND_CHAT_UNLOCK, scope_key=str(target_user))
        stored, created = self.store.insert_chat_unlock(grant)
        if created:
            logger.info("Chat with %s unlocked", target_user, extra={"user_id": user_id, "kind": KIND_CHAT_UNLOCK})
        return Outcome.success(stored)

    def grant_time_boxed_access(
        self,
        user_id: int,
        scope_key: str,
        duration: timedelta | None = None,
        tonight: bool = False,
        plan: str | None = None,
    ) -> Outcome:
        now = self.clock()
        expires_at = compute_expiry(KIND_TIME_BOXED, now, duration=duration, tonight=tonight, plan=plan, tz=self.tz)
        stored = self.store.insert_grant(
            self._new_grant(user_id, KIND_TIME_BOXED, scope_key=scope_key, expires_at=expires_at)
        )
        logger.info("Time-boxed %s until %s", scope_key, expires_at, extra={"user_id": user_id, "kind": KIND_TIME_BOXED})
        return Outcome.success(stored)

    def grant_power_up(
        self,
        user_id: int,
        power_up: str,
        duration: timedelta | None = None,
        multiplier: float | None = None,
        uses: int | None = None,
    ) -> Outcome:
        """Not idempotent: each purchase adds its own grant."""
        expires_at = compute_expiry(KIND_POWER_UP, self.clock(), duration=duration)
        stored = self.store.insert_grant(
            self._new_grant(
                user_id,
                KIND_POWER_UP,
                scope_key=power_up,
                expires_at=expires_at,
                multiplier=multiplier,
                remaining_uses=uses,
            )
        )
        logger.info("Power-up %s granted", power_up, extra={"user_id": user_id, "kind": KIND_POWER_UP})
        return Outcome.success(stored)

    def use_grant(self, user_id: int, grant_id: int) -> bool:
        return self.store.use_grant(grant_id, user_id)

    def add_super_likes(self, user_id: int, amount: int) -> int:
        if amount <= 0:
            raise ValueError("amount must be positive")
        balance = self.store.add_balance(user_id, amount)
        logger.info("Added %s super likes", amount, extra={"user_id": user_id, "kind": KIND_CONSUMABLE})
        return balance

    def use_super_like(self, user_id: int) -> bool:
        return self.store.consume_balance(user_id)

    def super_like_balance(self, user_id: int) -> int:
        return self.store.get_balance(user_id)

    def active_power_ups(self, user_id: int) -> list[EntitlementGrant]:
        now = self.clock()
        return [grant for grant in self.store.list_grants(user_id, KIND_POWER_UP) if grant_is_active(grant, now)]

    def chat_unlock_targets(self, user_id: int) -> list[int]:
        return [int(grant.scope_key) for grant in self.store.list_grants(user_id, KIND_CHAT_UNLOCK) if grant.scope_key]

    def apply_purchase(self, event: PurchaseEvent) -> Outcome:
        """Write side of the payment collaborator; authenticity is checked upstream."""
        if event.product_type in ("vip_subscription", "subscription"):
            return self.grant_subscription(event.user_id, event.plan or event.product_id or "")

        product = find_product(event.product_type, event.product_id)
        if product is None:
            logger.warning(
                "Unknown product %s/%s", event.product_type, event.product_id, extra={"user_id": event.user_id}
            )
            return Outcome.failure(ErrorCode.NOT_FOUND, "unknown_product")

        duration = event.duration or product.duration
        if product.kind == KIND_CHAT_UNLOCK:
            if event.target_user_id is None:
                return Outcome.failure(ErrorCode.CONFLICT, "missing_target")
            outcome = self.grant_chat_unlock(event.user_id, event.target_user_id)
        elif product.kind == KIND_TIME_BOXED:
            outcome = self.grant_time_boxed_access(
                event.user_id, product.scope_key or product.product_id,
                duration=duration, tonight=product.tonight, plan=product.plan,
            )
        elif product.kind == KIND_POWER_UP:
            outcome = self.grant_power_up(
                event.user_id,
                product.scope_key or product.product_id,
                duration=duration,
                multiplier=event.multiplier or product.multiplier,
                uses=product.quantity,
            )
        else:
            quantity = event.quantity or product.quantity or 0
            if quantity <= 0:
                return Outcome.failure(ErrorCode.CONFLICT, "missing_quantity")
            outcome = Outcome.success(self.add_super_likes(event.user_id, quantity))

        notify_safely(
            self.notifier,
            "New Purchase",
            f"User {event.user_id} purchased {product.name}.",
            user_id=event.user_id,
            kind=product.kind,
        )
        return outcome
