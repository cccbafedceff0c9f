"""Per-kind entitlement rules and the product catalogue.

Every rule here is a pure function of its inputs. The ledger looks them up by
grant kind so that validity, expiry and consumption are written once.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Callable

from .models import (
    GRANT_ACTIVE,
    KIND_CHAT_UNLOCK,
    KIND_CONSUMABLE,
    KIND_POWER_UP,
    KIND_SUBSCRIPTION,
    KIND_TIME_BOXED,
    UNLIMITED_MESSAGING,
    EntitlementGrant,
)


PLAN_MONTHS = {"monthly": 1, "yearly": 12}
TONIGHT_CUTOFF = time(hour=6)


def add_calendar_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_tonight_cutoff(now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    """Next 06:00 in ``tz`` strictly after ``now``."""
    local_now = now.astimezone(tz)
    cutoff = datetime.combine(local_now.date(), TONIGHT_CUTOFF, tzinfo=tz)
    if cutoff <= local_now:
        cutoff = datetime.combine(local_now.date() + timedelta(days=1), TONIGHT_CUTOFF, tzinfo=tz)
    return cutoff


def _subscription_expiry(now: datetime, plan: str | None = None, **_: object) -> datetime:
    if plan not in PLAN_MONTHS:
        raise ValueError(f"Unknown subscription plan: {plan!r}")
    return add_calendar_months(now, PLAN_MONTHS[plan])


def _time_boxed_expiry(
    now: datetime,
    duration: timedelta | None = None,
    tonight: bool = False,
    plan: str | None = None,
    tz: tzinfo = timezone.utc,
    **_: object,
) -> datetime:
    if tonight:
        return next_tonight_cutoff(now, tz)
    if plan is not None:
        return _subscription_expiry(now, plan=plan)
    if duration is None:
        raise ValueError("Time-boxed access needs a duration or the tonight variant")
    return now + duration


def _optional_duration_expiry(now: datetime, duration: timedelta | None = None, **_: object) -> datetime | None:
    return now + duration if duration is not None else None


def _never_expires(now: datetime, **_: object) -> None:
    return None


EXPIRY_RULES: dict[str, Callable[..., datetime | None]] = {
    KIND_SUBSCRIPTION: _subscription_expiry,
    KIND_CHAT_UNLOCK: _never_expires,
    KIND_TIME_BOXED: _time_boxed_expiry,
    KIND_POWER_UP: _optional_duration_expiry,
    KIND_CONSUMABLE: _never_expires,
}


def compute_expiry(kind: str, now: datetime, **params: object) -> datetime | None:
    try:
        rule = EXPIRY_RULES[kind]
    except KeyError:
        raise ValueError(f"Unknown entitlement kind: {kind!r}") from None
    return rule(now, **params)


def grant_is_active(grant: EntitlementGrant, now: datetime) -> bool:
    """A grant counts while it is not cancelled, not expired and not used up."""
    if grant.status != GRANT_ACTIVE:
        return False
    if grant.expires_at is not None and now >= grant.expires_at:
        return False
    if grant.remaining_uses is not None and grant.remaining_uses <= 0:
        return False
    return True


@dataclass(frozen=True)
class Product:
    product_id: str
    name: str
    price: int  # cents
    kind: str
    scope_key: str | None = None
    plan: str | None = None
    duration: timedelta | None = None
    tonight: bool = False
    quantity: int | None = None
    multiplier: float | None = None


SUBSCRIPTIONS = {
    "monthly": Product("premium_monthly", "FLaMO Premium", 699, KIND_SUBSCRIPTION, plan="monthly"),
    "yearly": Product("premium_yearly", "FLaMO Premium (Annual)", 5999, KIND_SUBSCRIPTION, plan="yearly"),
}

ONE_TIME = {
    "single_chat": Product("single_chat", "Single Chat Unlock", 199, KIND_CHAT_UNLOCK),
    "unlimited_tonight": Product(
        "unlimited_tonight", "Unlimited Tonight", 499, KIND_TIME_BOXED, scope_key=UNLIMITED_MESSAGING, tonight=True
    ),
}

POWER_UPS = {
    "profile_boost": Product(
        "profile_boost", "Profile Boost", 299, KIND_POWER_UP, scope_key="profile_boost",
        duration=timedelta(minutes=30), multiplier=10,
    ),
    "super_likes": Product("super_likes", "Super Likes x5", 499, KIND_CONSUMABLE, quantity=5),
    "incognito": Product("incognito", "Incognito Mode", 399, KIND_POWER_UP, scope_key="incognito", duration=timedelta(hours=24)),
}

MOMENTS = {
    "moment_date_night": Product("moment_date_night", "Date Night Mode", 299, KIND_TIME_BOXED,
                                 scope_key="moment_date_night", duration=timedelta(hours=24)),
    "moment_reunion": Product("moment_reunion", "Reunion Mode", 399, KIND_TIME_BOXED,
                              scope_key="moment_reunion", duration=timedelta(hours=24)),
    "moment_long_distance": Product("moment_long_distance", "Long Distance Night", 499, KIND_TIME_BOXED,
                                    scope_key="moment_long_distance", duration=timedelta(hours=48)),
    "moment_anniversary": Product("moment_anniversary", "Anniversary Special", 499, KIND_TIME_BOXED,
                                  scope_key="moment_anniversary", duration=timedelta(hours=72)),
}

PERMISSIONS = {
    "stay_longer": Product("stay_longer", "Stay Longer", 299, KIND_TIME_BOXED, scope_key="stay_longer",
                           duration=timedelta(hours=2)),
    "return_once": Product("return_once", "Return Once", 199, KIND_POWER_UP, scope_key="return_once", quantity=1),
    "private_signal": Product("private_signal", "Private Signal", 99, KIND_POWER_UP, scope_key="private_signal",
                              quantity=1),
    "unlock_tonight": Product("unlock_tonight", "Unlock Tonight", 499, KIND_TIME_BOXED, scope_key="unlock_tonight",
                              tonight=True),
    "deeper_access": Product("deeper_access", "Deeper Access", 699, KIND_TIME_BOXED, scope_key="deeper_access",
                             plan="monthly"),
}

CATALOGUE: dict[str, dict[str, Product]] = {
    "vip_subscription": SUBSCRIPTIONS,
    "subscription": SUBSCRIPTIONS,
    "one_time": ONE_TIME,
    "power_up": POWER_UPS,
    "moment": MOMENTS,
    "permission": PERMISSIONS,
}


def find_product(product_type: str, product_id: str | None) -> Product | None:
    products = CATALOGUE.get(product_type)
    if products is None or product_id is None:
        return None
    return products.get(product_id)
