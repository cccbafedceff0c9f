from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from flamo.backend.entitlements import (
    add_calendar_months,
    compute_expiry,
    find_product,
    grant_is_active,
    next_tonight_cutoff,
)
from flamo.backend.models import EntitlementGrant

NOW = datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("start", "months", "expected"),
    [
        (datetime(2026, 1, 31, tzinfo=timezone.utc), 1, datetime(2026, 2, 28, tzinfo=timezone.utc)),
        (datetime(2028, 1, 31, tzinfo=timezone.utc), 1, datetime(2028, 2, 29, tzinfo=timezone.utc)),
        (datetime(2026, 11, 15, tzinfo=timezone.utc), 3, datetime(2027, 2, 15, tzinfo=timezone.utc)),
        (datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc), 12, datetime(2027, 3, 1, 21, 0, tzinfo=timezone.utc)),
    ],
)
def test_add_calendar_months_clamps_day(start: datetime, months: int, expected: datetime) -> None:
    assert add_calendar_months(start, months) == expected


def test_tonight_cutoff_is_same_morning_before_six() -> None:
    now = datetime(2026, 3, 2, 3, 30, tzinfo=timezone.utc)

    assert next_tonight_cutoff(now) == datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)


def test_tonight_cutoff_is_next_morning_in_the_evening() -> None:
    assert next_tonight_cutoff(NOW) == datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)


def test_tonight_cutoff_at_exactly_six_moves_to_next_day() -> None:
    now = datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)

    assert next_tonight_cutoff(now) == datetime(2026, 3, 3, 6, 0, tzinfo=timezone.utc)


def test_tonight_cutoff_respects_configured_zone() -> None:
    bangkok = ZoneInfo("Asia/Bangkok")

    cutoff = next_tonight_cutoff(NOW, bangkok)  # 04:00 local on 2 March

    assert cutoff == datetime(2026, 3, 2, 6, 0, tzinfo=bangkok)
    assert cutoff.astimezone(timezone.utc) == datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)


def test_compute_expiry_per_kind() -> None:
    assert compute_expiry("subscription", NOW, plan="yearly") == datetime(2027, 3, 1, 21, 0, tzinfo=timezone.utc)
    assert compute_expiry("chatUnlock", NOW) is None
    assert compute_expiry("consumableBalance", NOW) is None
    assert compute_expiry("powerUp", NOW) is None
    assert compute_expiry("powerUp", NOW, duration=timedelta(minutes=30)) == NOW + timedelta(minutes=30)
    assert compute_expiry("timeBoxedAccess", NOW, duration=timedelta(hours=2)) == NOW + timedelta(hours=2)


def test_compute_expiry_rejects_unknown_inputs() -> None:
    with pytest.raises(ValueError):
        compute_expiry("subscription", NOW, plan="weekly")
    with pytest.raises(ValueError):
        compute_expiry("timeBoxedAccess", NOW)
    with pytest.raises(ValueError):
        compute_expiry("lifetime", NOW)


def test_grant_is_active_checks_status_expiry_and_uses() -> None:
    base = EntitlementGrant(1, owner_user=1, kind="powerUp", created_at=NOW)

    assert grant_is_active(base, NOW)
    assert not grant_is_active(EntitlementGrant(1, 1, "powerUp", NOW, status="cancelled"), NOW)
    assert not grant_is_active(EntitlementGrant(1, 1, "powerUp", NOW, expires_at=NOW), NOW)
    assert grant_is_active(EntitlementGrant(1, 1, "powerUp", NOW, expires_at=NOW + timedelta(seconds=1)), NOW)
    assert not grant_is_active(EntitlementGrant(1, 1, "powerUp", NOW, remaining_uses=0), NOW)


def test_find_product_looks_up_catalogue() -> None:
    assert find_product("one_time", "single_chat").kind == "chatUnlock"
    assert find_product("power_up", "super_likes").quantity == 5
    assert find_product("moment", "moment_anniversary").duration == timedelta(hours=72)
    assert find_product("power_up", "nope") is None
    assert find_product("gift_card", "any") is None
    assert find_product("one_time", None) is None
