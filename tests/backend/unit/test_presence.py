import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from itertools import cycle

import pytest

from flamo.backend.errors import ConflictError
from flamo.backend.presence import PresenceService
from flamo.backend.store import InMemoryCoreStore

NOW = datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc)


@pytest.fixture
def service() -> PresenceService:
    return PresenceService(store=InMemoryCoreStore(), clock=lambda: NOW)


def test_create_session_starts_waiting(service: PresenceService) -> None:
    session = service.create_session(host_user=1, mode_id="party")

    assert session.status == "waiting"
    assert session.guest_user is None
    assert service.session_status(session.session_id)["session"]["hasGuest"] is False


def test_code_collision_is_retried() -> None:
    codes = iter(["AAAAAAAAAA", "AAAAAAAAAA", "BBBBBBBBBB"])
    service = PresenceService(store=InMemoryCoreStore(), clock=lambda: NOW, code_factory=lambda: next(codes))

    first = service.create_session(1, "party")
    second = service.create_session(2, "party")

    assert first.session_id == "AAAAAAAAAA"
    assert second.session_id == "BBBBBBBBBB"


def test_code_exhaustion_raises_conflict() -> None:
    codes = cycle(["AAAAAAAAAA"])
    service = PresenceService(store=InMemoryCoreStore(), clock=lambda: NOW, code_factory=lambda: next(codes))
    service.create_session(1, "party")

    with pytest.raises(ConflictError) as excinfo:
        service.create_session(2, "party")

    assert excinfo.value.reason == "code_exhausted"


def test_join_activates_session(service: PresenceService) -> None:
    session = service.create_session(1, "party")

    outcome = service.join_session(session.session_id, 2)

    assert outcome.ok
    assert outcome.value.status == "active"
    assert outcome.value.guest_user == 2


def test_join_failures_are_ordered(service: PresenceService) -> None:
    full = service.create_session(1, "party")
    service.join_session(full.session_id, 2)
    ended = service.create_session(3, "party")
    service.end_session(ended.session_id, 3)

    assert service.join_session("missing000", 4).reason == "not_found"
    assert service.join_session(full.session_id, 4).reason == "full"
    assert service.join_session(ended.session_id, 4).reason == "already_ended"


def test_concurrent_joins_admit_exactly_one_guest(service: PresenceService) -> None:
    session = service.create_session(1, "party")
    guests = list(range(10, 18))
    barrier = threading.Barrier(len(guests))

    def join(guest: int):
        barrier.wait()
        return service.join_session(session.session_id, guest)

    with ThreadPoolExecutor(max_workers=len(guests)) as pool:
        outcomes = list(pool.map(join, guests))

    winners = [outcome for outcome in outcomes if outcome.ok]
    assert len(winners) == 1
    assert all(outcome.reason == "full" for outcome in outcomes if not outcome.ok)
    assert service.get_session(session.session_id).guest_user == winners[0].value.guest_user


def test_end_session_is_party_only_and_idempotent(service: PresenceService) -> None:
    session = service.create_session(1, "party")
    service.join_session(session.session_id, 2)

    assert service.end_session(session.session_id, 3).reason == "not_party"

    first = service.end_session(session.session_id, 2)
    second = service.end_session(session.session_id, 1)

    assert first.ok and first.value.status == "ended"
    assert second.ok and second.value.ended_at == NOW
    assert service.end_session("missing000", 1).reason == "not_found"


def test_status_of_unknown_session(service: PresenceService) -> None:
    assert service.session_status("missing000") == {"exists": False, "session": None}


def test_active_session_lookup_ignores_ended(service: PresenceService) -> None:
    session = service.create_session(1, "party")
    assert service.get_active_session_for_user(1).session_id == session.session_id

    service.end_session(session.session_id, 1)

    assert service.get_active_session_for_user(1) is None


class _CountingStore(InMemoryCoreStore):
    def __post_init__(self) -> None:
        super().__post_init__()
        self.lookups = 0

    def get_session(self, session_id: str):
        self.lookups += 1
        return super().get_session(session_id)


@pytest.mark.parametrize("code", ["short", "abc def ghi", "abcdefghi!", "x" * 64])
def test_malformed_codes_are_unknown_without_a_store_lookup(code: str) -> None:
    store = _CountingStore()
    service = PresenceService(store=store, clock=lambda: NOW)

    assert service.join_session(code, 2).reason == "not_found"
    assert service.end_session(code, 1).reason == "not_found"
    assert service.get_session(code) is None
    assert service.session_status(code) == {"exists": False, "session": None}
    assert store.lookups == 0
