from datetime import datetime, timezone

import pytest

from flamo.backend.collaborators import StoreSafety
from flamo.backend.matching import MatchService
from flamo.backend.store import InMemoryCoreStore

NOW = datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc)


class _RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []

    def notify(self, title: str, content: str, **fields) -> None:
        self.sent.append((title, fields))


class _BrokenNotifier:
    def notify(self, title: str, content: str, **fields) -> None:
        raise ConnectionError("webhook down")


@pytest.fixture
def service() -> MatchService:
    return MatchService(store=InMemoryCoreStore(), clock=lambda: NOW)


def test_one_sided_interest_stays_pending(service: MatchService) -> None:
    outcome = service.record_interest(1, 2)

    assert outcome.ok
    assert outcome.value.is_new_match is False
    assert outcome.value.edge.status == "pending"
    assert [edge.from_user for edge in service.pending_likes(2)] == [1]


def test_mutual_interest_creates_match() -> None:
    notifier = _RecordingNotifier()
    service = MatchService(store=InMemoryCoreStore(), notifier=notifier, clock=lambda: NOW)
    first = service.record_interest(1, 2).value

    outcome = service.record_interest(2, 1)

    assert outcome.ok
    assert outcome.value.is_new_match is True
    assert outcome.value.match_id == first.edge.edge_id
    assert service.get_match(1, 2).status == "matched"
    assert service.get_match(2, 1).status == "matched"
    assert [title for title, _ in notifier.sent] == ["New Match!"]


def test_self_interest_is_rejected(service: MatchService) -> None:
    outcome = service.record_interest(3, 3)

    assert not outcome.ok
    assert (outcome.error, outcome.reason) == ("conflict", "self_interest")


def test_duplicate_interest_returns_existing_edge(service: MatchService) -> None:
    first = service.record_interest(1, 2).value

    outcome = service.record_interest(1, 2)

    assert not outcome.ok
    assert outcome.reason == "duplicate_interest"
    assert outcome.value.edge_id == first.edge.edge_id


def test_blocked_pair_cannot_like() -> None:
    store = InMemoryCoreStore()
    safety = StoreSafety(store=store, clock=lambda: NOW)
    safety.block(2, 1)
    service = MatchService(store=store, safety=safety, clock=lambda: NOW)

    outcome = service.record_interest(1, 2)

    assert (outcome.error, outcome.reason) == ("forbidden", "blocked")


def test_accept_and_decline_are_recipient_only(service: MatchService) -> None:
    edge = service.record_interest(1, 2).value.edge

    assert service.respond_to_interest(edge.edge_id, caller=1, accept=True).reason == "not_party"

    accepted = service.respond_to_interest(edge.edge_id, caller=2, accept=True)
    again = service.respond_to_interest(edge.edge_id, caller=2, accept=False)

    assert accepted.ok and accepted.value.status == "matched"
    assert (again.error, again.reason) == ("conflict", "not_pending")
    assert [edge.other_party(1) for edge in service.list_matches(1)] == [2]


def test_decline_is_terminal(service: MatchService) -> None:
    edge = service.record_interest(1, 2).value.edge

    declined = service.respond_to_interest(edge.edge_id, caller=2, accept=False)

    assert declined.value.status == "declined"
    assert service.respond_to_interest(edge.edge_id, caller=2, accept=True).reason == "not_pending"
    assert service.list_matches(2) == []


def test_accept_refused_when_recipient_declined_other_direction(service: MatchService) -> None:
    incoming = service.record_interest(2, 1).value.edge
    service.respond_to_interest(incoming.edge_id, caller=1, accept=False)
    outgoing = service.record_interest(1, 2).value.edge
    assert outgoing.status == "pending"

    outcome = service.respond_to_interest(outgoing.edge_id, caller=2, accept=True)

    assert (outcome.error, outcome.reason) == ("conflict", "reverse_closed")
    assert service.store.get_edge(1, 2).status == "pending"
    assert service.store.get_edge(2, 1).status == "declined"
    assert service.list_matches(1) == []
    assert service.list_matches(2) == []


def test_decline_still_allowed_when_other_direction_closed(service: MatchService) -> None:
    incoming = service.record_interest(2, 1).value.edge
    service.respond_to_interest(incoming.edge_id, caller=1, accept=False)
    outgoing = service.record_interest(1, 2).value.edge

    outcome = service.respond_to_interest(outgoing.edge_id, caller=2, accept=False)

    assert outcome.ok and outcome.value.status == "declined"


def test_respond_to_unknown_edge(service: MatchService) -> None:
    assert service.respond_to_interest(404, caller=1, accept=True).error == "not_found"


def test_unmatch_dissolves_both_directions(service: MatchService) -> None:
    service.record_interest(1, 2)
    match_id = service.record_interest(2, 1).value.match_id

    assert service.unmatch(match_id, caller=3).reason == "not_party"

    outcome = service.unmatch(match_id, caller=2)

    assert outcome.ok and outcome.value.status == "unmatched"
    assert service.get_match(2, 1).status == "unmatched"
    assert service.unmatch(match_id, caller=1).reason == "not_matched"
    assert service.list_matches(1) == []


def test_list_matches_reports_each_pair_once(service: MatchService) -> None:
    service.record_interest(1, 2)
    service.record_interest(2, 1)
    service.record_interest(3, 1)
    service.record_interest(1, 3)

    matches = service.list_matches(1)

    assert sorted(edge.other_party(1) for edge in matches) == [2, 3]


def test_block_dissolves_existing_match() -> None:
    store = InMemoryCoreStore()
    service = MatchService(store=store, clock=lambda: NOW)
    safety = StoreSafety(store=store, on_block=service.force_unmatch, clock=lambda: NOW)
    service.safety = safety
    service.record_interest(1, 2)
    service.record_interest(2, 1)

    safety.block(1, 2)

    assert store.get_edge(1, 2).status == "unmatched"
    assert store.get_edge(2, 1).status == "unmatched"


def test_notifier_failure_does_not_fail_the_match(caplog) -> None:
    service = MatchService(store=InMemoryCoreStore(), notifier=_BrokenNotifier(), clock=lambda: NOW)
    service.record_interest(1, 2)

    outcome = service.record_interest(2, 1)

    assert outcome.ok and outcome.value.is_new_match
    assert "could not be delivered" in caplog.text
