import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from flamo.backend.matching import MatchService
from flamo.backend.store import InMemoryCoreStore
from flamo.backend.vibelock import QUESTION_POOL, VibeLockService

NOW = datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc)


@pytest.fixture
def store() -> InMemoryCoreStore:
    return InMemoryCoreStore()


@pytest.fixture
def match_id(store: InMemoryCoreStore) -> int:
    matches = MatchService(store=store, clock=lambda: NOW)
    matches.record_interest(1, 2)
    return matches.record_interest(2, 1).value.match_id


@pytest.fixture
def service(store: InMemoryCoreStore) -> VibeLockService:
    return VibeLockService(store=store, clock=lambda: NOW, rng=random.Random(3))


def test_round_is_created_once_per_match(service: VibeLockService, match_id: int) -> None:
    first = service.get_or_create_round(match_id, caller=1)
    second = service.get_or_create_round(match_id, caller=2)

    assert first.ok and second.ok
    assert first.value.round_id == second.value.round_id
    assert first.value.question in QUESTION_POOL
    assert (first.value.user1, first.value.user2) == (1, 2)


def test_both_edges_of_a_match_open_the_same_round(
    service: VibeLockService, store: InMemoryCoreStore, match_id: int
) -> None:
    own_edge = store.get_edge(1, 2).edge_id
    their_edge = store.get_edge(2, 1).edge_id
    assert own_edge != their_edge

    first = service.get_or_create_round(own_edge, caller=1).value
    second = service.get_or_create_round(their_edge, caller=2).value

    assert first.round_id == second.round_id
    assert first.match_id == second.match_id == min(own_edge, their_edge) == match_id

    service.submit_answer(first.round_id, 1, "You")
    outcome = service.submit_answer(second.round_id, 2, "You")

    assert outcome.value.completed is True
    assert store.get_edge(1, 2).chat_unlocked is True


def test_accepted_match_opens_one_round_from_either_side(service: VibeLockService, store: InMemoryCoreStore) -> None:
    matches = MatchService(store=store, clock=lambda: NOW)
    edge = matches.record_interest(3, 4).value.edge
    matches.respond_to_interest(edge.edge_id, caller=4, accept=True)
    reverse = store.get_edge(4, 3)

    opened_by_recipient = service.get_or_create_round(reverse.edge_id, caller=4).value
    opened_by_sender = service.get_or_create_round(edge.edge_id, caller=3).value

    assert opened_by_recipient.round_id == opened_by_sender.round_id
    assert opened_by_recipient.match_id == edge.edge_id
    assert (opened_by_recipient.user1, opened_by_recipient.user2) == (3, 4)


def test_round_requires_a_matched_participant(service: VibeLockService, store: InMemoryCoreStore, match_id: int) -> None:
    pending = MatchService(store=store, clock=lambda: NOW).record_interest(5, 6).value.edge

    assert service.get_or_create_round(match_id, caller=9).reason == "not_participant"
    assert service.get_or_create_round(pending.edge_id, caller=5).reason == "not_matched"
    assert service.get_or_create_round(999, caller=1).reason == "match_not_found"


def test_first_answer_leaves_round_open(service: VibeLockService, match_id: int) -> None:
    sync_round = service.get_or_create_round(match_id, 1).value

    outcome = service.submit_answer(sync_round.round_id, 1, "You")

    assert outcome.ok
    assert outcome.value.completed is False
    assert outcome.value.score is None


def test_matching_answers_score_high_and_unlock_chat(
    service: VibeLockService, store: InMemoryCoreStore, match_id: int
) -> None:
    sync_round = service.get_or_create_round(match_id, 1).value
    service.submit_answer(sync_round.round_id, 1, "Them")

    outcome = service.submit_answer(sync_round.round_id, 2, "Them")

    assert outcome.value.completed is True
    assert 85 <= outcome.value.score <= 100
    assert store.get_edge(1, 2).chat_unlocked is True
    assert store.get_edge(2, 1).chat_unlocked is True


def test_differing_answers_score_low_band(store: InMemoryCoreStore, match_id: int) -> None:
    service = VibeLockService(store=store, clock=lambda: NOW, rng=random.Random(1), unlock_threshold=81)
    sync_round = service.get_or_create_round(match_id, 1).value
    service.submit_answer(sync_round.round_id, 1, "You")

    outcome = service.submit_answer(sync_round.round_id, 2, "Them")

    assert 60 <= outcome.value.score <= 80
    assert store.get_edge(1, 2).chat_unlocked is False


def test_completed_round_rejects_changed_answer(service: VibeLockService, match_id: int) -> None:
    sync_round = service.get_or_create_round(match_id, 1).value
    service.submit_answer(sync_round.round_id, 1, "You")
    done = service.submit_answer(sync_round.round_id, 2, "You").value

    same = service.submit_answer(sync_round.round_id, 1, "You")
    changed = service.submit_answer(sync_round.round_id, 1, "Them")

    assert same.ok and same.value.score == done.score
    assert (changed.error, changed.reason) == ("conflict", "round_completed")


def test_new_round_opens_after_completion(service: VibeLockService, match_id: int) -> None:
    first = service.get_or_create_round(match_id, 1).value
    service.submit_answer(first.round_id, 1, "You")
    service.submit_answer(first.round_id, 2, "You")

    second = service.get_or_create_round(match_id, 2).value

    assert second.round_id != first.round_id
    assert second.completed is False


def test_outsider_cannot_answer(service: VibeLockService, match_id: int) -> None:
    sync_round = service.get_or_create_round(match_id, 1).value

    assert service.submit_answer(sync_round.round_id, 7, "You").reason == "not_participant"
    assert service.submit_answer(12345, 1, "You").reason == "not_found"


def test_simultaneous_final_answers_agree_on_one_score(store: InMemoryCoreStore, match_id: int) -> None:
    for _ in range(20):
        service = VibeLockService(store=store, clock=lambda: NOW)
        sync_round = service.get_or_create_round(match_id, 1).value
        barrier = threading.Barrier(2)

        def answer(caller: int):
            barrier.wait()
            return service.submit_answer(sync_round.round_id, caller, "You")

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(answer, [1, 2]))

        scores = {outcome.value.score for outcome in outcomes if outcome.value.completed}
        assert len(scores) == 1
        assert store.get_round(sync_round.round_id).score in scores
