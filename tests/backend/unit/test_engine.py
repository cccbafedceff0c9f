import random

import pytest

from flamo.backend.engine import apply_edge_event, apply_session_event, can_apply_edge_event, score_answers
from flamo.backend.errors import ConflictError


@pytest.mark.parametrize(
    ("status", "event", "expected"),
    [
        ("pending", "MUTUAL", "matched"),
        ("pending", "ACCEPT", "matched"),
        ("pending", "DECLINE", "declined"),
        ("matched", "UNMATCH", "unmatched"),
    ],
)
def test_apply_edge_event_follows_transition_table(status: str, event: str, expected: str) -> None:
    transition = apply_edge_event(status, event)

    assert transition.previous == status
    assert transition.status == expected


def test_apply_edge_event_normalizes_event_case() -> None:
    assert apply_edge_event("pending", "accept").event == "ACCEPT"


@pytest.mark.parametrize(
    ("status", "event"),
    [
        ("declined", "ACCEPT"),
        ("unmatched", "UNMATCH"),
        ("matched", "DECLINE"),
        ("pending", "UNMATCH"),
    ],
)
def test_apply_edge_event_rejects_illegal_moves(status: str, event: str) -> None:
    with pytest.raises(ConflictError) as excinfo:
        apply_edge_event(status, event)

    assert excinfo.value.reason == "illegal_transition"
    assert excinfo.value.http_status == 409


def test_can_apply_edge_event_reports_without_raising() -> None:
    assert can_apply_edge_event("pending", "decline")
    assert not can_apply_edge_event("declined", "ACCEPT")


def test_session_events_only_move_forward() -> None:
    assert apply_session_event("waiting", "JOIN").status == "active"
    assert apply_session_event("waiting", "END").status == "ended"
    assert apply_session_event("active", "END").status == "ended"

    with pytest.raises(ConflictError):
        apply_session_event("active", "JOIN")
    with pytest.raises(ConflictError):
        apply_session_event("ended", "END")


def test_score_answers_uses_high_band_for_matching_answers() -> None:
    rng = random.Random(7)

    scores = [score_answers("You", "You", rng) for _ in range(200)]

    assert min(scores) >= 85
    assert max(scores) <= 100


def test_score_answers_uses_low_band_for_differing_answers() -> None:
    rng = random.Random(7)

    scores = [score_answers("You", "Them", rng) for _ in range(200)]

    assert min(scores) >= 60
    assert max(scores) <= 80
