"""Pure transition tables for interest edges, presence sessions and VibeLock scoring."""

from __future__ import annotations

import random
from dataclasses import dataclass

from .errors import ConflictError
from .models import (
    EDGE_DECLINED,
    EDGE_MATCHED,
    EDGE_PENDING,
    EDGE_UNMATCHED,
    SESSION_ACTIVE,
    SESSION_ENDED,
    SESSION_WAITING,
)


EDGE_TRANSITIONS: dict[tuple[str, str], str] = {
    (EDGE_PENDING, "MUTUAL"): EDGE_MATCHED,
    (EDGE_PENDING, "ACCEPT"): EDGE_MATCHED,
    (EDGE_PENDING, "DECLINE"): EDGE_DECLINED,
    (EDGE_MATCHED, "UNMATCH"): EDGE_UNMATCHED,
}

SESSION_TRANSITIONS: dict[tuple[str, str], str] = {
    (SESSION_WAITING, "JOIN"): SESSION_ACTIVE,
    (SESSION_WAITING, "END"): SESSION_ENDED,
    (SESSION_ACTIVE, "END"): SESSION_ENDED,
}

MATCH_BAND = (85, 100)
MISMATCH_BAND = (60, 80)


@dataclass(frozen=True)
class Transition:
    previous: str
    event: str
    status: str


def apply_edge_event(status: str, event: str) -> Transition:
    """Return the edge transition for ``event`` or raise ConflictError."""
    return _apply(EDGE_TRANSITIONS, status, event, record="interest edge")


def apply_session_event(status: str, event: str) -> Transition:
    """Return the session transition for ``event`` or raise ConflictError."""
    return _apply(SESSION_TRANSITIONS, status, event, record="presence session")


def can_apply_edge_event(status: str, event: str) -> bool:
    return (status, event.upper()) in EDGE_TRANSITIONS


def _apply(table: dict[tuple[str, str], str], status: str, event: str, record: str) -> Transition:
    event_type = str(event).upper()
    target = table.get((status, event_type))
    if target is None:
        raise ConflictError(f"{event_type} is not allowed for {record} in status {status}", reason="illegal_transition")
    return Transition(previous=status, event=event_type, status=target)


def score_answers(answer1: str, answer2: str, rng: random.Random | None = None) -> int:
    """Draw a compatibility score; matching answers land in the high band."""
    generator = rng if rng is not None else random
    low, high = MATCH_BAND if answer1 == answer2 else MISMATCH_BAND
    return generator.randint(low, high)
