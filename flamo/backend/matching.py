"""Match state machine: directed interest edges into confirmed two-way matches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .collaborators import Notifier, SafetyGateway, notify_safely
from .engine import apply_edge_event, can_apply_edge_event
from .errors import ErrorCode
from .models import EDGE_MATCHED, EDGE_PENDING, InterestEdge, InterestResult, Outcome
from .state import utc_now
from .store import CoreStore

logger = logging.getLogger(__name__)


@dataclass
class MatchService:
    store: CoreStore
    safety: SafetyGateway | None = None
    notifier: Notifier | None = None
    clock: Callable[[], datetime] = utc_now

    def record_interest(self, from_user: int, to_user: int) -> Outcome:
        """Record that ``from_user`` likes ``to_user``.

        The duplicate check, the reverse-edge lookup and the mutual promotion
        happen inside one store call, so two crossing likes yield exactly one
        ``is_new_match``.
        """
        if from_user == to_user:
            return Outcome.failure(ErrorCode.CONFLICT, "self_interest")
        if self.safety is not None and self.safety.is_blocked(from_user, to_user):
            return Outcome.failure(ErrorCode.FORBIDDEN, "blocked")

        inserted = self.store.insert_interest(from_user, to_user, self.clock())
        if not inserted.created:
            logger.debug("Duplicate interest %s -> %s", from_user, to_user, extra={"user_id": from_user})
            return Outcome(ok=False, error=ErrorCode.CONFLICT, reason="duplicate_interest", value=inserted.edge)

        if inserted.promoted is None:
            return Outcome.success(InterestResult(edge=inserted.edge, is_new_match=False))

        match_id = inserted.promoted.edge_id
        logger.info(
            "Users %s and %s matched",
            from_user,
            to_user,
            extra={"user_id": from_user, "target_user_id": to_user, "match_id": match_id},
        )
        notify_safely(
            self.notifier,
            "New Match!",
            f"Users {from_user} and {to_user} matched.",
            match_id=match_id,
        )
        return Outcome.success(InterestResult(edge=inserted.edge, is_new_match=True, match_id=match_id))

    def respond_to_interest(self, edge_id: int, caller: int, accept: bool) -> Outcome:
        edge = self.store.get_edge_by_id(edge_id)
        if edge is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "not_found")
        if caller != edge.to_user:
            return Outcome.failure(ErrorCode.FORBIDDEN, "not_party")
        event = "ACCEPT" if accept else "DECLINE"
        if not can_apply_edge_event(edge.status, event):
            return Outcome.failure(ErrorCode.CONFLICT, "not_pending")

        if accept and self._reverse_closed(edge):
            return Outcome.failure(ErrorCode.CONFLICT, "reverse_closed")

        transition = apply_edge_event(edge.status, event)
        resolved = self.store.resolve_interest(edge_id, transition.status, self.clock())
        if resolved is None:
            # lost to a concurrent resolution, or the reverse edge closed meanwhile
            if accept and self._reverse_closed(edge):
                return Outcome.failure(ErrorCode.CONFLICT, "reverse_closed")
            return Outcome.failure(ErrorCode.CONFLICT, "not_pending")

        if resolved.status == EDGE_MATCHED:
            logger.info("Interest %s accepted", edge_id, extra={"user_id": caller, "match_id": edge_id})
            notify_safely(
                self.notifier,
                "New Match!",
                f"Users {edge.from_user} and {edge.to_user} matched.",
                match_id=edge_id,
            )
        return Outcome.success(resolved)

    def _reverse_closed(self, edge: InterestEdge) -> bool:
        """True when the recipient already declined or left the other direction."""
        reverse = self.store.get_edge(edge.to_user, edge.from_user)
        return reverse is not None and reverse.status != EDGE_MATCHED

    def unmatch(self, match_id: int, caller: int) -> Outcome:
        edge = self.store.get_edge_by_id(match_id)
        if edge is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "not_found")
        if not edge.involves(caller):
            return Outcome.failure(ErrorCode.FORBIDDEN, "not_party")
        if not can_apply_edge_event(edge.status, "UNMATCH"):
            return Outcome.failure(ErrorCode.CONFLICT, "not_matched")

        transition = apply_edge_event(edge.status, "UNMATCH")
        changed = self.store.transition_pair(edge.from_user, edge.to_user, EDGE_MATCHED, transition.status)
        if changed == 0:
            return Outcome.failure(ErrorCode.CONFLICT, "not_matched")
        logger.info("Match %s dissolved", match_id, extra={"user_id": caller, "match_id": match_id})
        return Outcome.success(self.store.get_edge_by_id(match_id))

    def force_unmatch(self, user_a: int, user_b: int) -> int:
        """Dissolve any match between the pair regardless of caller (block path)."""
        target = apply_edge_event(EDGE_MATCHED, "UNMATCH").status
        changed = self.store.transition_pair(user_a, user_b, EDGE_MATCHED, target)
        if changed:
            logger.info("Match between %s and %s dissolved by block", user_a, user_b, extra={"user_id": user_a})
        return changed

    def get_match(self, user_id: int, other_user: int) -> InterestEdge | None:
        return self.store.get_edge(user_id, other_user)

    def get_edge(self, edge_id: int) -> InterestEdge | None:
        return self.store.get_edge_by_id(edge_id)

    def list_matches(self, user_id: int) -> list[InterestEdge]:
        """One matched edge per pair: the earlier one, whose id is the match id."""
        by_pair: dict[int, InterestEdge] = {}
        for edge in self.store.list_edges(user_id, EDGE_MATCHED):
            other = edge.other_party(user_id)
            current = by_pair.get(other)
            if current is None or edge.edge_id < current.edge_id:
                by_pair[other] = edge
        return sorted(by_pair.values(), key=lambda edge: edge.edge_id)

    def pending_likes(self, user_id: int) -> list[InterestEdge]:
        return self.store.list_incoming(user_id, EDGE_PENDING)
