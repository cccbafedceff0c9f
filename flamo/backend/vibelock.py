"""VibeLock: a two-party question round per match with one agreed score."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .engine import score_answers
from .errors import ErrorCode
from .models import EDGE_MATCHED, Outcome, SyncRound
from .state import utc_now
from .store import CoreStore

logger = logging.getLogger(__name__)

QUESTION_POOL = (
    "What would we do if we got lost in Bangkok at 2am?",
    "Pick the playlist for tonight: Chill, Chaos, or Cosmic?",
    "Which of us would survive a sunrise party better?",
    "Who's more likely to end up dancing on a table?",
    "If we found a secret rooftop at 3am, who suggests staying?",
    "Who picks the after-party spot?",
    "Who's the first to suggest 'one more drink'?",
    "Who would win at karaoke?",
    "Who's more likely to make friends with strangers?",
    "Who would remember the night better?",
)

DEFAULT_UNLOCK_THRESHOLD = 70


@dataclass
class VibeLockService:
    store: CoreStore
    clock: Callable[[], datetime] = utc_now
    rng: random.Random = field(default_factory=random.Random)
    unlock_threshold: int = DEFAULT_UNLOCK_THRESHOLD

    def get_or_create_round(self, match_id: int, caller: int) -> Outcome:
        match = self.store.get_edge_by_id(match_id)
        if match is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "match_not_found")
        if not match.involves(caller):
            return Outcome.failure(ErrorCode.FORBIDDEN, "not_participant")
        if match.status != EDGE_MATCHED:
            return Outcome.failure(ErrorCode.CONFLICT, "not_matched")

        # both edges of a match open the same round, keyed on the lower edge id
        reverse = self.store.get_edge(match.to_user, match.from_user)
        if reverse is not None and reverse.status == EDGE_MATCHED and reverse.edge_id < match.edge_id:
            match = reverse
        match_id = match.edge_id

        existing = self.store.get_open_round(match_id)
        if existing is not None:
            return Outcome.success(existing)

        candidate = SyncRound(
            round_id=0,
            match_id=match_id,
            question=self.rng.choice(QUESTION_POOL),
            user1=match.from_user,
            user2=match.to_user,
            created_at=self.clock(),
        )
        created = self.store.create_round_if_absent(candidate)
        logger.info("VibeLock round %s open", created.round_id, extra={"match_id": match_id, "round_id": created.round_id})
        return Outcome.success(created)

    def get_round(self, round_id: int, caller: int) -> Outcome:
        sync_round = self.store.get_round(round_id)
        if sync_round is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "not_found")
        if sync_round.slot_for(caller) is None:
            return Outcome.failure(ErrorCode.FORBIDDEN, "not_participant")
        return Outcome.success(sync_round)

    def submit_answer(self, round_id: int, caller: int, answer: str) -> Outcome:
        """Store the caller's answer; the submission that completes the pair scores it.

        The score is written by a conditional update guarded on the round still
        being open with the exact answers it was computed from. A writer that
        loses that update re-reads and returns the winner's score.
        """
        sync_round = self.store.get_round(round_id)
        if sync_round is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "not_found")
        slot = sync_round.slot_for(caller)
        if slot is None:
            return Outcome.failure(ErrorCode.FORBIDDEN, "not_participant")

        written = self.store.write_answer(round_id, slot, answer)
        if written is None:
            completed = self.store.get_round(round_id)
            if completed is not None and completed.answer_in(slot) == answer:
                return Outcome.success(completed)
            return Outcome.failure(ErrorCode.CONFLICT, "round_completed")

        current = written
        while not current.completed and current.answer1 is not None and current.answer2 is not None:
            score = score_answers(current.answer1, current.answer2, self.rng)
            if self.store.complete_round(round_id, current.answer1, current.answer2, score):
                logger.info(
                    "VibeLock round %s scored %s",
                    round_id,
                    score,
                    extra={"round_id": round_id, "match_id": current.match_id},
                )
                if score >= self.unlock_threshold:
                    self.store.unlock_pair_chat(current.user1, current.user2)
                    logger.info("Chat unlocked for match %s", current.match_id, extra={"match_id": current.match_id})
                break
            logger.debug("Round %s completion raced; re-reading", round_id, extra={"round_id": round_id})
            current = self.store.get_round(round_id)

        return Outcome.success(self.store.get_round(round_id))
