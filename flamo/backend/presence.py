"""Presence pairing: one host and at most one guest in a shared-mode session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .engine import apply_session_event
from .errors import ConflictError, ErrorCode
from .models import SESSION_ENDED, SESSION_WAITING, Outcome, PresenceSession
from .security import generate_session_code, is_session_code
from .state import build_presence_status, utc_now
from .store import CoreStore

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5


@dataclass
class PresenceService:
    store: CoreStore
    clock: Callable[[], datetime] = utc_now
    code_factory: Callable[[], str] = generate_session_code

    def create_session(self, host_user: int, mode_id: str) -> PresenceSession:
        """Insert a waiting session under a fresh public code."""
        for _ in range(MAX_CODE_ATTEMPTS):
            session = PresenceSession(
                session_id=self.code_factory(),
                host_user=host_user,
                mode_id=mode_id,
                status=SESSION_WAITING,
                created_at=self.clock(),
            )
            if self.store.insert_session(session):
                logger.info(
                    "Presence session %s opened for mode %s",
                    session.session_id,
                    mode_id,
                    extra={"user_id": host_user, "session_id": session.session_id},
                )
                return session
            logger.debug("Session code collision on %s", session.session_id)
        raise ConflictError("Could not allocate a unique session code", reason="code_exhausted")

    def _lookup(self, session_id: str) -> PresenceSession | None:
        # malformed codes never reach the store
        if not is_session_code(session_id):
            return None
        return self.store.get_session(session_id)

    def join_session(self, session_id: str, guest_user: int) -> Outcome:
        session = self._lookup(session_id)
        if session is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "not_found")
        if session.status == SESSION_ENDED:
            return Outcome.failure(ErrorCode.CONFLICT, "already_ended")
        if session.has_guest:
            return Outcome.failure(ErrorCode.CONFLICT, "full")

        apply_session_event(session.status, "JOIN")
        if not self.store.assign_guest(session_id, guest_user):
            current = self.store.get_session(session_id)
            if current is not None and current.status == SESSION_ENDED:
                return Outcome.failure(ErrorCode.CONFLICT, "already_ended")
            logger.debug("Join of %s lost the race", session_id, extra={"session_id": session_id})
            return Outcome.failure(ErrorCode.CONFLICT, "full")

        logger.info("User %s joined %s", guest_user, session_id, extra={"user_id": guest_user, "session_id": session_id})
        return Outcome.success(self.store.get_session(session_id))

    def end_session(self, session_id: str, caller: int) -> Outcome:
        session = self._lookup(session_id)
        if session is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "not_found")
        if not session.is_party(caller):
            return Outcome.failure(ErrorCode.FORBIDDEN, "not_party")
        if session.status != SESSION_ENDED:
            apply_session_event(session.status, "END")
            if self.store.end_session(session_id, self.clock()):
                logger.info("Presence session %s ended", session_id, extra={"user_id": caller, "session_id": session_id})
        return Outcome.success(self.store.get_session(session_id))

    def get_session(self, session_id: str) -> PresenceSession | None:
        return self._lookup(session_id)

    def session_status(self, session_id: str) -> dict[str, Any]:
        return build_presence_status(self._lookup(session_id))

    def get_active_session_for_user(self, user_id: int) -> PresenceSession | None:
        return self.store.find_open_session(user_id)
