"""Persistence interfaces and implementations for the matching and entitlement core.

Every method that the services rely on for atomicity is a single conditional
write: the in-memory store performs it under one lock, the PostgreSQL store as
one statement (or one transaction holding a pair-scoped advisory lock).
"""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterator, Protocol

from .entitlements import grant_is_active
from .errors import StoreUnavailableError
from .models import (
    EDGE_MATCHED,
    EDGE_PENDING,
    GRANT_ACTIVE,
    GRANT_CANCELLED,
    KIND_CHAT_UNLOCK,
    KIND_SUBSCRIPTION,
    SESSION_ACTIVE,
    SESSION_ENDED,
    SESSION_WAITING,
    EntitlementGrant,
    InterestEdge,
    InterestInsert,
    PresenceSession,
    SyncRound,
)

logger = logging.getLogger(__name__)


class CoreStore(Protocol):
    # interest edges
    def insert_interest(self, from_user: int, to_user: int, now: datetime) -> InterestInsert:
        """Insert (from, to); promote a pending reverse edge to matched in the same unit."""

    def get_edge(self, from_user: int, to_user: int) -> InterestEdge | None:
        """Return the directed edge for the ordered pair."""

    def get_edge_by_id(self, edge_id: int) -> InterestEdge | None:
        """Return an edge by id."""

    def resolve_interest(self, edge_id: int, status: str, now: datetime) -> InterestEdge | None:
        """Move a pending edge to ``status``; None when it was no longer pending."""

    def transition_pair(self, user_a: int, user_b: int, expected: str, status: str) -> int:
        """Move both edges of a pair from ``expected`` to ``status``; return rows changed."""

    def unlock_pair_chat(self, user_a: int, user_b: int) -> int:
        """Set the chat-unlock flag on both edges of a pair."""

    def list_edges(self, user_id: int, status: str) -> list[InterestEdge]:
        """Return edges with ``status`` that involve ``user_id``."""

    def list_incoming(self, user_id: int, status: str) -> list[InterestEdge]:
        """Return edges with ``status`` pointing at ``user_id``."""

    # entitlement grants
    def insert_grant(self, grant: EntitlementGrant) -> EntitlementGrant:
        """Insert a grant; the store assigns ``grant_id``."""

    def insert_chat_unlock(self, grant: EntitlementGrant) -> tuple[EntitlementGrant, bool]:
        """Insert a chat unlock unless one exists for the same scope; return (grant, created)."""

    def insert_subscription_unless_active(self, grant: EntitlementGrant, now: datetime) -> EntitlementGrant | None:
        """Insert a subscription when no active one exists; None otherwise."""

    def list_grants(self, owner_user: int, kind: str, scope_key: str | None = None) -> list[EntitlementGrant]:
        """Return non-cancelled grants of ``kind`` for the owner, optionally for one scope."""

    def cancel_grant(self, grant_id: int) -> bool:
        """Move an active grant to cancelled."""

    def use_grant(self, grant_id: int, owner_user: int) -> bool:
        """Decrement ``remaining_uses`` by one when it is still positive."""

    # consumable balance
    def add_balance(self, owner_user: int, amount: int) -> int:
        """Relative increment; returns the new balance."""

    def consume_balance(self, owner_user: int) -> bool:
        """Relative decrement by one when the balance is positive."""

    def get_balance(self, owner_user: int) -> int:
        """Return the current balance (0 when the user has no counter)."""

    # presence sessions
    def insert_session(self, session: PresenceSession) -> bool:
        """Insert a session; False when the public id is already taken."""

    def get_session(self, session_id: str) -> PresenceSession | None:
        """Return a session by public id."""

    def assign_guest(self, session_id: str, guest_user: int) -> bool:
        """Set the guest once, guarded by the guest still being absent."""

    def end_session(self, session_id: str, now: datetime) -> bool:
        """End a session unless it has already ended."""

    def find_open_session(self, user_id: int) -> PresenceSession | None:
        """Return a non-ended session hosted or joined by ``user_id``."""

    # sync rounds
    def get_open_round(self, match_id: int) -> SyncRound | None:
        """Return the non-completed round of a match."""

    def create_round_if_absent(self, sync_round: SyncRound) -> SyncRound:
        """Insert a round unless the match already has an open one; return the open round."""

    def get_round(self, round_id: int) -> SyncRound | None:
        """Return a round by id."""

    def write_answer(self, round_id: int, slot: int, answer: str) -> SyncRound | None:
        """Write an answer slot while the round is open; None when it has completed."""

    def complete_round(self, round_id: int, answer1: str, answer2: str, score: int) -> bool:
        """Complete the round once, guarded on it being open with exactly these answers."""

    # safety blocks
    def add_block(self, blocker: int, blocked: int, now: datetime) -> bool:
        """Record that ``blocker`` blocked ``blocked``; False when it was already recorded."""

    def remove_block(self, blocker: int, blocked: int) -> bool:
        """Drop a block; False when there was none."""

    def list_blocked(self, blocker: int) -> list[int]:
        """Return the users ``blocker`` has blocked, ascending."""

    def is_blocked(self, user_a: int, user_b: int) -> bool:
        """True when either user has blocked the other."""


def _pair_lock_key(user_a: int, user_b: int) -> str:
    """Text key for the unordered pair, hashed to one bigint by ``hashtextextended``."""
    return f"{min(user_a, user_b)}:{max(user_a, user_b)}"


@dataclass
class InMemoryCoreStore:
    """Process-local store for tests and single-process development."""

    def __post_init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._edges: dict[int, InterestEdge] = {}
        self._edge_index: dict[tuple[int, int], int] = {}
        self._grants: dict[int, EntitlementGrant] = {}
        self._balances: dict[int, int] = {}
        self._sessions: dict[str, PresenceSession] = {}
        self._rounds: dict[int, SyncRound] = {}
        self._blocks: set[tuple[int, int]] = set()

    def insert_interest(self, from_user: int, to_user: int, now: datetime) -> InterestInsert:
        with self._lock:
            existing = self.get_edge(from_user, to_user)
            if existing is not None:
                return InterestInsert(edge=existing, created=False)

            reverse = self.get_edge(to_user, from_user)
            if reverse is not None and reverse.status == EDGE_PENDING:
                promoted = replace(reverse, status=EDGE_MATCHED, matched_at=now)
                self._edges[promoted.edge_id] = promoted
                edge = self._add_edge(from_user, to_user, EDGE_MATCHED, now, matched_at=now)
                return InterestInsert(edge=edge, created=True, promoted=promoted)

            edge = self._add_edge(from_user, to_user, EDGE_PENDING, now)
            return InterestInsert(edge=edge, created=True)

    def _add_edge(
        self, from_user: int, to_user: int, status: str, now: datetime, matched_at: datetime | None = None
    ) -> InterestEdge:
        edge = InterestEdge(
            edge_id=next(self._ids),
            from_user=from_user,
            to_user=to_user,
            status=status,
            created_at=now,
            matched_at=matched_at,
        )
        self._edges[edge.edge_id] = edge
        self._edge_index[(from_user, to_user)] = edge.edge_id
        return edge

    def get_edge(self, from_user: int, to_user: int) -> InterestEdge | None:
        with self._lock:
            edge_id = self._edge_index.get((from_user, to_user))
            return self._edges.get(edge_id) if edge_id is not None else None

    def get_edge_by_id(self, edge_id: int) -> InterestEdge | None:
        with self._lock:
            return self._edges.get(edge_id)

    def resolve_interest(self, edge_id: int, status: str, now: datetime) -> InterestEdge | None:
        with self._lock:
            edge = self._edges.get(edge_id)
            if edge is None or edge.status != EDGE_PENDING:
                return None
            if status != EDGE_MATCHED:
                resolved = replace(edge, status=status)
                self._edges[edge_id] = resolved
                return resolved
            reverse = self.get_edge(edge.to_user, edge.from_user)
            if reverse is not None and reverse.status != EDGE_MATCHED:
                return None
            resolved = replace(edge, status=EDGE_MATCHED, matched_at=now)
            self._edges[edge_id] = resolved
            if reverse is None:
                self._add_edge(edge.to_user, edge.from_user, EDGE_MATCHED, now, matched_at=now)
            return resolved

    def transition_pair(self, user_a: int, user_b: int, expected: str, status: str) -> int:
        changed = 0
        with self._lock:
            for key in ((user_a, user_b), (user_b, user_a)):
                edge = self.get_edge(*key)
                if edge is not None and edge.status == expected:
                    self._edges[edge.edge_id] = replace(edge, status=status)
                    changed += 1
        return changed

    def unlock_pair_chat(self, user_a: int, user_b: int) -> int:
        changed = 0
        with self._lock:
            for key in ((user_a, user_b), (user_b, user_a)):
                edge = self.get_edge(*key)
                if edge is not None:
                    self._edges[edge.edge_id] = replace(edge, chat_unlocked=True)
                    changed += 1
        return changed

    def list_edges(self, user_id: int, status: str) -> list[InterestEdge]:
        with self._lock:
            return sorted(
                (edge for edge in self._edges.values() if edge.involves(user_id) and edge.status == status),
                key=lambda edge: edge.edge_id,
            )

    def list_incoming(self, user_id: int, status: str) -> list[InterestEdge]:
        with self._lock:
            return sorted(
                (edge for edge in self._edges.values() if edge.to_user == user_id and edge.status == status),
                key=lambda edge: edge.edge_id,
            )

    def insert_grant(self, grant: EntitlementGrant) -> EntitlementGrant:
        with self._lock:
            stored = replace(grant, grant_id=next(self._ids))
            self._grants[stored.grant_id] = stored
            return stored

    def insert_chat_unlock(self, grant: EntitlementGrant) -> tuple[EntitlementGrant, bool]:
        with self._lock:
            existing = self.list_grants(grant.owner_user, KIND_CHAT_UNLOCK, grant.scope_key)
            if existing:
                return existing[0], False
            return self.insert_grant(grant), True

    def insert_subscription_unless_active(self, grant: EntitlementGrant, now: datetime) -> EntitlementGrant | None:
        with self._lock:
            current = self.list_grants(grant.owner_user, KIND_SUBSCRIPTION)
            if any(grant_is_active(candidate, now) for candidate in current):
                return None
            return self.insert_grant(grant)

    def list_grants(self, owner_user: int, kind: str, scope_key: str | None = None) -> list[EntitlementGrant]:
        with self._lock:
            return sorted(
                (
                    grant
                    for grant in self._grants.values()
                    if grant.owner_user == owner_user
                    and grant.kind == kind
                    and grant.status != GRANT_CANCELLED
                    and (scope_key is None or grant.scope_key == scope_key)
                ),
                key=lambda grant: grant.grant_id,
            )

    def cancel_grant(self, grant_id: int) -> bool:
        with self._lock:
            grant = self._grants.get(grant_id)
            if grant is None or grant.status != GRANT_ACTIVE:
                return False
            self._grants[grant_id] = replace(grant, status=GRANT_CANCELLED)
            return True

    def use_grant(self, grant_id: int, owner_user: int) -> bool:
        with self._lock:
            grant = self._grants.get(grant_id)
            if grant is None or grant.owner_user != owner_user or grant.status != GRANT_ACTIVE:
                return False
            if grant.remaining_uses is None or grant.remaining_uses <= 0:
                return False
            self._grants[grant_id] = replace(grant, remaining_uses=grant.remaining_uses - 1)
            return True

    def add_balance(self, owner_user: int, amount: int) -> int:
        with self._lock:
            self._balances[owner_user] = self._balances.get(owner_user, 0) + amount
            return self._balances[owner_user]

    def consume_balance(self, owner_user: int) -> bool:
        with self._lock:
            if self._balances.get(owner_user, 0) <= 0:
                return False
            self._balances[owner_user] -= 1
            return True

    def get_balance(self, owner_user: int) -> int:
        with self._lock:
            return self._balances.get(owner_user, 0)

    def insert_session(self, session: PresenceSession) -> bool:
        with self._lock:
            if session.session_id in self._sessions:
                return False
            self._sessions[session.session_id] = session
            return True

    def get_session(self, session_id: str) -> PresenceSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def assign_guest(self, session_id: str, guest_user: int) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.guest_user is not None or session.status != SESSION_WAITING:
                return False
            self._sessions[session_id] = replace(session, guest_user=guest_user, status=SESSION_ACTIVE)
            return True

    def end_session(self, session_id: str, now: datetime) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status == SESSION_ENDED:
                return False
            self._sessions[session_id] = replace(session, status=SESSION_ENDED, ended_at=now)
            return True

    def find_open_session(self, user_id: int) -> PresenceSession | None:
        with self._lock:
            candidates = [
                session
                for session in self._sessions.values()
                if session.status != SESSION_ENDED and session.is_party(user_id)
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda session: session.created_at)

    def get_open_round(self, match_id: int) -> SyncRound | None:
        with self._lock:
            for sync_round in self._rounds.values():
                if sync_round.match_id == match_id and not sync_round.completed:
                    return sync_round
            return None

    def create_round_if_absent(self, sync_round: SyncRound) -> SyncRound:
        with self._lock:
            existing = self.get_open_round(sync_round.match_id)
            if existing is not None:
                return existing
            stored = replace(sync_round, round_id=next(self._ids))
            self._rounds[stored.round_id] = stored
            return stored

    def get_round(self, round_id: int) -> SyncRound | None:
        with self._lock:
            return self._rounds.get(round_id)

    def write_answer(self, round_id: int, slot: int, answer: str) -> SyncRound | None:
        with self._lock:
            sync_round = self._rounds.get(round_id)
            if sync_round is None or sync_round.completed:
                return None
            field = "answer1" if slot == 1 else "answer2"
            updated = replace(sync_round, **{field: answer})
            self._rounds[round_id] = updated
            return updated

    def complete_round(self, round_id: int, answer1: str, answer2: str, score: int) -> bool:
        with self._lock:
            sync_round = self._rounds.get(round_id)
            if sync_round is None or sync_round.completed:
                return False
            if sync_round.answer1 != answer1 or sync_round.answer2 != answer2:
                return False
            self._rounds[round_id] = replace(sync_round, score=score, completed=True)
            return True

    def add_block(self, blocker: int, blocked: int, now: datetime) -> bool:
        with self._lock:
            if (blocker, blocked) in self._blocks:
                return False
            self._blocks.add((blocker, blocked))
            return True

    def remove_block(self, blocker: int, blocked: int) -> bool:
        with self._lock:
            if (blocker, blocked) not in self._blocks:
                return False
            self._blocks.discard((blocker, blocked))
            return True

    def list_blocked(self, blocker: int) -> list[int]:
        with self._lock:
            return sorted(blocked for owner, blocked in self._blocks if owner == blocker)

    def is_blocked(self, user_a: int, user_b: int) -> bool:
        with self._lock:
            return (user_a, user_b) in self._blocks or (user_b, user_a) in self._blocks


# one bigint key per unordered pair; the two-int4 overload would overflow on BIGINT user ids
_PAIR_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))"

_EDGE_COLUMNS = "id, from_user, to_user, status, created_at, matched_at, chat_unlocked"
_GRANT_COLUMNS = (
    "id, owner_user, kind, scope_key, plan, expires_at, remaining_uses, multiplier, status, created_at"
)
_SESSION_COLUMNS = "session_id, host_user, guest_user, mode_id, status, created_at, ended_at"
_ROUND_COLUMNS = "id, match_id, question, user1, user2, answer1, answer2, score, completed, created_at"


def _edge_from_row(row: dict[str, Any]) -> InterestEdge:
    return InterestEdge(
        edge_id=row["id"],
        from_user=row["from_user"],
        to_user=row["to_user"],
        status=row["status"],
        created_at=row["created_at"],
        matched_at=row["matched_at"],
        chat_unlocked=bool(row["chat_unlocked"]),
    )


def _grant_from_row(row: dict[str, Any]) -> EntitlementGrant:
    return EntitlementGrant(
        grant_id=row["id"],
        owner_user=row["owner_user"],
        kind=row["kind"],
        created_at=row["created_at"],
        scope_key=row["scope_key"],
        plan=row["plan"],
        expires_at=row["expires_at"],
        remaining_uses=row["remaining_uses"],
        multiplier=row["multiplier"],
        status=row["status"],
    )


def _session_from_row(row: dict[str, Any]) -> PresenceSession:
    return PresenceSession(
        session_id=row["session_id"],
        host_user=row["host_user"],
        mode_id=row["mode_id"],
        status=row["status"],
        created_at=row["created_at"],
        guest_user=row["guest_user"],
        ended_at=row["ended_at"],
    )


def _round_from_row(row: dict[str, Any]) -> SyncRound:
    return SyncRound(
        round_id=row["id"],
        match_id=row["match_id"],
        question=row["question"],
        user1=row["user1"],
        user2=row["user2"],
        created_at=row["created_at"],
        answer1=row["answer1"],
        answer2=row["answer2"],
        score=row["score"],
        completed=bool(row["completed"]),
    )


@dataclass
class PostgresCoreStore:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        import psycopg
        from psycopg.rows import dict_row

        try:
            with self._connect() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    yield cur
                conn.commit()
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise StoreUnavailableError(f"Database unavailable: {exc}", reason="store_unavailable") from exc

    def insert_interest(self, from_user: int, to_user: int, now: datetime) -> InterestInsert:
        with self._transaction() as cur:
            cur.execute(_PAIR_LOCK_SQL, (_pair_lock_key(from_user, to_user),))
            cur.execute(
                f"SELECT {_EDGE_COLUMNS} FROM interest_edges WHERE from_user = %s AND to_user = %s",
                (from_user, to_user),
            )
            row = cur.fetchone()
            if row is not None:
                return InterestInsert(edge=_edge_from_row(row), created=False)

            cur.execute(
                f"""
                UPDATE interest_edges
                SET status = 'matched', matched_at = %s
                WHERE from_user = %s AND to_user = %s AND status = 'pending'
                RETURNING {_EDGE_COLUMNS}
                """,
                (now, to_user, from_user),
            )
            promoted_row = cur.fetchone()
            status = EDGE_MATCHED if promoted_row is not None else EDGE_PENDING
            matched_at = now if promoted_row is not None else None
            cur.execute(
                f"""
                INSERT INTO interest_edges (from_user, to_user, status, created_at, matched_at, chat_unlocked)
                VALUES (%s, %s, %s, %s, %s, FALSE)
                RETURNING {_EDGE_COLUMNS}
                """,
                (from_user, to_user, status, now, matched_at),
            )
            edge = _edge_from_row(cur.fetchone())

        promoted = _edge_from_row(promoted_row) if promoted_row is not None else None
        return InterestInsert(edge=edge, created=True, promoted=promoted)

    def get_edge(self, from_user: int, to_user: int) -> InterestEdge | None:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_EDGE_COLUMNS} FROM interest_edges WHERE from_user = %s AND to_user = %s",
                (from_user, to_user),
            )
            row = cur.fetchone()
        return _edge_from_row(row) if row is not None else None

    def get_edge_by_id(self, edge_id: int) -> InterestEdge | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_EDGE_COLUMNS} FROM interest_edges WHERE id = %s", (edge_id,))
            row = cur.fetchone()
        return _edge_from_row(row) if row is not None else None

    def resolve_interest(self, edge_id: int, status: str, now: datetime) -> InterestEdge | None:
        matched_at = now if status == EDGE_MATCHED else None
        with self._transaction() as cur:
            cur.execute("SELECT from_user, to_user FROM interest_edges WHERE id = %s", (edge_id,))
            pair = cur.fetchone()
            if pair is None:
                return None
            cur.execute(_PAIR_LOCK_SQL, (_pair_lock_key(pair["from_user"], pair["to_user"]),))
            if status == EDGE_MATCHED:
                cur.execute(
                    "SELECT status FROM interest_edges WHERE from_user = %s AND to_user = %s",
                    (pair["to_user"], pair["from_user"]),
                )
                reverse = cur.fetchone()
                if reverse is not None and reverse["status"] != EDGE_MATCHED:
                    return None
            cur.execute(
                f"""
                UPDATE interest_edges
                SET status = %s, matched_at = COALESCE(%s, matched_at)
                WHERE id = %s AND status = 'pending'
                RETURNING {_EDGE_COLUMNS}
                """,
                (status, matched_at, edge_id),
            )
            row = cur.fetchone()
            if row is None:
                return None
            if status == EDGE_MATCHED:
                cur.execute(
                    """
                    INSERT INTO interest_edges (from_user, to_user, status, created_at, matched_at, chat_unlocked)
                    VALUES (%s, %s, 'matched', %s, %s, FALSE)
                    ON CONFLICT (from_user, to_user) DO NOTHING
                    """,
                    (row["to_user"], row["from_user"], now, now),
                )
        return _edge_from_row(row)

    def transition_pair(self, user_a: int, user_b: int, expected: str, status: str) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE interest_edges
                SET status = %s
                WHERE ((from_user = %s AND to_user = %s) OR (from_user = %s AND to_user = %s))
                  AND status = %s
                """,
                (status, user_a, user_b, user_b, user_a, expected),
            )
            return cur.rowcount

    def unlock_pair_chat(self, user_a: int, user_b: int) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE interest_edges
                SET chat_unlocked = TRUE
                WHERE (from_user = %s AND to_user = %s) OR (from_user = %s AND to_user = %s)
                """,
                (user_a, user_b, user_b, user_a),
            )
            return cur.rowcount

    def list_edges(self, user_id: int, status: str) -> list[InterestEdge]:
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {_EDGE_COLUMNS} FROM interest_edges
                WHERE (from_user = %s OR to_user = %s) AND status = %s
                ORDER BY id
                """,
                (user_id, user_id, status),
            )
            rows = cur.fetchall()
        return [_edge_from_row(row) for row in rows]

    def list_incoming(self, user_id: int, status: str) -> list[InterestEdge]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_EDGE_COLUMNS} FROM interest_edges WHERE to_user = %s AND status = %s ORDER BY id",
                (user_id, status),
            )
            rows = cur.fetchall()
        return [_edge_from_row(row) for row in rows]

    def _insert_grant_row(self, cur: Any, grant: EntitlementGrant, on_conflict: str = "") -> dict[str, Any] | None:
        cur.execute(
            f"""
            INSERT INTO entitlement_grants
                (owner_user, kind, scope_key, plan, expires_at, remaining_uses, multiplier, status, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            {on_conflict}
            RETURNING {_GRANT_COLUMNS}
            """,
            (
                grant.owner_user,
                grant.kind,
                grant.scope_key,
                grant.plan,
                grant.expires_at,
                grant.remaining_uses,
                grant.multiplier,
                grant.status,
                grant.created_at,
            ),
        )
        return cur.fetchone()

    def insert_grant(self, grant: EntitlementGrant) -> EntitlementGrant:
        with self._transaction() as cur:
            row = self._insert_grant_row(cur, grant)
        return _grant_from_row(row)

    def insert_chat_unlock(self, grant: EntitlementGrant) -> tuple[EntitlementGrant, bool]:
        with self._transaction() as cur:
            row = self._insert_grant_row(
                cur,
                grant,
                on_conflict="ON CONFLICT (owner_user, scope_key) WHERE kind = 'chatUnlock' DO NOTHING",
            )
            if row is not None:
                return _grant_from_row(row), True
            cur.execute(
                f"""
                SELECT {_GRANT_COLUMNS} FROM entitlement_grants
                WHERE owner_user = %s AND kind = 'chatUnlock' AND scope_key = %s
                """,
                (grant.owner_user, grant.scope_key),
            )
            existing = cur.fetchone()
        return _grant_from_row(existing), False

    def insert_subscription_unless_active(self, grant: EntitlementGrant, now: datetime) -> EntitlementGrant | None:
        with self._transaction() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(%s)", (grant.owner_user,))
            cur.execute(
                f"""
                SELECT {_GRANT_COLUMNS} FROM entitlement_grants
                WHERE owner_user = %s AND kind = 'subscription' AND status = 'active'
                """,
                (grant.owner_user,),
            )
            current = [_grant_from_row(row) for row in cur.fetchall()]
            if any(grant_is_active(candidate, now) for candidate in current):
                return None
            row = self._insert_grant_row(cur, grant)
        return _grant_from_row(row)

    def list_grants(self, owner_user: int, kind: str, scope_key: str | None = None) -> list[EntitlementGrant]:
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {_GRANT_COLUMNS} FROM entitlement_grants
                WHERE owner_user = %s AND kind = %s AND status <> 'cancelled'
                  AND (%s::text IS NULL OR scope_key = %s)
                ORDER BY id
                """,
                (owner_user, kind, scope_key, scope_key),
            )
            rows = cur.fetchall()
        return [_grant_from_row(row) for row in rows]

    def cancel_grant(self, grant_id: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE entitlement_grants SET status = 'cancelled' WHERE id = %s AND status = 'active'",
                (grant_id,),
            )
            return cur.rowcount == 1

    def use_grant(self, grant_id: int, owner_user: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE entitlement_grants
                SET remaining_uses = remaining_uses - 1
                WHERE id = %s AND owner_user = %s AND status = 'active' AND remaining_uses > 0
                """,
                (grant_id, owner_user),
            )
            return cur.rowcount == 1

    def add_balance(self, owner_user: int, amount: int) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO super_like_balances (owner_user, balance, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (owner_user)
                DO UPDATE SET balance = super_like_balances.balance + EXCLUDED.balance, updated_at = now()
                RETURNING balance
                """,
                (owner_user, amount),
            )
            row = cur.fetchone()
        return int(row["balance"])

    def consume_balance(self, owner_user: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE super_like_balances
                SET balance = balance - 1, updated_at = now()
                WHERE owner_user = %s AND balance > 0
                """,
                (owner_user,),
            )
            return cur.rowcount == 1

    def get_balance(self, owner_user: int) -> int:
        with self._transaction() as cur:
            cur.execute("SELECT balance FROM super_like_balances WHERE owner_user = %s", (owner_user,))
            row = cur.fetchone()
        return int(row["balance"]) if row is not None else 0

    def insert_session(self, session: PresenceSession) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO presence_sessions (session_id, host_user, guest_user, mode_id, status, created_at, ended_at)
                VALUES (%s, %s, NULL, %s, %s, %s, NULL)
                ON CONFLICT (session_id) DO NOTHING
                """,
                (session.session_id, session.host_user, session.mode_id, session.status, session.created_at),
            )
            return cur.rowcount == 1

    def get_session(self, session_id: str) -> PresenceSession | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_SESSION_COLUMNS} FROM presence_sessions WHERE session_id = %s", (session_id,))
            row = cur.fetchone()
        return _session_from_row(row) if row is not None else None

    def assign_guest(self, session_id: str, guest_user: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE presence_sessions
                SET guest_user = %s, status = 'active'
                WHERE session_id = %s AND guest_user IS NULL AND status = 'waiting'
                """,
                (guest_user, session_id),
            )
            return cur.rowcount == 1

    def end_session(self, session_id: str, now: datetime) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE presence_sessions
                SET status = 'ended', ended_at = %s
                WHERE session_id = %s AND status <> 'ended'
                """,
                (now, session_id),
            )
            return cur.rowcount == 1

    def find_open_session(self, user_id: int) -> PresenceSession | None:
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM presence_sessions
                WHERE (host_user = %s OR guest_user = %s) AND status <> 'ended'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, user_id),
            )
            row = cur.fetchone()
        return _session_from_row(row) if row is not None else None

    def get_open_round(self, match_id: int) -> SyncRound | None:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_ROUND_COLUMNS} FROM sync_rounds WHERE match_id = %s AND completed = FALSE",
                (match_id,),
            )
            row = cur.fetchone()
        return _round_from_row(row) if row is not None else None

    def create_round_if_absent(self, sync_round: SyncRound) -> SyncRound:
        with self._transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO sync_rounds (match_id, question, user1, user2, completed, created_at)
                VALUES (%s, %s, %s, %s, FALSE, %s)
                ON CONFLICT (match_id) WHERE completed = FALSE DO NOTHING
                RETURNING {_ROUND_COLUMNS}
                """,
                (sync_round.match_id, sync_round.question, sync_round.user1, sync_round.user2, sync_round.created_at),
            )
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    f"SELECT {_ROUND_COLUMNS} FROM sync_rounds WHERE match_id = %s AND completed = FALSE",
                    (sync_round.match_id,),
                )
                row = cur.fetchone()
        return _round_from_row(row)

    def get_round(self, round_id: int) -> SyncRound | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_ROUND_COLUMNS} FROM sync_rounds WHERE id = %s", (round_id,))
            row = cur.fetchone()
        return _round_from_row(row) if row is not None else None

    def write_answer(self, round_id: int, slot: int, answer: str) -> SyncRound | None:
        column = "answer1" if slot == 1 else "answer2"
        with self._transaction() as cur:
            cur.execute(
                f"""
                UPDATE sync_rounds
                SET {column} = %s
                WHERE id = %s AND completed = FALSE
                RETURNING {_ROUND_COLUMNS}
                """,
                (answer, round_id),
            )
            row = cur.fetchone()
        return _round_from_row(row) if row is not None else None

    def complete_round(self, round_id: int, answer1: str, answer2: str, score: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE sync_rounds
                SET score = %s, completed = TRUE
                WHERE id = %s AND completed = FALSE AND answer1 = %s AND answer2 = %s
                """,
                (score, round_id, answer1, answer2),
            )
            return cur.rowcount == 1

    def add_block(self, blocker: int, blocked: int, now: datetime) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO user_blocks (blocker_user, blocked_user, created_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (blocker_user, blocked_user) DO NOTHING
                """,
                (blocker, blocked, now),
            )
            return cur.rowcount == 1

    def remove_block(self, blocker: int, blocked: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM user_blocks WHERE blocker_user = %s AND blocked_user = %s",
                (blocker, blocked),
            )
            return cur.rowcount == 1

    def list_blocked(self, blocker: int) -> list[int]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT blocked_user FROM user_blocks WHERE blocker_user = %s ORDER BY blocked_user",
                (blocker,),
            )
            return [row["blocked_user"] for row in cur.fetchall()]

    def is_blocked(self, user_a: int, user_b: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT 1 FROM user_blocks
                WHERE (blocker_user = %s AND blocked_user = %s) OR (blocker_user = %s AND blocked_user = %s)
                LIMIT 1
                """,
                (user_a, user_b, user_b, user_a),
            )
            return cur.fetchone() is not None


def create_store(database_url: str | None) -> CoreStore:
    if database_url:
        logger.info("Using PostgreSQL core store")
        return PostgresCoreStore(database_url=database_url)
    logger.info("Using in-memory core store")
    return InMemoryCoreStore()
