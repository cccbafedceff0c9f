"""Snapshot builders for client-facing views of core records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .models import EntitlementGrant, InterestEdge, PremiumStatus, PresenceSession, SyncRound


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment is not None else None


def build_match_view(edge: InterestEdge) -> dict[str, Any]:
    return {
        "edgeId": edge.edge_id,
        "fromUserId": edge.from_user,
        "toUserId": edge.to_user,
        "status": edge.status,
        "createdAt": _iso(edge.created_at),
        "matchedAt": _iso(edge.matched_at),
        "chatUnlocked": edge.chat_unlocked,
    }


def build_presence_status(session: PresenceSession | None) -> dict[str, Any]:
    """Polling view of a session; ``exists`` is False for unknown ids."""
    if session is None:
        return {"exists": False, "session": None}
    return {
        "exists": True,
        "session": {
            "sessionId": session.session_id,
            "modeId": session.mode_id,
            "status": session.status,
            "hasGuest": session.has_guest,
        },
    }


def build_session_view(session: PresenceSession) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "modeId": session.mode_id,
        "hostUserId": session.host_user,
        "guestUserId": session.guest_user,
        "status": session.status,
        "createdAt": _iso(session.created_at),
        "endedAt": _iso(session.ended_at),
    }


def build_round_view(sync_round: SyncRound, viewer: int | None = None) -> dict[str, Any]:
    """Round as seen by ``viewer``; the peer's answer stays hidden until completion."""
    view: dict[str, Any] = {
        "roundId": sync_round.round_id,
        "matchId": sync_round.match_id,
        "question": sync_round.question,
        "user1Id": sync_round.user1,
        "user2Id": sync_round.user2,
        "completed": sync_round.completed,
        "score": sync_round.score,
        "user1Answered": sync_round.answer1 is not None,
        "user2Answered": sync_round.answer2 is not None,
    }
    if sync_round.completed:
        view["user1Answer"] = sync_round.answer1
        view["user2Answer"] = sync_round.answer2
    elif viewer is not None:
        slot = sync_round.slot_for(viewer)
        if slot is not None:
            view["myAnswer"] = sync_round.answer_in(slot)
    return view


def build_grant_view(grant: EntitlementGrant) -> dict[str, Any]:
    return {
        "grantId": grant.grant_id,
        "kind": grant.kind,
        "scopeKey": grant.scope_key,
        "plan": grant.plan,
        "expiresAt": _iso(grant.expires_at),
        "remainingUses": grant.remaining_uses,
        "multiplier": grant.multiplier,
        "status": grant.status,
    }


def build_premium_view(status: PremiumStatus) -> dict[str, Any]:
    return {"isPremium": status.is_premium, "tier": status.tier, "expiresAt": _iso(status.expires_at)}
