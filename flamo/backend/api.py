"""FastAPI endpoints over the matching, presence, entitlement and VibeLock core."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .access import AccessResolver
from .collaborators import BlockList, LoggingNotifier, Notifier, StoreSafety
from .config import BackendSettings, load_settings
from .errors import HTTP_STATUS_BY_CODE, CoreError
from .ledger import EntitlementLedger
from .matching import MatchService
from .models import Outcome, PurchaseEvent
from .presence import PresenceService
from .state import (
    build_grant_view,
    build_match_view,
    build_premium_view,
    build_presence_status,
    build_round_view,
    build_session_view,
    utc_now,
)
from .store import CoreStore, create_store
from .vibelock import VibeLockService

logger = logging.getLogger(__name__)


class LikeRequest(BaseModel):
    target_user_id: int


class RespondRequest(BaseModel):
    accept: bool


class CreateSessionRequest(BaseModel):
    mode_id: str = Field(min_length=1, max_length=32)


class SubscribeRequest(BaseModel):
    plan: Literal["monthly", "yearly"] = "monthly"


class PurchaseEnvelope(BaseModel):
    user_id: int
    product_type: str = Field(min_length=1)
    product_id: str | None = None
    plan: str | None = None
    target_user_id: int | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    quantity: int | None = Field(default=None, ge=0)
    multiplier: float | None = None


class AnswerRequest(BaseModel):
    answer: Literal["You", "Them"]


class BlockRequest(BaseModel):
    user_id: int


class InterestResponse(BaseModel):
    success: bool
    is_new_match: bool
    match_id: int | None = None
    edge: dict[str, Any]


class PayloadResponse(BaseModel):
    success: bool = True
    data: Any = None


@dataclass
class CoreServices:
    store: CoreStore
    matches: MatchService
    presence: PresenceService
    ledger: EntitlementLedger
    access: AccessResolver
    vibelock: VibeLockService
    safety: BlockList


def build_services(
    store: CoreStore,
    settings: BackendSettings,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utc_now,
    safety: BlockList | None = None,
) -> CoreServices:
    if safety is None:
        safety = StoreSafety(store=store, clock=clock)
    matches = MatchService(store=store, safety=safety, notifier=notifier, clock=clock)
    safety.on_block = matches.force_unmatch
    ledger = EntitlementLedger(store=store, notifier=notifier, clock=clock, tz=settings.tzinfo)
    return CoreServices(
        store=store,
        matches=matches,
        presence=PresenceService(store=store, clock=clock),
        ledger=ledger,
        access=AccessResolver(ledger=ledger),
        vibelock=VibeLockService(store=store, clock=clock, unlock_threshold=settings.vibelock_unlock_threshold),
        safety=safety,
    )


def _unwrap(outcome: Outcome) -> Any:
    if not outcome.ok:
        raise HTTPException(
            status_code=HTTP_STATUS_BY_CODE.get(outcome.error or "", 409),
            detail={"error": outcome.error, "reason": outcome.reason},
        )
    return outcome.value


class PresenceWebSocketHub:
    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[session_id].add(websocket)

    def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(session_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            self._connections.pop(session_id, None)

    async def send_status(self, websocket: WebSocket, status: dict[str, Any]) -> None:
        await websocket.send_json({"type": "presence.status", "status": status})

    async def broadcast_status(self, session_id: str, status: dict[str, Any]) -> None:
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections.get(session_id, set())):
            try:
                await self.send_status(websocket, status)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(session_id=session_id, websocket=websocket)


def create_app(
    store: CoreStore | None = None,
    settings: BackendSettings | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utc_now,
    safety: BlockList | None = None,
) -> FastAPI:
    app_settings = settings if settings is not None else load_settings()
    core_store = store if store is not None else create_store(app_settings.database_url)
    services = build_services(
        core_store,
        app_settings,
        notifier=notifier if notifier is not None else LoggingNotifier(),
        clock=clock,
        safety=safety,
    )

    app = FastAPI(title="FLaMO Matching Core API", version="0.3.0")
    presence_hub = PresenceWebSocketHub()
    app.state.services = services
    app.state.presence_hub = presence_hub

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
        logger.error("%s on %s", exc.message, request.url.path, extra={"reason": exc.reason})
        return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_response()})

    def get_services() -> CoreServices:
        return services

    async def publish_status(session_id: str) -> None:
        status = services.presence.session_status(session_id)
        await presence_hub.broadcast_status(session_id=session_id, status=status)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # --- matches ---

    @app.post("/api/matches/likes", response_model=InterestResponse)
    def like(
        payload: LikeRequest,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> InterestResponse:
        result = _unwrap(core.matches.record_interest(user_id, payload.target_user_id))
        return InterestResponse(
            success=True,
            is_new_match=result.is_new_match,
            match_id=result.match_id,
            edge=build_match_view(result.edge),
        )

    @app.get("/api/matches", response_model=PayloadResponse)
    def list_matches(
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        return PayloadResponse(data=[build_match_view(edge) for edge in core.matches.list_matches(user_id)])

    @app.get("/api/matches/pending", response_model=PayloadResponse)
    def pending_likes(
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        return PayloadResponse(data=[build_match_view(edge) for edge in core.matches.pending_likes(user_id)])

    @app.get("/api/matches/with/{other_user_id}", response_model=PayloadResponse)
    def get_match(
        other_user_id: int,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        edge = core.matches.get_match(user_id, other_user_id)
        if edge is None:
            raise HTTPException(status_code=404, detail={"error": "not_found", "reason": "not_found"})
        return PayloadResponse(data=build_match_view(edge))

    @app.post("/api/matches/{edge_id}/respond", response_model=PayloadResponse)
    def respond(
        edge_id: int,
        payload: RespondRequest,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        edge = _unwrap(core.matches.respond_to_interest(edge_id, user_id, payload.accept))
        return PayloadResponse(data=build_match_view(edge))

    @app.post("/api/matches/{match_id}/unmatch", response_model=PayloadResponse)
    def unmatch(
        match_id: int,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        edge = _unwrap(core.matches.unmatch(match_id, user_id))
        return PayloadResponse(data=build_match_view(edge))

    # --- presence ---

    @app.post("/api/presence", response_model=PayloadResponse)
    def create_session(
        payload: CreateSessionRequest,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        if core.presence.get_active_session_for_user(user_id) is not None:
            raise HTTPException(status_code=409, detail={"error": "conflict", "reason": "already_in_session"})
        session = core.presence.create_session(user_id, payload.mode_id)
        return PayloadResponse(data={"sessionId": session.session_id, "modeId": session.mode_id})

    @app.get("/api/presence/active", response_model=PayloadResponse)
    def active_session(
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        session = core.presence.get_active_session_for_user(user_id)
        return PayloadResponse(data=build_session_view(session) if session is not None else None)

    @app.get("/api/presence/{session_id}")
    def session_status(session_id: str, core: CoreServices = Depends(get_services)) -> dict[str, Any]:
        return core.presence.session_status(session_id)

    @app.post("/api/presence/{session_id}/join", response_model=PayloadResponse)
    async def join_session(
        session_id: str,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        session = _unwrap(core.presence.join_session(session_id, user_id))
        await publish_status(session_id)
        return PayloadResponse(
            data={"modeId": session.mode_id, "hostUserId": session.host_user, "sessionId": session.session_id}
        )

    @app.post("/api/presence/{session_id}/end", response_model=PayloadResponse)
    async def end_session(
        session_id: str,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        session = _unwrap(core.presence.end_session(session_id, user_id))
        await publish_status(session_id)
        return PayloadResponse(data=build_session_view(session))

    @app.websocket("/ws/presence/{session_id}")
    async def presence_ws(
        websocket: WebSocket,
        session_id: str,
        core: CoreServices = Depends(get_services),
    ) -> None:
        raw_user = websocket.query_params.get("user_id", "")
        session = core.presence.get_session(session_id)
        if not raw_user.isdigit() or session is None or not session.is_party(int(raw_user)):
            await websocket.close(code=1008)
            return

        await presence_hub.connect(session_id=session_id, websocket=websocket)
        await presence_hub.send_status(websocket=websocket, status=build_presence_status(session))

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            presence_hub.disconnect(session_id=session_id, websocket=websocket)

    # --- entitlements ---

    @app.get("/api/subscription/status", response_model=PayloadResponse)
    def subscription_status(
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        return PayloadResponse(data=build_premium_view(core.access.premium_status(user_id)))

    @app.post("/api/subscription", response_model=PayloadResponse)
    def subscribe(
        payload: SubscribeRequest,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        grant = _unwrap(core.ledger.grant_subscription(user_id, payload.plan))
        return PayloadResponse(data=build_grant_view(grant))

    @app.post("/api/subscription/cancel", response_model=PayloadResponse)
    def cancel_subscription(
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        grant = _unwrap(core.ledger.cancel_subscription(user_id))
        return PayloadResponse(data=build_grant_view(grant))

    @app.get("/api/access", response_model=PayloadResponse)
    def access_summary(
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        return PayloadResponse(data=core.access.access_summary(user_id))

    @app.get("/api/access/can-message/{target_user_id}", response_model=PayloadResponse)
    def can_message(
        target_user_id: int,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        return PayloadResponse(data={"canMessage": core.access.can_message(user_id, target_user_id)})

    @app.post("/api/super-likes/use", response_model=PayloadResponse)
    def use_super_like(
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        used = core.ledger.use_super_like(user_id)
        return PayloadResponse(
            success=used,
            data={"used": used, "balance": core.ledger.super_like_balance(user_id)},
        )

    @app.post("/api/purchases", response_model=PayloadResponse)
    def record_purchase(
        payload: PurchaseEnvelope,
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        event = PurchaseEvent(
            user_id=payload.user_id,
            product_type=payload.product_type,
            product_id=payload.product_id,
            plan=payload.plan,
            target_user_id=payload.target_user_id,
            duration=timedelta(milliseconds=payload.duration_ms) if payload.duration_ms else None,
            quantity=payload.quantity,
            multiplier=payload.multiplier,
        )
        value = _unwrap(core.ledger.apply_purchase(event))
        if isinstance(value, int):
            return PayloadResponse(data={"superLikes": value})
        return PayloadResponse(data=build_grant_view(value))

    # --- vibelock ---

    @app.get("/api/vibelock/matches/{match_id}", response_model=PayloadResponse)
    def vibelock_round_for_match(
        match_id: int,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        sync_round = _unwrap(core.vibelock.get_or_create_round(match_id, user_id))
        return PayloadResponse(data=build_round_view(sync_round, viewer=user_id))

    @app.get("/api/vibelock/rounds/{round_id}", response_model=PayloadResponse)
    def vibelock_round(
        round_id: int,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        sync_round = _unwrap(core.vibelock.get_round(round_id, user_id))
        return PayloadResponse(data=build_round_view(sync_round, viewer=user_id))

    @app.post("/api/vibelock/rounds/{round_id}/answers", response_model=PayloadResponse)
    def vibelock_answer(
        round_id: int,
        payload: AnswerRequest,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        sync_round = _unwrap(core.vibelock.submit_answer(round_id, user_id, payload.answer))
        return PayloadResponse(data=build_round_view(sync_round, viewer=user_id))

    # --- safety ---

    @app.post("/api/safety/blocks", response_model=PayloadResponse)
    def block_user(
        payload: BlockRequest,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        core.safety.block(user_id, payload.user_id)
        return PayloadResponse(data={"blocked": core.safety.blocked_by(user_id)})

    @app.delete("/api/safety/blocks/{blocked_user_id}", response_model=PayloadResponse)
    def unblock_user(
        blocked_user_id: int,
        user_id: int = Header(alias="X-User-Id"),
        core: CoreServices = Depends(get_services),
    ) -> PayloadResponse:
        removed = core.safety.unblock(user_id, blocked_user_id)
        return PayloadResponse(success=removed, data={"blocked": core.safety.blocked_by(user_id)})

    return app


app = create_app()
