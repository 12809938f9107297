"""Notification endpoints and the live WebSocket channel."""
from __future__ import annotations

import json
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from ..auth import Principal, RoleAuthorizationProvider, get_current_principal, principal_from_token
from ..config import Settings
from ..dependencies import get_hub
from ..domain import Severity
from ..schemas import MarkAllReadResponse, MarkReadResponse, UnreadCountResponse
from ..services.notification_hub import NotificationHub
from ..services.session_connection import (
    WELCOME_KIND,
    OutboundMessage,
    ReconnectBackoff,
    SessionConnection,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

CLOSE_UNAUTHORIZED = 4401


def reconnect_policy(app_settings: Settings) -> ReconnectBackoff:
    return ReconnectBackoff(
        base_delay=app_settings.RECONNECT_BASE_DELAY_SECONDS,
        max_delay=app_settings.RECONNECT_MAX_DELAY_SECONDS,
        max_attempts=app_settings.RECONNECT_MAX_ATTEMPTS,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    principal: Principal = Depends(get_current_principal),
    hub: NotificationHub = Depends(get_hub),
):
    return UnreadCountResponse(count=await hub.unread_count(principal.user_id))


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_notifications_read(
    principal: Principal = Depends(get_current_principal),
    hub: NotificationHub = Depends(get_hub),
):
    marked = await hub.mark_all_read(principal.user_id)
    return MarkAllReadResponse(marked=marked, unread_count=0)


@router.post("/{event_id}/read", response_model=MarkReadResponse)
async def mark_notification_read(
    event_id: UUID,
    principal: Principal = Depends(get_current_principal),
    hub: NotificationHub = Depends(get_hub),
):
    updated = await hub.mark_read(principal.user_id, event_id)
    return MarkReadResponse(
        event_id=event_id,
        updated=updated,
        unread_count=await hub.unread_count(principal.user_id),
    )


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """Live channel: every reconnect is a fresh session."""
    try:
        principal = principal_from_token(token)
    except HTTPException:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    app_settings: Settings = websocket.app.state.settings
    hub: NotificationHub = websocket.app.state.hub
    authorization = websocket.app.state.authorization
    if isinstance(authorization, RoleAuthorizationProvider):
        authorization.remember(principal)

    await websocket.accept()
    session = SessionConnection(
        user_id=principal.user_id,
        transport=websocket,
        maxsize=app_settings.SESSION_QUEUE_MAXSIZE,
        heartbeat_interval=app_settings.HEARTBEAT_INTERVAL_SECONDS,
        heartbeat_missed_limit=app_settings.HEARTBEAT_MISSED_LIMIT,
        on_close=lambda closed: hub.unregister(closed.session_id),
    )
    session.enqueue(
        OutboundMessage(
            kind=WELCOME_KIND,
            payload={
                "sessionId": session.session_id,
                "userId": principal.user_id,
                "heartbeatIntervalSeconds": app_settings.HEARTBEAT_INTERVAL_SECONDS,
                "heartbeatMissedLimit": app_settings.HEARTBEAT_MISSED_LIMIT,
                "reconnect": reconnect_policy(app_settings).to_payload(),
            },
            severity=Severity.URGENT,
        )
    )
    await hub.register(session)
    session.start()

    try:
        while session.is_open:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # Any inbound frame proves the client is alive.
            session.record_heartbeat()
            raw = message.get("text")
            if raw is None:
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                continue
            if isinstance(frame, dict) and frame.get("type") == "ping":
                session.enqueue(OutboundMessage(kind="pong", payload={}, coalesce_key="pong"))
    except WebSocketDisconnect:
        logger.debug("Client disconnected from session %s", session.session_id)
    finally:
        await session.close(reason="client_disconnected")
