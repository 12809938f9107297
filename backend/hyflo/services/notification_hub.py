"""Registry of live notification sessions and role/user scoped fan-out."""
from __future__ import annotations

import logging
from collections import defaultdict
from uuid import UUID

from ..domain import VALIDATORS_ROLE, Audience, NotificationEvent
from ..stores.base import AuthorizationProvider, NotificationStore
from .session_connection import (
    CLOSE_GOING_AWAY,
    NOTIFICATION_KIND,
    OutboundMessage,
    SessionConnection,
    unread_count_message,
)

logger = logging.getLogger(__name__)


class NotificationHub:
    """Best-effort live delivery.

    ``publish`` only enqueues onto session queues and never waits on a
    client. Users without a live session get nothing here; the durable
    notification store remains the system of record.
    """

    def __init__(
        self,
        *,
        authorization: AuthorizationProvider,
        notification_store: NotificationStore,
        role_authorities: dict[str, str] | None = None,
    ) -> None:
        self._authorization = authorization
        self._store = notification_store
        self._role_authorities = role_authorities or {VALIDATORS_ROLE: "VALIDATE_READING"}
        self._sessions: dict[str, SessionConnection] = {}
        self._by_user: dict[int, set[str]] = defaultdict(set)
        # Unread event ids per connected user; ids make live and baseline counts idempotent.
        self._unread: dict[int, set[UUID]] = {}

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def sessions_for(self, user_id: int) -> list[SessionConnection]:
        return [self._sessions[sid] for sid in self._by_user.get(user_id, ()) if sid in self._sessions]

    async def register(self, session: SessionConnection) -> None:
        # Live first, then the baseline: ids published while it loads are
        # merged with it, so none is lost or counted twice.
        self._sessions[session.session_id] = session
        self._by_user[session.user_id].add(session.session_id)
        known = set(self._unread.setdefault(session.user_id, set()))
        try:
            baseline = await self._store.list_unread(session.user_id)
        except Exception:
            logger.exception("Failed to load unread baseline for user %s", session.user_id)
            unread = self._unread.setdefault(session.user_id, known)
        else:
            arrived = self._unread.get(session.user_id, set()) - known
            unread = {event.id for event in baseline} | arrived
            if session.user_id in self._by_user:
                self._unread[session.user_id] = unread

        session.enqueue(unread_count_message(len(unread)))
        logger.info("Registered session %s for user %s", session.session_id, session.user_id)

    def unregister(self, session_id: str) -> SessionConnection | None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        user_sessions = self._by_user.get(session.user_id)
        if user_sessions is not None:
            user_sessions.discard(session_id)
            if not user_sessions:
                del self._by_user[session.user_id]
                self._unread.pop(session.user_id, None)
        logger.info("Unregistered session %s for user %s", session_id, session.user_id)
        return session

    def recipients(self, audience: Audience) -> list[int]:
        """Connected users the audience resolves to."""
        if audience.user_id is not None:
            return [audience.user_id] if audience.user_id in self._by_user else []
        authority = self._role_authorities.get(audience.role or "")
        if authority is None:
            logger.warning("No authority mapped for audience role %s", audience.role)
            return []
        return [user_id for user_id in list(self._by_user) if self._authorization.has_authority(user_id, authority)]

    def publish(self, event: NotificationEvent, audience: Audience) -> int:
        """Enqueue ``event`` on every matching live session; return how many accepted it."""
        accepted = 0
        for user_id in self.recipients(audience):
            sessions = self.sessions_for(user_id)
            if not sessions:
                continue
            unread = self._unread.setdefault(user_id, set())
            unread.add(event.id)
            count = len(unread)
            for session in sessions:
                try:
                    message = OutboundMessage(
                        kind=NOTIFICATION_KIND,
                        payload=event.to_payload(),
                        severity=event.severity,
                    )
                    if session.enqueue(message):
                        accepted += 1
                    session.enqueue(unread_count_message(count))
                except Exception:
                    logger.exception("Failed to enqueue event %s on session %s", event.id, session.session_id)
        logger.debug("Event %s published to %s: %s sessions", event.id, audience, accepted)
        return accepted

    def _reset_unread(self, user_id: int, event_ids: set[UUID]) -> None:
        if user_id not in self._by_user:
            return
        self._unread[user_id] = event_ids
        for session in self.sessions_for(user_id):
            session.enqueue(unread_count_message(len(event_ids)))

    async def unread_count(self, user_id: int) -> int:
        unread = await self._store.list_unread(user_id)
        if user_id in self._by_user:
            self._unread[user_id] = {event.id for event in unread}
        return len(unread)

    async def mark_read(self, user_id: int, event_id: UUID) -> bool:
        changed = await self._store.mark_read(user_id, event_id)
        if changed:
            unread = await self._store.list_unread(user_id)
            self._reset_unread(user_id, {event.id for event in unread})
        return changed

    async def mark_all_read(self, user_id: int) -> int:
        marked = await self._store.mark_all_read(user_id)
        self._reset_unread(user_id, set())
        return marked

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.close(reason="server_shutdown", code=CLOSE_GOING_AWAY)
        self._sessions.clear()
        self._by_user.clear()
        self._unread.clear()
