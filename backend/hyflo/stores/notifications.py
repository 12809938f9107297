"""Reference implementation of the durable notification store interface."""
from __future__ import annotations

import asyncio
from uuid import UUID

from ..domain import VALIDATORS_ROLE, Audience, NotificationEvent, now_utc
from .base import AuthorizationProvider


class InMemoryNotificationStore:
    """Keeps every event with its audience and per-user read marks."""

    def __init__(self, *, authorization: AuthorizationProvider, role_authorities: dict[str, str] | None = None) -> None:
        self._authorization = authorization
        self._role_authorities = role_authorities or {VALIDATORS_ROLE: "VALIDATE_READING"}
        self._lock = asyncio.Lock()
        self._events: list[tuple[NotificationEvent, Audience]] = []
        self._read: dict[tuple[int, UUID], object] = {}

    def _addressed_to(self, audience: Audience, user_id: int) -> bool:
        if audience.user_id is not None:
            return audience.user_id == user_id
        authority = self._role_authorities.get(audience.role or "")
        return authority is not None and self._authorization.has_authority(user_id, authority)

    async def append(self, event: NotificationEvent, audience: Audience) -> None:
        async with self._lock:
            self._events.append((event, audience))

    async def list_unread(self, user_id: int) -> list[NotificationEvent]:
        return [
            event
            for event, audience in self._events
            if self._addressed_to(audience, user_id) and (user_id, event.id) not in self._read
        ]

    async def mark_read(self, user_id: int, event_id: UUID) -> bool:
        async with self._lock:
            for event, audience in self._events:
                if event.id != event_id or not self._addressed_to(audience, user_id):
                    continue
                if (user_id, event_id) in self._read:
                    return False
                self._read[(user_id, event_id)] = now_utc()
                return True
            return False

    async def mark_all_read(self, user_id: int) -> int:
        unread = await self.list_unread(user_id)
        async with self._lock:
            at = now_utc()
            for event in unread:
                self._read[(user_id, event.id)] = at
        return len(unread)
