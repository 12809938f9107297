"""Collaborator interfaces consumed by the workflow core."""
from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from typing import Protocol
from uuid import UUID

from ..domain import Audience, FlowReading, FlowThreshold, NotificationEvent, ReadingStatus
from ..services.reading_state import ReadingEvent


class ReadingStore(Protocol):
    """Durable reading/threshold storage.

    ``commit_transition`` is a check-and-set: it fails with ``ConflictError``
    when the stored version differs from ``expected_version`` or when another
    reading already holds the (pipeline, date, slot) key, and with
    ``StorageError`` when the backend is unavailable.
    """

    async def get_reading(self, reading_id: int) -> FlowReading | None: ...

    async def load_reading(self, pipeline_id: int, reading_date: date, reading_slot_id: int) -> FlowReading | None: ...

    async def commit_transition(
        self,
        reading: FlowReading,
        expected_version: int,
        events: Sequence[ReadingEvent] = (),
    ) -> FlowReading: ...

    async def list_readings(
        self,
        *,
        status: ReadingStatus | None = None,
        pipeline_id: int | None = None,
        limit: int = 100,
    ) -> list[FlowReading]: ...

    async def list_history(self, reading_id: int) -> list[ReadingEvent]: ...

    async def load_active_threshold(self, pipeline_id: int) -> FlowThreshold | None: ...

    async def save_threshold(self, threshold: FlowThreshold) -> FlowThreshold: ...


class NotificationStore(Protocol):
    """System of record for notifications; live push is only an optimisation."""

    async def append(self, event: NotificationEvent, audience: Audience) -> None: ...

    async def list_unread(self, user_id: int) -> list[NotificationEvent]: ...

    async def mark_read(self, user_id: int, event_id: UUID) -> bool: ...

    async def mark_all_read(self, user_id: int) -> int: ...


class AuthorizationProvider(Protocol):
    def has_authority(self, user_id: int, authority: str) -> bool: ...
