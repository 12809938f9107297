"""In-process reading store used for development and tests."""
from __future__ import annotations

import asyncio
import itertools
from collections.abc import Sequence
from dataclasses import replace
from datetime import date

from ..domain import FlowReading, FlowThreshold, ReadingKey, ReadingStatus, now_utc
from ..domain_errors import ConflictError, NotFoundError
from ..services.reading_state import ReadingEvent
from ..services.threshold_rules import validate_threshold_config


class InMemoryReadingStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._readings: dict[int, FlowReading] = {}
        self._slots: dict[ReadingKey, int] = {}
        self._history: dict[int, list[ReadingEvent]] = {}
        self._thresholds: dict[int, FlowThreshold] = {}
        self._reading_ids = itertools.count(1)
        self._threshold_ids = itertools.count(1)

    async def get_reading(self, reading_id: int) -> FlowReading | None:
        return self._readings.get(reading_id)

    async def load_reading(self, pipeline_id: int, reading_date: date, reading_slot_id: int) -> FlowReading | None:
        holder_id = self._slots.get(ReadingKey(pipeline_id, reading_date, reading_slot_id))
        if holder_id is None:
            return None
        return self._readings.get(holder_id)

    async def commit_transition(
        self,
        reading: FlowReading,
        expected_version: int,
        events: Sequence[ReadingEvent] = (),
    ) -> FlowReading:
        async with self._lock:
            current = self._readings.get(reading.id) if reading.id is not None else None
            if reading.id is not None and current is None:
                raise NotFoundError(f"Reading {reading.id} not found", code="READING_NOT_FOUND")

            current_version = current.version if current else 0
            if current_version != expected_version:
                raise ConflictError(
                    f"Reading {reading.id} was modified concurrently",
                    code="READING_VERSION_CONFLICT",
                    conflicting_reading_id=reading.id,
                    details={"expectedVersion": expected_version, "currentVersion": current_version},
                )

            holder_id = self._slots.get(reading.key)
            if reading.holds_slot and holder_id is not None and holder_id != reading.id:
                raise ConflictError(
                    f"Reading {holder_id} already exists for {reading.key}",
                    conflicting_reading_id=holder_id,
                )

            reading_id = reading.id if reading.id is not None else next(self._reading_ids)
            stored = replace(reading, id=reading_id, version=current_version + 1)
            self._readings[reading_id] = stored

            if stored.holds_slot:
                self._slots[stored.key] = reading_id
            elif holder_id == reading_id:
                del self._slots[stored.key]

            history = self._history.setdefault(reading_id, [])
            history.extend(replace(event, reading_id=reading_id) for event in events)
            return stored

    async def list_readings(
        self,
        *,
        status: ReadingStatus | None = None,
        pipeline_id: int | None = None,
        limit: int = 100,
    ) -> list[FlowReading]:
        rows = [
            reading
            for reading in self._readings.values()
            if (status is None or reading.validation_status is status)
            and (pipeline_id is None or reading.pipeline_id == pipeline_id)
        ]
        rows.sort(key=lambda item: (item.reading_date, item.reading_slot_id, item.id or 0))
        return rows[:limit]

    async def list_history(self, reading_id: int) -> list[ReadingEvent]:
        return list(self._history.get(reading_id, []))

    async def load_active_threshold(self, pipeline_id: int) -> FlowThreshold | None:
        threshold = self._thresholds.get(pipeline_id)
        if threshold is None or not threshold.active:
            return None
        return threshold

    async def save_threshold(self, threshold: FlowThreshold) -> FlowThreshold:
        validate_threshold_config(threshold)
        async with self._lock:
            stored = replace(
                threshold,
                id=threshold.id if threshold.id is not None else next(self._threshold_ids),
                updated_at=now_utc(),
            )
            # One record per pipeline; saving replaces the previous active one.
            self._thresholds[threshold.pipeline_id] = stored
            return stored
