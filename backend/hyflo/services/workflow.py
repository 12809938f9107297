"""Reading validation workflow: draft, submit, validate, reject.

Every operation follows the same order: load, check legality with the state
machine, evaluate thresholds where required, commit through the store, and
only then dispatch notifications. Dispatch problems are logged and never
reach the caller.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Hashable, TypeVar

from ..domain import (
    MEASUREMENT_FIELDS,
    AlertLevel,
    Audience,
    FlowReading,
    FlowThreshold,
    NotificationEvent,
    ReadingStatus,
    Severity,
)
from ..domain_errors import DomainError, ForbiddenError, NotFoundError, StorageError
from ..stores.base import AuthorizationProvider, NotificationStore, ReadingStore
from .notification_hub import NotificationHub
from .reading_state import ReadingEvent, ReadingStateMachine, ensure_finite_measurements
from .threshold_evaluator import ReadingEvaluation, evaluate_reading
from .threshold_rules import validate_threshold_config

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTIFICATION_READING_SUBMITTED = "READING_SUBMITTED"
NOTIFICATION_READING_VALIDATED = "READING_VALIDATED"
NOTIFICATION_READING_REJECTED = "READING_REJECTED"
NOTIFICATION_READING_BREACH = "READING_BREACH"


@dataclass(frozen=True)
class ReadingInput:
    """Operator-entered reading, optionally submitted straight away."""

    pipeline_id: int
    reading_date: date
    reading_slot_id: int
    pressure: float | None = None
    temperature: float | None = None
    flow_rate: float | None = None
    contained_volume: float | None = None
    notes: str | None = None
    submit_immediately: bool = False

    def values(self) -> dict[str, Any]:
        data = {name: getattr(self, name) for name in MEASUREMENT_FIELDS}
        data["notes"] = self.notes
        return data


@dataclass(frozen=True)
class BatchFailure:
    reading_id: int
    code: str
    message: str


@dataclass
class BatchResult:
    succeeded: list[FlowReading] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)


class KeyedLocks:
    """One asyncio lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class ValidationWorkflowService:
    def __init__(
        self,
        *,
        store: ReadingStore,
        authorization: AuthorizationProvider,
        hub: NotificationHub,
        notification_store: NotificationStore,
        state_machine: ReadingStateMachine | None = None,
        validator_authority: str = "VALIDATE_READING",
    ) -> None:
        self._store = store
        self._authorization = authorization
        self._hub = hub
        self._notifications = notification_store
        self._machine = state_machine or ReadingStateMachine()
        self._validator_authority = validator_authority
        self._locks = KeyedLocks()

    # -- store access ---------------------------------------------------

    async def _call_store(self, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except DomainError:
            raise
        except Exception as exc:
            logger.warning("Reading store call failed: %s", exc)
            raise StorageError() from exc

    async def _require(self, reading_id: int) -> FlowReading:
        reading = await self._call_store(self._store.get_reading(reading_id))
        if reading is None:
            raise NotFoundError(f"Reading {reading_id} not found", code="READING_NOT_FOUND")
        return reading

    async def _occupant(self, reading: FlowReading) -> FlowReading | None:
        return await self._call_store(
            self._store.load_reading(reading.pipeline_id, reading.reading_date, reading.reading_slot_id)
        )

    async def _commit(self, reading: FlowReading, expected_version: int, event: ReadingEvent) -> FlowReading:
        stored = await self._call_store(self._store.commit_transition(reading, expected_version, (event,)))
        logger.info(
            "Reading %s %s by user %s (%s -> %s, v%s)",
            stored.id,
            event.kind.value,
            event.actor_id,
            event.old_status.value if event.old_status else "NONE",
            event.new_status.value,
            stored.version,
        )
        return stored

    async def _evaluate(self, reading: FlowReading) -> ReadingEvaluation:
        threshold = await self._call_store(self._store.load_active_threshold(reading.pipeline_id))
        return evaluate_reading(reading.measurements, threshold)

    @staticmethod
    def _ensure_owner(reading: FlowReading, actor_id: int) -> None:
        if reading.recorded_by_id != actor_id:
            raise ForbiddenError(
                "Only the operator who recorded the reading can change it",
                code="READING_NOT_OWNER",
            )

    # -- notifications ----------------------------------------------------

    async def _dispatch(self, event: NotificationEvent, audience: Audience) -> None:
        try:
            await self._notifications.append(event, audience)
        except Exception:
            logger.exception("Failed to store notification %s for %s", event.id, audience)
        try:
            self._hub.publish(event, audience)
        except Exception:
            logger.exception("Failed to publish notification %s for %s", event.id, audience)

    @staticmethod
    def _severity_for(level: AlertLevel | None, requested: Severity) -> Severity:
        if level is AlertLevel.BREACH:
            return Severity.URGENT
        return requested

    # -- drafts -----------------------------------------------------------

    async def create_or_update_draft(self, data: ReadingInput, *, actor_id: int) -> FlowReading:
        """Save the operator's draft for a slot, reusing their own open draft."""
        draft = FlowReading(
            pipeline_id=data.pipeline_id,
            reading_date=data.reading_date,
            reading_slot_id=data.reading_slot_id,
            recorded_by_id=actor_id,
            **data.values(),
        )
        async with self._locks.hold(draft.key):
            occupant = await self._occupant(draft)
            if (
                occupant is not None
                and occupant.validation_status is ReadingStatus.DRAFT
                and occupant.recorded_by_id == actor_id
            ):
                edited, event = self._machine.edit(
                    reading=occupant, changes=data.values(), actor_id=actor_id, occupant=occupant
                )
                return await self._commit(edited, occupant.version, event)

            created, event = self._machine.create(draft=draft, actor_id=actor_id, occupant=occupant)
            return await self._commit(created, 0, event)

    async def update_draft(self, reading_id: int, changes: Mapping[str, Any], *, actor_id: int) -> FlowReading:
        reading = await self._require(reading_id)
        async with self._locks.hold(reading.key):
            reading = await self._require(reading_id)
            self._ensure_owner(reading, actor_id)
            occupant = await self._occupant(reading)
            edited, event = self._machine.edit(reading=reading, changes=changes, actor_id=actor_id, occupant=occupant)
            return await self._commit(edited, reading.version, event)

    # -- transitions ------------------------------------------------------

    async def submit(
        self,
        reading_id: int,
        *,
        actor_id: int,
        severity: Severity = Severity.NORMAL,
    ) -> FlowReading:
        reading = await self._require(reading_id)
        async with self._locks.hold(reading.key):
            reading = await self._require(reading_id)
            self._ensure_owner(reading, actor_id)
            occupant = await self._occupant(reading)
            evaluation = await self._evaluate(reading)
            submitted, event = self._machine.submit(
                reading=reading,
                actor_id=actor_id,
                occupant=occupant,
                alert_level=evaluation.level,
            )
            stored = await self._commit(submitted, reading.version, event)

        await self._dispatch(self._submitted_notification(stored, evaluation, severity), Audience.validators())
        return stored

    async def validate(self, reading_id: int, *, validator_id: int) -> FlowReading:
        reading = await self._require(reading_id)
        async with self._locks.hold(reading.key):
            reading = await self._require(reading_id)
            evaluation = await self._evaluate(reading)
            validated, event = self._machine.validate(
                reading=reading,
                validator_id=validator_id,
                has_authority=self._authorization.has_authority(validator_id, self._validator_authority),
                alert_level=evaluation.level,
            )
            stored = await self._commit(validated, reading.version, event)

        await self._dispatch(
            NotificationEvent(
                title="Reading validated",
                message=f"Your reading for {stored.key} was validated.",
                type=NOTIFICATION_READING_VALIDATED,
                severity=self._severity_for(evaluation.level, Severity.NORMAL),
                related_entity_id=stored.id,
            ),
            Audience.user(stored.recorded_by_id),
        )
        return stored

    async def reject(self, reading_id: int, *, validator_id: int, reason: str | None) -> FlowReading:
        reading = await self._require(reading_id)
        async with self._locks.hold(reading.key):
            reading = await self._require(reading_id)
            rejected, event = self._machine.reject(
                reading=reading,
                validator_id=validator_id,
                has_authority=self._authorization.has_authority(validator_id, self._validator_authority),
                reason=reason,
            )
            stored = await self._commit(rejected, reading.version, event)

        await self._dispatch(
            NotificationEvent(
                title="Reading rejected",
                message=f"Your reading for {stored.key} was rejected: {stored.rejection_reason}",
                type=NOTIFICATION_READING_REJECTED,
                severity=Severity.HIGH,
                related_entity_id=stored.id,
            ),
            Audience.user(stored.recorded_by_id),
        )
        return stored

    async def submit_reading(
        self,
        data: ReadingInput,
        *,
        actor_id: int,
        severity: Severity = Severity.NORMAL,
    ) -> FlowReading:
        """Save the draft and, when asked, submit it in the same call.

        An occupied slot fails with ``ConflictError`` naming the holder. Rejected
        readings are corrected through ``resubmit`` so they keep their id.
        """
        draft = await self.create_or_update_draft(data, actor_id=actor_id)
        if not data.submit_immediately:
            return draft
        return await self.submit(draft.id, actor_id=actor_id, severity=severity)

    async def resubmit(
        self,
        reading_id: int,
        changes: Mapping[str, Any],
        *,
        actor_id: int,
        severity: Severity = Severity.NORMAL,
    ) -> FlowReading:
        """Correct a rejected reading and submit it again under the same id."""
        if changes:
            await self.update_draft(reading_id, changes, actor_id=actor_id)
        return await self.submit(reading_id, actor_id=actor_id, severity=severity)

    def _submitted_notification(
        self,
        reading: FlowReading,
        evaluation: ReadingEvaluation,
        requested: Severity,
    ) -> NotificationEvent:
        if evaluation.is_breach:
            breached = ", ".join(evaluation.parameters_at(AlertLevel.BREACH))
            return NotificationEvent(
                title=f"Threshold breach on pipeline {reading.pipeline_id}",
                message=f"Reading {reading.id} for {reading.key} breaches limits: {breached}.",
                type=NOTIFICATION_READING_BREACH,
                severity=self._severity_for(evaluation.level, requested),
                related_entity_id=reading.id,
            )
        return NotificationEvent(
            title="Reading awaiting validation",
            message=f"Reading {reading.id} for {reading.key} was submitted ({evaluation.level.value}).",
            type=NOTIFICATION_READING_SUBMITTED,
            severity=self._severity_for(evaluation.level, requested),
            related_entity_id=reading.id,
        )

    # -- batches ----------------------------------------------------------

    async def batch_validate(self, reading_ids: Iterable[int], *, validator_id: int) -> BatchResult:
        result = BatchResult()
        for reading_id in reading_ids:
            try:
                result.succeeded.append(await self.validate(reading_id, validator_id=validator_id))
            except DomainError as exc:
                result.failed.append(BatchFailure(reading_id=reading_id, code=exc.code, message=exc.message))
        return result

    async def batch_reject(self, reading_ids: Iterable[int], *, validator_id: int, reason: str | None) -> BatchResult:
        result = BatchResult()
        for reading_id in reading_ids:
            try:
                result.succeeded.append(await self.reject(reading_id, validator_id=validator_id, reason=reason))
            except DomainError as exc:
                result.failed.append(BatchFailure(reading_id=reading_id, code=exc.code, message=exc.message))
        return result

    # -- queries ----------------------------------------------------------

    async def evaluate_reading(self, values: Mapping[str, float | None], *, pipeline_id: int) -> ReadingEvaluation:
        """Preview classification for the entry form."""
        ensure_finite_measurements(values)
        threshold = await self._call_store(self._store.load_active_threshold(pipeline_id))
        return evaluate_reading(values, threshold)

    async def get_reading(self, reading_id: int) -> FlowReading:
        return await self._require(reading_id)

    async def list_pending(self, *, pipeline_id: int | None = None, limit: int = 100) -> list[FlowReading]:
        return await self._call_store(
            self._store.list_readings(status=ReadingStatus.SUBMITTED, pipeline_id=pipeline_id, limit=limit)
        )

    async def history(self, reading_id: int) -> list[ReadingEvent]:
        await self._require(reading_id)
        return await self._call_store(self._store.list_history(reading_id))

    # -- thresholds -------------------------------------------------------

    async def get_threshold(self, pipeline_id: int) -> FlowThreshold:
        threshold = await self._call_store(self._store.load_active_threshold(pipeline_id))
        if threshold is None:
            raise NotFoundError(f"No active threshold for pipeline {pipeline_id}", code="THRESHOLD_NOT_FOUND")
        return threshold

    async def save_threshold(self, threshold: FlowThreshold, *, actor_id: int) -> FlowThreshold:
        validate_threshold_config(threshold)
        saved = await self._call_store(self._store.save_threshold(threshold))
        logger.info("Threshold %s saved for pipeline %s by user %s", saved.id, saved.pipeline_id, actor_id)
        return saved
