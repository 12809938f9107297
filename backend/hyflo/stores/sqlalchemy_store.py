"""SQLAlchemy-backed reading store.

Sessions are short lived and opened inside worker threads; the async methods
only hop to a thread and back so the event loop never waits on the database.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import date, datetime, timezone
from typing import TypeVar

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..domain import MEASUREMENT_FIELDS, AlertLevel, FlowReading, FlowThreshold, ReadingKey, ReadingStatus, now_utc
from ..domain_errors import ConflictError, DomainError, NotFoundError, StorageError
from ..models import ReadingAuditEvent, ReadingRecord, ThresholdRecord
from ..services.reading_state import ReadingEvent, ReadingEventKind
from ..services.threshold_rules import validate_threshold_config

logger = logging.getLogger(__name__)

T = TypeVar("T")

_READING_COLUMNS = (
    "pipeline_id",
    "reading_date",
    "reading_slot_id",
    *MEASUREMENT_FIELDS,
    "notes",
    "recorded_by_id",
    "recorded_at",
    "validated_by_id",
    "validated_at",
    "rejection_reason",
    "created_at",
    "updated_at",
)
_THRESHOLD_COLUMNS = tuple(f"{name}_{side}" for name in MEASUREMENT_FIELDS for side in ("min", "max"))


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_reading(row: ReadingRecord) -> FlowReading:
    return FlowReading(
        id=row.id,
        pipeline_id=row.pipeline_id,
        reading_date=row.reading_date,
        reading_slot_id=row.reading_slot_id,
        pressure=row.pressure,
        temperature=row.temperature,
        flow_rate=row.flow_rate,
        contained_volume=row.contained_volume,
        notes=row.notes,
        recorded_by_id=row.recorded_by_id,
        recorded_at=_as_utc(row.recorded_at),
        validation_status=ReadingStatus(row.validation_status),
        validated_by_id=row.validated_by_id,
        validated_at=_as_utc(row.validated_at),
        rejection_reason=row.rejection_reason,
        alert_level=AlertLevel(row.alert_level) if row.alert_level else None,
        version=row.version,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _reading_values(reading: FlowReading) -> dict:
    values = {name: getattr(reading, name) for name in _READING_COLUMNS}
    values["validation_status"] = reading.validation_status.value
    values["alert_level"] = reading.alert_level.value if reading.alert_level else None
    return values


def _to_threshold(row: ThresholdRecord) -> FlowThreshold:
    return FlowThreshold(
        id=row.id,
        pipeline_id=row.pipeline_id,
        alert_tolerance=row.alert_tolerance,
        active=row.active,
        updated_at=_as_utc(row.updated_at),
        **{name: getattr(row, name) for name in _THRESHOLD_COLUMNS},
    )


def _to_event(row: ReadingAuditEvent) -> ReadingEvent:
    return ReadingEvent(
        kind=ReadingEventKind(row.action),
        reading_id=row.reading_id,
        actor_id=row.actor_id,
        old_status=ReadingStatus(row.old_status) if row.old_status else None,
        new_status=ReadingStatus(row.new_status),
        occurred_at=_as_utc(row.created_at),
        details=dict(row.details or {}),
    )


def _slot_holder_query(db: Session, key: ReadingKey):
    return db.query(ReadingRecord).filter(
        and_(
            ReadingRecord.pipeline_id == key.pipeline_id,
            ReadingRecord.reading_date == key.reading_date,
            ReadingRecord.reading_slot_id == key.reading_slot_id,
            ReadingRecord.validation_status != ReadingStatus.REJECTED.value,
        )
    )


def _version_conflict(reading_id: int | None, expected: int, current: int | None) -> ConflictError:
    return ConflictError(
        f"Reading {reading_id} was modified concurrently",
        code="READING_VERSION_CONFLICT",
        conflicting_reading_id=reading_id,
        details={"expectedVersion": expected, "currentVersion": current},
    )


class SqlAlchemyReadingStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _read(self, work: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            return work(db)
        except SQLAlchemyError as exc:
            logger.warning("Reading store query failed: %s", exc)
            raise StorageError() from exc
        finally:
            db.close()

    async def get_reading(self, reading_id: int) -> FlowReading | None:
        def work(db: Session) -> FlowReading | None:
            row = db.get(ReadingRecord, reading_id)
            return _to_reading(row) if row else None

        return await asyncio.to_thread(self._read, work)

    async def load_reading(self, pipeline_id: int, reading_date: date, reading_slot_id: int) -> FlowReading | None:
        key = ReadingKey(pipeline_id, reading_date, reading_slot_id)

        def work(db: Session) -> FlowReading | None:
            row = _slot_holder_query(db, key).first()
            return _to_reading(row) if row else None

        return await asyncio.to_thread(self._read, work)

    async def list_readings(
        self,
        *,
        status: ReadingStatus | None = None,
        pipeline_id: int | None = None,
        limit: int = 100,
    ) -> list[FlowReading]:
        def work(db: Session) -> list[FlowReading]:
            query = db.query(ReadingRecord)
            if status is not None:
                query = query.filter(ReadingRecord.validation_status == status.value)
            if pipeline_id is not None:
                query = query.filter(ReadingRecord.pipeline_id == pipeline_id)
            rows = (
                query.order_by(ReadingRecord.reading_date, ReadingRecord.reading_slot_id, ReadingRecord.id)
                .limit(limit)
                .all()
            )
            return [_to_reading(row) for row in rows]

        return await asyncio.to_thread(self._read, work)

    async def list_history(self, reading_id: int) -> list[ReadingEvent]:
        def work(db: Session) -> list[ReadingEvent]:
            rows = (
                db.query(ReadingAuditEvent)
                .filter(ReadingAuditEvent.reading_id == reading_id)
                .order_by(ReadingAuditEvent.id)
                .all()
            )
            return [_to_event(row) for row in rows]

        return await asyncio.to_thread(self._read, work)

    async def load_active_threshold(self, pipeline_id: int) -> FlowThreshold | None:
        def work(db: Session) -> FlowThreshold | None:
            row = (
                db.query(ThresholdRecord)
                .filter(ThresholdRecord.pipeline_id == pipeline_id, ThresholdRecord.active.is_(True))
                .first()
            )
            return _to_threshold(row) if row else None

        return await asyncio.to_thread(self._read, work)

    async def save_threshold(self, threshold: FlowThreshold) -> FlowThreshold:
        validate_threshold_config(threshold)
        return await asyncio.shield(asyncio.to_thread(self._save_threshold_sync, threshold))

    async def commit_transition(
        self,
        reading: FlowReading,
        expected_version: int,
        events: Sequence[ReadingEvent] = (),
    ) -> FlowReading:
        # A started commit must finish even if the request is cancelled.
        return await asyncio.shield(
            asyncio.to_thread(self._commit_sync, reading, expected_version, tuple(events))
        )

    def _save_threshold_sync(self, threshold: FlowThreshold) -> FlowThreshold:
        db = self._session_factory()
        try:
            if threshold.active:
                (
                    db.query(ThresholdRecord)
                    .filter(ThresholdRecord.pipeline_id == threshold.pipeline_id, ThresholdRecord.active.is_(True))
                    .update({"active": False, "updated_at": now_utc()}, synchronize_session=False)
                )
            row = ThresholdRecord(
                pipeline_id=threshold.pipeline_id,
                alert_tolerance=threshold.alert_tolerance,
                active=threshold.active,
                updated_at=now_utc(),
                **{name: getattr(threshold, name) for name in _THRESHOLD_COLUMNS},
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_threshold(row)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Failed to save threshold for pipeline %s: %s", threshold.pipeline_id, exc)
            raise StorageError() from exc
        finally:
            db.close()

    def _commit_sync(
        self,
        reading: FlowReading,
        expected_version: int,
        events: tuple[ReadingEvent, ...],
    ) -> FlowReading:
        db = self._session_factory()
        try:
            if reading.holds_slot:
                holder = _slot_holder_query(db, reading.key).first()
                if holder is not None and holder.id != reading.id:
                    raise ConflictError(
                        f"Reading {holder.id} already exists for {reading.key}",
                        conflicting_reading_id=holder.id,
                    )

            new_version = expected_version + 1
            values = _reading_values(reading)
            if reading.id is None:
                if expected_version != 0:
                    raise _version_conflict(None, expected_version, None)
                row = ReadingRecord(**values, version=new_version)
                db.add(row)
                db.flush()
                reading_id = row.id
            else:
                reading_id = reading.id
                updated = (
                    db.query(ReadingRecord)
                    .filter(ReadingRecord.id == reading_id, ReadingRecord.version == expected_version)
                    .update({**values, "version": new_version}, synchronize_session=False)
                )
                if updated == 0:
                    current = db.query(ReadingRecord.version).filter(ReadingRecord.id == reading_id).scalar()
                    if current is None:
                        raise NotFoundError(f"Reading {reading_id} not found", code="READING_NOT_FOUND")
                    raise _version_conflict(reading_id, expected_version, current)

            for event in events:
                db.add(
                    ReadingAuditEvent(
                        reading_id=reading_id,
                        action=event.kind.value,
                        actor_id=event.actor_id,
                        old_status=event.old_status.value if event.old_status else None,
                        new_status=event.new_status.value,
                        version=new_version,
                        details=dict(event.details),
                        created_at=event.occurred_at,
                    )
                )

            db.commit()
            row = db.get(ReadingRecord, reading_id, populate_existing=True)
            return _to_reading(row)
        except DomainError:
            db.rollback()
            raise
        except IntegrityError as exc:
            db.rollback()
            # Lost the race on the partial unique index.
            holder = _slot_holder_query(db, reading.key).first()
            holder_id = holder.id if holder is not None else None
            raise ConflictError(
                f"Reading {holder_id} already exists for {reading.key}",
                conflicting_reading_id=holder_id,
            ) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Commit failed for reading %s: %s", reading.id, exc)
            raise StorageError() from exc
        finally:
            db.close()
