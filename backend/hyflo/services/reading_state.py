"""Flow reading lifecycle rules.

Transitions never mutate their input: each returns a new ``FlowReading`` and
the ``ReadingEvent`` describing it. Version bumps happen in the store on commit.
"""
from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..domain import (
    INSTRUMENT_LIMITS,
    MEASUREMENT_FIELDS,
    MEASUREMENT_UNITS,
    AlertLevel,
    FlowReading,
    ReadingStatus,
    now_utc,
)
from ..domain_errors import ConflictError, ForbiddenError, InvalidStateError, ValidationError


class ReadingEventKind(str, Enum):
    CREATED = "reading_created"
    UPDATED = "reading_updated"
    SUBMITTED = "reading_submitted"
    VALIDATED = "reading_validated"
    REJECTED = "reading_rejected"


_STATUS_ALIASES: dict[str, ReadingStatus] = {
    "PENDING": ReadingStatus.SUBMITTED,
    "PENDING_VALIDATION": ReadingStatus.SUBMITTED,
    "APPROVED": ReadingStatus.VALIDATED,
}

_EVENT_TARGETS: dict[ReadingEventKind, ReadingStatus] = {
    ReadingEventKind.CREATED: ReadingStatus.DRAFT,
    ReadingEventKind.UPDATED: ReadingStatus.DRAFT,
    ReadingEventKind.SUBMITTED: ReadingStatus.SUBMITTED,
    ReadingEventKind.VALIDATED: ReadingStatus.VALIDATED,
    ReadingEventKind.REJECTED: ReadingStatus.REJECTED,
}

_ALLOWED_TRANSITIONS: dict[ReadingStatus | None, set[ReadingEventKind]] = {
    None: {ReadingEventKind.CREATED},
    ReadingStatus.DRAFT: {ReadingEventKind.UPDATED, ReadingEventKind.SUBMITTED},
    ReadingStatus.SUBMITTED: {ReadingEventKind.VALIDATED, ReadingEventKind.REJECTED},
    ReadingStatus.VALIDATED: set(),
    # Edit back to draft, or correct and resubmit in one step.
    ReadingStatus.REJECTED: {ReadingEventKind.UPDATED, ReadingEventKind.SUBMITTED},
}

EDITABLE_FIELDS: frozenset[str] = frozenset(MEASUREMENT_FIELDS) | {"notes"}


@dataclass(frozen=True)
class ReadingEvent:
    kind: ReadingEventKind
    reading_id: int | None
    actor_id: int
    old_status: ReadingStatus | None
    new_status: ReadingStatus
    occurred_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


def normalize_reading_status(status: str | ReadingStatus | None) -> ReadingStatus | None:
    if status is None:
        return None
    if isinstance(status, ReadingStatus):
        return status
    code = status.strip().upper()
    if code in _STATUS_ALIASES:
        return _STATUS_ALIASES[code]
    try:
        return ReadingStatus(code)
    except ValueError:
        raise ValidationError(f"Unknown reading status: {status}", code="READING_STATUS_UNKNOWN") from None


def next_status(*, current: ReadingStatus | None, event: ReadingEventKind) -> ReadingStatus:
    target = _EVENT_TARGETS[event]
    if event not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            current_status=current.value if current else "NONE",
            attempted_status=target.value,
        )
    return target


def _raise_out_of_range(errors: dict[str, str]) -> None:
    if errors:
        raise ValidationError(
            "Measurement outside instrument range",
            code="READING_MEASUREMENT_OUT_OF_RANGE",
            details={"fields": errors},
        )


def ensure_finite_measurements(values: Mapping[str, float | None]) -> None:
    """Refuse NaN and infinite values."""
    _raise_out_of_range({
        name: "must be a finite number"
        for name in MEASUREMENT_FIELDS
        if values.get(name) is not None and not math.isfinite(values[name])
    })


def validate_measurements(values: Mapping[str, float | None]) -> None:
    """Reject values outside the instrument range of each parameter."""
    ensure_finite_measurements(values)
    errors: dict[str, str] = {}
    for name in MEASUREMENT_FIELDS:
        value = values.get(name)
        if value is None:
            continue
        low, high = INSTRUMENT_LIMITS[name]
        unit = MEASUREMENT_UNITS[name]
        if low is not None and value < low:
            errors[name] = f"must be at least {low:g} {unit}"
        elif high is not None and value > high:
            errors[name] = f"must be at most {high:g} {unit}"
    _raise_out_of_range(errors)


def validate_notes(notes: str | None, *, max_length: int) -> None:
    if notes is not None and len(notes) > max_length:
        raise ValidationError(
            f"Notes must not exceed {max_length} characters",
            code="READING_NOTES_TOO_LONG",
            details={"maxLength": max_length},
        )


def validate_rejection_reason(reason: str | None, *, min_length: int) -> str:
    cleaned = (reason or "").strip()
    if len(cleaned) < min_length:
        raise ValidationError(
            f"Rejection reason must be at least {min_length} characters",
            code="REJECTION_REASON_INVALID",
            details={"minLength": min_length},
        )
    return cleaned


def ensure_has_measurement(reading: FlowReading) -> None:
    if not reading.has_measurement:
        raise ValidationError(
            "At least one measurement is required to submit a reading",
            code="READING_MEASUREMENT_REQUIRED",
        )


def ensure_slot_available(*, reading: FlowReading, occupant: FlowReading | None) -> None:
    """At most one non-rejected reading per (pipeline, date, slot)."""
    if occupant is None or not occupant.holds_slot:
        return
    if reading.id is not None and occupant.id == reading.id:
        return
    raise ConflictError(
        f"Reading {occupant.id} already exists for {reading.key}",
        conflicting_reading_id=occupant.id,
    )


def ensure_validator_authority(*, actor_id: int, has_authority: bool) -> None:
    if not has_authority:
        raise ForbiddenError(
            f"User {actor_id} is not allowed to validate readings",
            code="READING_VALIDATION_FORBIDDEN",
        )


def ensure_segregation_of_duties(*, reading: FlowReading, actor_id: int) -> None:
    if reading.recorded_by_id == actor_id:
        raise ForbiddenError(
            "A reading cannot be validated by the operator who recorded it",
            code="READING_SELF_VALIDATION_FORBIDDEN",
        )


class ReadingStateMachine:
    """Legality of every reading transition, one reading at a time."""

    def __init__(
        self,
        *,
        notes_max_length: int = 500,
        rejection_reason_min_length: int = 5,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.notes_max_length = notes_max_length
        self.rejection_reason_min_length = rejection_reason_min_length
        self._clock = clock

    def _event(
        self,
        *,
        kind: ReadingEventKind,
        before: FlowReading | None,
        after: FlowReading,
        actor_id: int,
        at: datetime,
        **details: Any,
    ) -> ReadingEvent:
        return ReadingEvent(
            kind=kind,
            reading_id=after.id,
            actor_id=actor_id,
            old_status=before.validation_status if before else None,
            new_status=after.validation_status,
            occurred_at=at,
            details={k: v for k, v in details.items() if v is not None},
        )

    def create(
        self,
        *,
        draft: FlowReading,
        actor_id: int,
        occupant: FlowReading | None,
    ) -> tuple[FlowReading, ReadingEvent]:
        status = next_status(current=None, event=ReadingEventKind.CREATED)
        validate_measurements(draft.measurements)
        validate_notes(draft.notes, max_length=self.notes_max_length)
        ensure_slot_available(reading=draft, occupant=occupant)

        at = self._clock()
        created = replace(
            draft,
            id=None,
            version=0,
            recorded_by_id=actor_id,
            validation_status=status,
            validated_by_id=None,
            validated_at=None,
            rejection_reason=None,
            alert_level=None,
            created_at=at,
            updated_at=at,
        )
        return created, self._event(kind=ReadingEventKind.CREATED, before=None, after=created, actor_id=actor_id, at=at)

    def edit(
        self,
        *,
        reading: FlowReading,
        changes: Mapping[str, Any],
        actor_id: int,
        occupant: FlowReading | None,
    ) -> tuple[FlowReading, ReadingEvent]:
        status = next_status(current=reading.validation_status, event=ReadingEventKind.UPDATED)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Only measurements and notes can be edited",
                code="READING_FIELD_NOT_EDITABLE",
                details={"fields": sorted(unknown)},
            )

        at = self._clock()
        # Rejection reason stays visible until a resubmission succeeds.
        edited = replace(reading, **dict(changes), validation_status=status, updated_at=at)
        validate_measurements(edited.measurements)
        validate_notes(edited.notes, max_length=self.notes_max_length)
        if reading.validation_status is ReadingStatus.REJECTED:
            ensure_slot_available(reading=edited, occupant=occupant)

        return edited, self._event(
            kind=ReadingEventKind.UPDATED,
            before=reading,
            after=edited,
            actor_id=actor_id,
            at=at,
            fields=sorted(changes) or None,
        )

    def submit(
        self,
        *,
        reading: FlowReading,
        actor_id: int,
        occupant: FlowReading | None,
        alert_level: AlertLevel | None = None,
    ) -> tuple[FlowReading, ReadingEvent]:
        status = next_status(current=reading.validation_status, event=ReadingEventKind.SUBMITTED)
        ensure_has_measurement(reading)
        validate_measurements(reading.measurements)
        validate_notes(reading.notes, max_length=self.notes_max_length)
        ensure_slot_available(reading=reading, occupant=occupant)

        at = self._clock()
        submitted = replace(
            reading,
            validation_status=status,
            recorded_at=at,
            validated_by_id=None,
            validated_at=None,
            rejection_reason=None,
            alert_level=alert_level,
            updated_at=at,
        )
        return submitted, self._event(
            kind=ReadingEventKind.SUBMITTED,
            before=reading,
            after=submitted,
            actor_id=actor_id,
            at=at,
            alertLevel=alert_level.value if alert_level else None,
            previousRejectionReason=reading.rejection_reason,
        )

    def validate(
        self,
        *,
        reading: FlowReading,
        validator_id: int,
        has_authority: bool,
        alert_level: AlertLevel | None = None,
    ) -> tuple[FlowReading, ReadingEvent]:
        ensure_validator_authority(actor_id=validator_id, has_authority=has_authority)
        ensure_segregation_of_duties(reading=reading, actor_id=validator_id)
        status = next_status(current=reading.validation_status, event=ReadingEventKind.VALIDATED)

        at = self._clock()
        validated = replace(
            reading,
            validation_status=status,
            validated_by_id=validator_id,
            validated_at=at,
            alert_level=alert_level if alert_level is not None else reading.alert_level,
            updated_at=at,
        )
        return validated, self._event(
            kind=ReadingEventKind.VALIDATED,
            before=reading,
            after=validated,
            actor_id=validator_id,
            at=at,
            alertLevel=validated.alert_level.value if validated.alert_level else None,
        )

    def reject(
        self,
        *,
        reading: FlowReading,
        validator_id: int,
        has_authority: bool,
        reason: str | None,
    ) -> tuple[FlowReading, ReadingEvent]:
        ensure_validator_authority(actor_id=validator_id, has_authority=has_authority)
        cleaned = validate_rejection_reason(reason, min_length=self.rejection_reason_min_length)
        status = next_status(current=reading.validation_status, event=ReadingEventKind.REJECTED)

        at = self._clock()
        rejected = replace(
            reading,
            validation_status=status,
            validated_by_id=validator_id,
            validated_at=at,
            rejection_reason=cleaned,
            updated_at=at,
        )
        return rejected, self._event(
            kind=ReadingEventKind.REJECTED,
            before=reading,
            after=rejected,
            actor_id=validator_id,
            at=at,
            reason=cleaned,
        )
