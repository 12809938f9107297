"""Domain value objects shared by the workflow, the stores and the hub."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, NamedTuple
from uuid import UUID, uuid4


class ReadingStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"


class AlertLevel(str, Enum):
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    BREACH = "BREACH"

    @property
    def rank(self) -> int:
        return _ALERT_RANK[self]


class Severity(str, Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_ALERT_RANK = {AlertLevel.NORMAL: 0, AlertLevel.WARNING: 1, AlertLevel.BREACH: 2}
_SEVERITY_RANK = {Severity.NORMAL: 0, Severity.HIGH: 1, Severity.URGENT: 2}

# Statuses that hold the (pipeline, date, slot) key.
SLOT_HOLDING_STATUSES: frozenset[ReadingStatus] = frozenset(
    {ReadingStatus.DRAFT, ReadingStatus.SUBMITTED, ReadingStatus.VALIDATED}
)

MEASUREMENT_FIELDS: tuple[str, ...] = ("pressure", "temperature", "flow_rate", "contained_volume")

# Hard physical (instrument) ranges; None means unbounded on that side.
INSTRUMENT_LIMITS: dict[str, tuple[float | None, float | None]] = {
    "pressure": (0.0, 500.0),
    "temperature": (-50.0, 200.0),
    "flow_rate": (0.0, None),
    "contained_volume": (0.0, None),
}

MEASUREMENT_UNITS: dict[str, str] = {
    "pressure": "bar",
    "temperature": "°C",
    "flow_rate": "m³/h",
    "contained_volume": "m³",
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReadingKey(NamedTuple):
    pipeline_id: int
    reading_date: date
    reading_slot_id: int

    def __str__(self) -> str:
        return f"pipeline={self.pipeline_id} date={self.reading_date.isoformat()} slot={self.reading_slot_id}"


@dataclass(frozen=True)
class FlowReading:
    """One measurement event. Transitions produce new instances."""

    pipeline_id: int
    reading_date: date
    reading_slot_id: int
    recorded_by_id: int
    id: int | None = None
    pressure: float | None = None
    temperature: float | None = None
    flow_rate: float | None = None
    contained_volume: float | None = None
    notes: str | None = None
    recorded_at: datetime | None = None
    validation_status: ReadingStatus = ReadingStatus.DRAFT
    validated_by_id: int | None = None
    validated_at: datetime | None = None
    rejection_reason: str | None = None
    alert_level: AlertLevel | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> ReadingKey:
        return ReadingKey(self.pipeline_id, self.reading_date, self.reading_slot_id)

    @property
    def measurements(self) -> dict[str, float]:
        """Present measurement values only."""
        values = {name: getattr(self, name) for name in MEASUREMENT_FIELDS}
        return {name: value for name, value in values.items() if value is not None}

    @property
    def has_measurement(self) -> bool:
        return bool(self.measurements)

    @property
    def holds_slot(self) -> bool:
        return self.validation_status in SLOT_HOLDING_STATUSES


@dataclass(frozen=True)
class ParameterBounds:
    min: float
    max: float


@dataclass(frozen=True)
class FlowThreshold:
    """Per-pipeline operating envelope; at most one active per pipeline."""

    pipeline_id: int
    alert_tolerance: float = 0.0
    active: bool = True
    id: int | None = None
    pressure_min: float | None = None
    pressure_max: float | None = None
    temperature_min: float | None = None
    temperature_max: float | None = None
    flow_rate_min: float | None = None
    flow_rate_max: float | None = None
    contained_volume_min: float | None = None
    contained_volume_max: float | None = None
    updated_at: datetime | None = None

    def bounds_for(self, parameter: str) -> ParameterBounds | None:
        low = getattr(self, f"{parameter}_min", None)
        high = getattr(self, f"{parameter}_max", None)
        if low is None or high is None:
            return None
        return ParameterBounds(min=float(low), max=float(high))


@dataclass
class NotificationEvent:
    title: str
    message: str
    type: str
    severity: Severity = Severity.NORMAL
    related_entity_type: str = "READING"
    related_entity_id: int | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=now_utc)
    is_read: bool = False
    read_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "severity": self.severity.value,
            "relatedEntityType": self.related_entity_type,
            "relatedEntityId": self.related_entity_id,
            "createdAt": self.created_at.isoformat(),
            "isRead": self.is_read,
            "readAt": self.read_at.isoformat() if self.read_at else None,
        }


VALIDATORS_ROLE = "validators"


@dataclass(frozen=True)
class Audience:
    """Either every user in a role or one specific user."""

    role: str | None = None
    user_id: int | None = None

    @classmethod
    def validators(cls) -> "Audience":
        return cls(role=VALIDATORS_ROLE)

    @classmethod
    def user(cls, user_id: int) -> "Audience":
        return cls(user_id=user_id)

    def __str__(self) -> str:
        return f"role:{self.role}" if self.role else f"user:{self.user_id}"
