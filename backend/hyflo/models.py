"""SQLAlchemy models for readings, thresholds and the reading audit trail."""
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


READING_STATUSES = ("DRAFT", "SUBMITTED", "VALIDATED", "REJECTED")


class ReadingRecord(Base):
    """Flow reading row; ``version`` is the optimistic concurrency token."""
    __tablename__ = "flow_readings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, nullable=False, index=True)
    reading_date = Column(Date, nullable=False)
    reading_slot_id = Column(Integer, nullable=False)

    pressure = Column(Float, nullable=True)
    temperature = Column(Float, nullable=True)
    flow_rate = Column(Float, nullable=True)
    contained_volume = Column(Float, nullable=True)
    notes = Column(String(500), nullable=True)

    recorded_by_id = Column(Integer, nullable=False, index=True)
    recorded_at = Column(DateTime(timezone=True), nullable=True)
    validation_status = Column(String(20), nullable=False, default="DRAFT", index=True)
    validated_by_id = Column(Integer, nullable=True)
    validated_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    alert_level = Column(String(10), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    audit_events = relationship(
        "ReadingAuditEvent",
        back_populates="reading",
        order_by="ReadingAuditEvent.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(validation_status.in_(READING_STATUSES), name="chk_flow_reading_status"),
        CheckConstraint(
            "alert_level IS NULL OR alert_level IN ('NORMAL', 'WARNING', 'BREACH')",
            name="chk_flow_reading_alert_level",
        ),
        CheckConstraint(
            "validation_status <> 'REJECTED' OR rejection_reason IS NOT NULL",
            name="chk_flow_reading_rejection_reason",
        ),
        # One live reading per slot; a rejected reading frees its slot.
        Index(
            "uq_flow_readings_active_slot",
            "pipeline_id",
            "reading_date",
            "reading_slot_id",
            unique=True,
            postgresql_where=text("validation_status <> 'REJECTED'"),
            sqlite_where=text("validation_status <> 'REJECTED'"),
        ),
        Index("idx_flow_readings_status_date", "validation_status", "reading_date"),
    )


class ThresholdRecord(Base):
    """Per-pipeline operating envelope."""
    __tablename__ = "flow_thresholds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, nullable=False, index=True)
    pressure_min = Column(Float, nullable=True)
    pressure_max = Column(Float, nullable=True)
    temperature_min = Column(Float, nullable=True)
    temperature_max = Column(Float, nullable=True)
    flow_rate_min = Column(Float, nullable=True)
    flow_rate_max = Column(Float, nullable=True)
    contained_volume_min = Column(Float, nullable=True)
    contained_volume_max = Column(Float, nullable=True)
    alert_tolerance = Column(Float, nullable=False, default=0.0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("alert_tolerance >= 0 AND alert_tolerance <= 50", name="chk_flow_threshold_tolerance"),
        Index(
            "uq_flow_thresholds_active_pipeline",
            "pipeline_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )


class ReadingAuditEvent(Base):
    """Audit trail row written in the same transaction as the transition."""
    __tablename__ = "reading_audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reading_id = Column(Integer, ForeignKey("flow_readings.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    actor_id = Column(Integer, nullable=False)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    version = Column(Integer, nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    reading = relationship("ReadingRecord", back_populates="audit_events")

    __table_args__ = (
        CheckConstraint(
            action.in_([
                "reading_created", "reading_updated", "reading_submitted",
                "reading_validated", "reading_rejected",
            ]),
            name="chk_reading_audit_action",
        ),
    )
