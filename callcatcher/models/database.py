"""
Database Models

SQLAlchemy ORM models for the CallCatcher multi-tenant scheduling core.

All instants are stored as UTC. Business-local wall-clock values only
exist in business_hours and are converted per calendar date.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text,
    TypeDecorator, UniqueConstraint, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column normalised to UTC.

    Naive values are rejected on the way in so a local wall-clock time can
    never be persisted without its zone. Values always come back aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError(f"Naive datetime cannot be stored: {value!r}")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            # SQLite has no tz-aware storage; keep a uniform UTC text form
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )


class BusinessStatus(str, Enum):
    """Business status enumeration."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Statuses that occupy time on the calendar
BLOCKING_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)


class BookingAttemptStatus(str, Enum):
    """Booking attempt status enumeration."""
    PENDING = "pending"
    COMMITTED = "committed"
    REJECTED_CONFLICT = "rejected_conflict"
    REJECTED_VALIDATION = "rejected_validation"


class Business(Base, TimestampMixin):
    """
    Business model (Tenant).

    Read-only to the scheduling core. business_hours is keyed by lowercase
    weekday name:

        {"monday": {"start": "08:00", "end": "18:00", "enabled": true}, ...}
    """

    __tablename__ = "businesses"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    transfer_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")
    business_hours: Mapped[dict] = mapped_column(JSON, default=dict)
    slot_duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    slot_interval_minutes: Mapped[int] = mapped_column(Integer, default=30)
    booking_horizon_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[BusinessStatus] = mapped_column(
        SQLEnum(BusinessStatus),
        default=BusinessStatus.ACTIVE
    )

    def __repr__(self) -> str:
        return f"<Business(id={self.id}, name='{self.name}', timezone='{self.timezone}')>"


class ServiceType(Base, TimestampMixin):
    """A bookable service offered by a business."""

    __tablename__ = "service_types"
    __table_args__ = (
        Index("idx_service_business", "business_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    keywords: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<ServiceType(id={self.id}, name='{self.name}')>"


class CalendarSlot(Base, TimestampMixin):
    """
    Precomputed bookable window.

    Produced by the slot generator, read by availability, and flipped to
    unavailable only by the booking manager.
    """

    __tablename__ = "calendar_slots"
    __table_args__ = (
        UniqueConstraint("business_id", "slot_start", name="uq_slot_business_start"),
        Index("idx_slot_lookup", "business_id", "slot_start", "is_available"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    slot_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    slot_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    block_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CalendarSlot(id={self.id}, start={self.slot_start.isoformat()}, "
            f"available={self.is_available}, blocked={self.is_blocked})>"
        )


class Appointment(Base, TimestampMixin):
    """
    Appointment model.

    Created once per successful booking. Cancellation changes the status
    and frees the slot; records are never deleted.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_business_start", "business_id", "start_time"),
        Index("idx_appointment_status", "business_id", "status"),
        Index("idx_appointment_slot", "slot_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    service_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("service_types.id", ondelete="SET NULL"),
        nullable=True
    )
    slot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("calendar_slots.id", ondelete="RESTRICT"),
        nullable=True
    )
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    service_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus),
        default=AppointmentStatus.SCHEDULED
    )
    booking_source: Mapped[str] = mapped_column(String(50), default="ai_phone")
    call_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, business_id={self.business_id}, "
            f"start={self.start_time}, status={self.status.value})>"
        )


class BookingAttempt(Base, TimestampMixin):
    """
    Idempotency ledger for booking commits.

    One row per idempotency token; a replayed token returns the stored
    outcome instead of booking again.
    """

    __tablename__ = "booking_attempts"
    __table_args__ = (
        UniqueConstraint("idempotency_token", name="uq_booking_attempt_token"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    idempotency_token: Mapped[str] = mapped_column(String(128), nullable=False)
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    call_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    slot_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[BookingAttemptStatus] = mapped_column(
        SQLEnum(BookingAttemptStatus),
        default=BookingAttemptStatus.PENDING
    )
    appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<BookingAttempt(token='{self.idempotency_token}', "
            f"status={self.status.value})>"
        )
