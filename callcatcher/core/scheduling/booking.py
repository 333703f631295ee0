"""
Booking transaction manager.

Commits a chosen slot into an appointment. The slot is re-validated at
commit time and the appointment insert and slot update happen in a single
transaction, so the two can never disagree.

Every request carries an idempotency token. The first request with a
token records a BookingAttempt (pending -> committed | rejected_conflict |
rejected_validation); replays return the stored outcome.

Nothing here retries. The conversation engine decides what to do next.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callcatcher.core.errors import (
    SchedulingError, SlotConflict, UpstreamUnavailable, ValidationError,
)
from callcatcher.infra.database import async_session_factory
from callcatcher.models.database import (
    BLOCKING_STATUSES, Appointment, AppointmentStatus, BookingAttempt,
    BookingAttemptStatus, Business, BusinessStatus, CalendarSlot, ServiceType,
)

logger = logging.getLogger(__name__)

BOOKING_SOURCE = "ai_phone"

# How long a duplicate request waits for an in-flight attempt with its token
PENDING_WAIT_SECONDS = 2.0
PENDING_POLL_SECONDS = 0.1


@dataclass
class Customer:
    """Who the appointment is for."""

    name: str
    phone: Optional[str] = None


@dataclass
class BookingRequest:
    """A request to turn a slot into an appointment."""

    call_id: str
    business_id: Union[str, uuid.UUID]
    service_id: Optional[Union[str, uuid.UUID]]
    customer: Customer
    slot_id: Union[str, uuid.UUID]
    idempotency_token: str


@dataclass
class BookingResult:
    """Outcome of a booking attempt."""

    status: BookingAttemptStatus
    appointment_id: Optional[str] = None
    slot_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    error: Optional[SchedulingError] = None
    replayed: bool = False

    @property
    def committed(self) -> bool:
        """Check if the appointment exists."""
        return self.status == BookingAttemptStatus.COMMITTED

    @property
    def conflict(self) -> bool:
        """Check if the slot was taken."""
        return self.status == BookingAttemptStatus.REJECTED_CONFLICT

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "appointment_id": self.appointment_id,
            "slot_id": self.slot_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "error": str(self.error) if self.error else None,
            "replayed": self.replayed,
        }


class _Rejected(Exception):
    """Internal: abort the booking transaction with a typed reason."""

    def __init__(self, error: SchedulingError):
        super().__init__(str(error))
        self.error = error


class _Settled(Exception):
    """Internal: another request already settled this attempt."""
    pass


def _as_uuid(value: Union[str, uuid.UUID, None], field: str) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid {field}: {value}", field=field) from e


class BookingManager:
    """Atomic, idempotent appointment commits."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        pending_wait_seconds: float = PENDING_WAIT_SECONDS,
    ):
        self._session_factory = session_factory or async_session_factory
        self.pending_wait_seconds = pending_wait_seconds

    async def book(self, request: BookingRequest, *, now: Optional[datetime] = None) -> BookingResult:
        """
        Commit a booking.

        Returns:
            BookingResult: committed, rejected_conflict or rejected_validation

        Raises:
            UpstreamUnavailable: Store failed; nothing was committed
        """
        now = now or datetime.now(timezone.utc)

        try:
            business_id = _as_uuid(request.business_id, "business_id")
            slot_id = _as_uuid(request.slot_id, "slot_id")
            service_id = _as_uuid(request.service_id, "service_id")
        except ValidationError as e:
            return BookingResult(status=BookingAttemptStatus.REJECTED_VALIDATION, error=e)

        try:
            attempt = await self._start_attempt(request, business_id, slot_id)
        except SQLAlchemyError as e:
            logger.error(f"Booking ledger unavailable for call {request.call_id}: {e}")
            raise UpstreamUnavailable("Booking store unavailable") from e

        if isinstance(attempt, BookingResult):
            return attempt

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    appointment = await self._commit(
                        db, request, business_id, slot_id, service_id, attempt, now
                    )
        except _Rejected as rejected:
            return await self._reject(attempt, rejected.error)
        except _Settled:
            return await self._replay_settled(attempt)
        except SQLAlchemyError as e:
            logger.error(
                f"Booking commit failed for call {request.call_id} slot {slot_id} "
                f"(token {request.idempotency_token}): {e}"
            )
            raise UpstreamUnavailable("Booking could not be saved") from e

        logger.info(
            f"Booked appointment {appointment.id} for call {request.call_id} "
            f"at {appointment.start_time.isoformat()}"
        )
        return BookingResult(
            status=BookingAttemptStatus.COMMITTED,
            appointment_id=str(appointment.id),
            slot_id=str(slot_id),
            start=appointment.start_time,
            end=appointment.end_time,
        )

    async def _start_attempt(
        self,
        request: BookingRequest,
        business_id: uuid.UUID,
        slot_id: uuid.UUID,
    ) -> Union[uuid.UUID, BookingResult]:
        """
        Record a pending attempt, or return the stored result of a replay.

        A token that is still pending belongs to a duplicate request in
        flight. Wait briefly for it to settle; if it does not, join it.
        Joining is safe because the slot claim and every status change
        are conditional, so at most one of the two can commit.
        """
        async with self._session_factory() as db:
            existing = await self._find_attempt(db, request.idempotency_token)
            if existing is None:
                attempt = BookingAttempt(
                    idempotency_token=request.idempotency_token,
                    business_id=business_id,
                    call_id=request.call_id,
                    slot_id=slot_id,
                    status=BookingAttemptStatus.PENDING,
                )
                db.add(attempt)
                try:
                    await db.commit()
                    return attempt.id
                except IntegrityError:
                    # Same token raced in from a duplicate event
                    await db.rollback()
                    existing = await self._find_attempt(db, request.idempotency_token)

        if existing.status != BookingAttemptStatus.PENDING:
            async with self._session_factory() as db:
                return await self._replay(db, existing)

        settled = await self._wait_until_settled(existing.id)
        if settled is not None:
            return settled
        logger.warning(f"Booking token {request.idempotency_token} still pending, joining it")
        return existing.id

    async def _wait_until_settled(self, attempt_id: uuid.UUID) -> Optional[BookingResult]:
        deadline = time.monotonic() + self.pending_wait_seconds
        while time.monotonic() < deadline:
            await asyncio.sleep(PENDING_POLL_SECONDS)
            async with self._session_factory() as db:
                attempt = await db.get(BookingAttempt, attempt_id)
                if attempt is not None and attempt.status != BookingAttemptStatus.PENDING:
                    return await self._replay(db, attempt)
        return None

    async def _find_attempt(self, db: AsyncSession, token: str) -> Optional[BookingAttempt]:
        result = await db.execute(
            select(BookingAttempt).where(BookingAttempt.idempotency_token == token)
        )
        return result.scalar_one_or_none()

    async def _replay_settled(self, attempt_id: uuid.UUID) -> BookingResult:
        async with self._session_factory() as db:
            attempt = await db.get(BookingAttempt, attempt_id)
            return await self._replay(db, attempt)

    async def _replay(self, db: AsyncSession, attempt: BookingAttempt) -> BookingResult:
        logger.info(f"Replayed booking token {attempt.idempotency_token} -> {attempt.status.value}")
        result = BookingResult(
            status=attempt.status,
            appointment_id=str(attempt.appointment_id) if attempt.appointment_id else None,
            slot_id=str(attempt.slot_id) if attempt.slot_id else None,
            replayed=True,
        )
        if attempt.status == BookingAttemptStatus.COMMITTED and attempt.appointment_id:
            appointment = await db.get(Appointment, attempt.appointment_id)
            if appointment is not None:
                result.start = appointment.start_time
                result.end = appointment.end_time
        elif attempt.status == BookingAttemptStatus.REJECTED_CONFLICT:
            result.error = SlotConflict(attempt.detail or "Slot unavailable", slot_id=result.slot_id)
        elif attempt.status == BookingAttemptStatus.REJECTED_VALIDATION:
            result.error = ValidationError(attempt.detail or "Invalid booking request")
        return result

    async def _commit(
        self,
        db: AsyncSession,
        request: BookingRequest,
        business_id: uuid.UUID,
        slot_id: uuid.UUID,
        service_id: Optional[uuid.UUID],
        attempt_id: uuid.UUID,
        now: datetime,
    ) -> Appointment:
        """Validate, claim the slot and insert the appointment. Runs inside one transaction."""
        # Serialises bookings per business so overlapping slots cannot both commit
        business = (
            await db.execute(
                select(Business).where(Business.id == business_id).with_for_update()
            )
        ).scalar_one_or_none()
        if business is None or business.status != BusinessStatus.ACTIVE:
            raise _Rejected(ValidationError("Business not available", field="business_id"))

        service: Optional[ServiceType] = None
        if service_id is not None:
            service = await db.get(ServiceType, service_id)
            if service is None or service.business_id != business_id or not service.is_active:
                raise _Rejected(ValidationError("Unknown service", field="service_id"))

        if not request.customer.name or not request.customer.name.strip():
            raise _Rejected(ValidationError("Customer name is required", field="customer"))

        slot = await db.get(CalendarSlot, slot_id)
        if slot is None or slot.business_id != business_id:
            raise _Rejected(ValidationError("Unknown slot", field="slot_id"))
        if slot.slot_start < now:
            raise _Rejected(ValidationError("Slot is in the past", field="slot_id"))

        claimed = await db.execute(
            update(CalendarSlot)
            .where(
                CalendarSlot.id == slot_id,
                CalendarSlot.is_available.is_(True),
                CalendarSlot.is_blocked.is_(False),
            )
            .values(is_available=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise _Rejected(SlotConflict("Slot no longer available", slot_id=str(slot_id)))

        overlap = await db.execute(
            select(Appointment.id)
            .where(
                Appointment.business_id == business_id,
                Appointment.status.in_(BLOCKING_STATUSES),
                Appointment.start_time < slot.slot_end,
                Appointment.end_time > slot.slot_start,
            )
            .limit(1)
        )
        if overlap.scalar_one_or_none() is not None:
            raise _Rejected(SlotConflict("Time overlaps an existing appointment", slot_id=str(slot_id)))

        appointment = Appointment(
            business_id=business_id,
            service_type_id=service.id if service else None,
            slot_id=slot_id,
            customer_name=request.customer.name.strip(),
            customer_phone=request.customer.phone,
            service_name=service.name if service else None,
            start_time=slot.slot_start,
            end_time=slot.slot_end,
            status=AppointmentStatus.SCHEDULED,
            booking_source=BOOKING_SOURCE,
            call_id=request.call_id,
        )
        db.add(appointment)
        await db.flush()

        recorded = await db.execute(
            update(BookingAttempt)
            .where(
                BookingAttempt.id == attempt_id,
                BookingAttempt.status == BookingAttemptStatus.PENDING,
            )
            .values(
                status=BookingAttemptStatus.COMMITTED,
                appointment_id=appointment.id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if recorded.rowcount != 1:
            raise _Settled()
        return appointment

    async def _reject(self, attempt_id: uuid.UUID, error: SchedulingError) -> BookingResult:
        """Record a rejection unless a duplicate request already settled the token."""
        status = (
            BookingAttemptStatus.REJECTED_CONFLICT
            if isinstance(error, SlotConflict)
            else BookingAttemptStatus.REJECTED_VALIDATION
        )
        try:
            async with self._session_factory() as db:
                recorded = await db.execute(
                    update(BookingAttempt)
                    .where(
                        BookingAttempt.id == attempt_id,
                        BookingAttempt.status == BookingAttemptStatus.PENDING,
                    )
                    .values(status=status, detail=str(error))
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if recorded.rowcount != 1:
                    attempt = await db.get(BookingAttempt, attempt_id)
                    if attempt is not None:
                        return await self._replay(db, attempt)
        except SQLAlchemyError as e:
            # Attempt stays pending; a replay re-evaluates it
            logger.error(f"Failed to record rejected booking {attempt_id}: {e}")

        logger.info(f"Booking attempt {attempt_id} rejected: {status.value} ({error})")
        return BookingResult(
            status=status,
            slot_id=getattr(error, "slot_id", None),
            error=error,
        )

    async def cancel(
        self,
        appointment_id: Union[str, uuid.UUID],
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """
        Cancel an appointment and free its slot in one transaction.

        Cancelling twice is a no-op.

        Raises:
            ValidationError: Unknown appointment
        """
        now = now or datetime.now(timezone.utc)
        appointment_uuid = _as_uuid(appointment_id, "appointment_id")

        async with self._session_factory() as db:
            async with db.begin():
                appointment = (
                    await db.execute(
                        select(Appointment)
                        .where(Appointment.id == appointment_uuid)
                        .with_for_update()
                    )
                ).scalar_one_or_none()
                if appointment is None:
                    raise ValidationError(f"Appointment not found: {appointment_id}", field="appointment_id")
                if appointment.status == AppointmentStatus.CANCELLED:
                    return appointment

                appointment.status = AppointmentStatus.CANCELLED
                appointment.cancelled_at = now
                appointment.cancellation_reason = reason
                if appointment.slot_id is not None:
                    await db.execute(
                        update(CalendarSlot)
                        .where(CalendarSlot.id == appointment.slot_id)
                        .values(is_available=True, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )

        logger.info(f"Cancelled appointment {appointment_id}: {reason or 'no reason given'}")
        return appointment

    async def update_status(
        self,
        appointment_id: Union[str, uuid.UUID],
        status: AppointmentStatus,
        *,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """
        Move an appointment to confirmed / completed / no_show.

        Raises:
            ValidationError: Unknown appointment or cancelled one
        """
        if status == AppointmentStatus.CANCELLED:
            return await self.cancel(appointment_id, now=now)

        now = now or datetime.now(timezone.utc)
        appointment_uuid = _as_uuid(appointment_id, "appointment_id")

        async with self._session_factory() as db:
            async with db.begin():
                appointment = await db.get(Appointment, appointment_uuid)
                if appointment is None:
                    raise ValidationError(f"Appointment not found: {appointment_id}", field="appointment_id")
                if appointment.status == AppointmentStatus.CANCELLED:
                    raise ValidationError("Cancelled appointments cannot change status", field="status")
                appointment.status = status
                if status == AppointmentStatus.CONFIRMED:
                    appointment.confirmed_at = now

        logger.info(f"Appointment {appointment_id} -> {status.value}")
        return appointment


# Singleton
_manager: Optional[BookingManager] = None


def get_booking_manager() -> BookingManager:
    """Get singleton BookingManager."""
    global _manager
    if _manager is None:
        _manager = BookingManager()
    return _manager
