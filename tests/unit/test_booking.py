"""Tests for the booking transaction manager."""

import asyncio
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from callcatcher.core.errors import SlotConflict, ValidationError
from callcatcher.core.scheduling.availability import AvailabilityEngine
from callcatcher.core.scheduling.booking import BookingManager, BookingRequest, Customer
from callcatcher.models.database import (
    Appointment, AppointmentStatus, BookingAttempt, BookingAttemptStatus, CalendarSlot,
)
from tests.conftest import NOW


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def slot_at(session_factory, start: datetime) -> CalendarSlot:
    async with session_factory() as db:
        result = await db.execute(select(CalendarSlot).where(CalendarSlot.slot_start == start))
        return result.scalar_one()


def make_request(business, services, slot, token, name="John Smith") -> BookingRequest:
    return BookingRequest(
        call_id=f"call-{token}",
        business_id=business.id,
        service_id=services[0].id,
        customer=Customer(name=name, phone="+15551234567"),
        slot_id=str(slot.id),
        idempotency_token=token,
    )


class TestBook:
    """Tests for BookingManager.book."""

    @pytest.mark.asyncio
    async def test_commit_creates_appointment_and_claims_slot(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))

        result = await manager.book(make_request(business, services, slot, "t-1"), now=NOW)

        assert result.committed
        assert result.start == slot.slot_start
        async with session_factory() as db:
            appointment = await db.get(Appointment, uuid.UUID(result.appointment_id))
            claimed = await db.get(CalendarSlot, slot.id)
        assert appointment.customer_name == "John Smith"
        assert appointment.service_name == "Haircut"
        assert appointment.status == AppointmentStatus.SCHEDULED
        assert appointment.start_time == slot.slot_start
        assert appointment.end_time == slot.slot_end
        assert claimed.is_available is False

    @pytest.mark.asyncio
    async def test_concurrent_bookings_one_winner(self, session_factory, business, services, slots):
        """Two callers race for the same slot; exactly one commits."""
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))

        results = await asyncio.gather(
            manager.book(make_request(business, services, slot, "race-a", "Ann"), now=NOW),
            manager.book(make_request(business, services, slot, "race-b", "Bob"), now=NOW),
        )

        assert sorted(r.status for r in results) == sorted(
            [BookingAttemptStatus.COMMITTED, BookingAttemptStatus.REJECTED_CONFLICT]
        )
        loser = next(r for r in results if not r.committed)
        assert isinstance(loser.error, SlotConflict)

        async with session_factory() as db:
            count = (
                await db.execute(
                    select(func.count()).select_from(Appointment).where(Appointment.slot_id == slot.id)
                )
            ).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_replayed_token_returns_same_appointment(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 14))
        request = make_request(business, services, slot, "dup")

        first = await manager.book(request, now=NOW)
        second = await manager.book(request, now=NOW)

        assert first.committed and not first.replayed
        assert second.committed and second.replayed
        assert second.appointment_id == first.appointment_id
        assert second.start == first.start

        async with session_factory() as db:
            attempts = (
                await db.execute(
                    select(func.count()).select_from(BookingAttempt).where(BookingAttempt.idempotency_token == "dup")
                )
            ).scalar_one()
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_late_rejection_cannot_overwrite_commit(self, session_factory, business, services, slots):
        """A duplicate commits while the original is pending; the original's conflict must not win."""
        manager = BookingManager(session_factory, pending_wait_seconds=0)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 16))
        request = make_request(business, services, slot, "late")

        attempt_id = await manager._start_attempt(request, business.id, slot.id)
        duplicate = await manager.book(request, now=NOW)
        original = await manager._reject(
            attempt_id, SlotConflict("Slot no longer available", slot_id=str(slot.id))
        )
        replay = await manager.book(request, now=NOW)

        assert duplicate.committed
        assert original.committed and original.replayed
        assert original.appointment_id == duplicate.appointment_id
        assert replay.committed and replay.appointment_id == duplicate.appointment_id
        async with session_factory() as db:
            attempt = await db.get(BookingAttempt, attempt_id)
            count = (await db.execute(select(func.count()).select_from(Appointment))).scalar_one()
        assert attempt.status == BookingAttemptStatus.COMMITTED
        assert count == 1

    @pytest.mark.asyncio
    async def test_duplicate_waits_for_pending_attempt(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory, pending_wait_seconds=5)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 17))
        request = make_request(business, services, slot, "wait")

        attempt_id = await manager._start_attempt(request, business.id, slot.id)
        duplicate = asyncio.create_task(manager.book(request, now=NOW))
        async with session_factory() as db:
            async with db.begin():
                appointment = await manager._commit(
                    db, request, business.id, slot.id, services[0].id, attempt_id, NOW
                )
        result = await duplicate

        assert result.committed and result.replayed
        assert result.appointment_id == str(appointment.id)
        async with session_factory() as db:
            count = (await db.execute(select(func.count()).select_from(Appointment))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_taken_slot_is_conflict(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 15))

        await manager.book(make_request(business, services, slot, "first"), now=NOW)
        result = await manager.book(make_request(business, services, slot, "second"), now=NOW)

        assert result.conflict
        assert result.slot_id == str(slot.id)

    @pytest.mark.asyncio
    async def test_past_slot_rejected(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))

        result = await manager.book(
            make_request(business, services, slot, "late"), now=utc(2026, 3, 2, 13, 30)
        )

        assert result.status == BookingAttemptStatus.REJECTED_VALIDATION
        assert isinstance(result.error, ValidationError)
        assert result.error.field == "slot_id"

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))

        result = await manager.book(make_request(business, services, slot, "blank", name="  "), now=NOW)

        assert result.status == BookingAttemptStatus.REJECTED_VALIDATION
        assert result.error.field == "customer"
        async with session_factory() as db:
            assert (await db.get(CalendarSlot, slot.id)).is_available is True

    @pytest.mark.asyncio
    async def test_invalid_slot_id(self, session_factory, business, services):
        manager = BookingManager(session_factory)
        request = BookingRequest(
            call_id="c",
            business_id=business.id,
            service_id=None,
            customer=Customer(name="Ann"),
            slot_id="not-a-uuid",
            idempotency_token="bad",
        )

        result = await manager.book(request, now=NOW)

        assert result.status == BookingAttemptStatus.REJECTED_VALIDATION
        assert result.error.field == "slot_id"


class TestCancelAndStatus:
    """Tests for cancel and update_status."""

    @pytest.mark.asyncio
    async def test_cancel_frees_slot(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))
        booked = await manager.book(make_request(business, services, slot, "c-1"), now=NOW)

        cancelled = await manager.cancel(booked.appointment_id, "caller rang back", now=NOW)

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.cancellation_reason == "caller rang back"
        offered = await AvailabilityEngine(session_factory).find_available_slots(
            business.id, now=NOW, limit=1
        )
        assert offered[0].slot_id == str(slot.id)

    @pytest.mark.asyncio
    async def test_cancel_twice_is_noop(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))
        booked = await manager.book(make_request(business, services, slot, "c-2"), now=NOW)

        first = await manager.cancel(booked.appointment_id, "one", now=NOW)
        second = await manager.cancel(booked.appointment_id, "two", now=NOW)

        assert second.status == AppointmentStatus.CANCELLED
        assert second.cancellation_reason == first.cancellation_reason == "one"

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, session_factory):
        with pytest.raises(ValidationError):
            await BookingManager(session_factory).cancel("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_confirm_sets_timestamp(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))
        booked = await manager.book(make_request(business, services, slot, "s-1"), now=NOW)

        appointment = await manager.update_status(booked.appointment_id, AppointmentStatus.CONFIRMED, now=NOW)

        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.confirmed_at == NOW

    @pytest.mark.asyncio
    async def test_cancelled_cannot_be_confirmed(self, session_factory, business, services, slots):
        manager = BookingManager(session_factory)
        slot = await slot_at(session_factory, utc(2026, 3, 2, 13))
        booked = await manager.book(make_request(business, services, slot, "s-2"), now=NOW)
        await manager.cancel(booked.appointment_id, now=NOW)

        with pytest.raises(ValidationError):
            await manager.update_status(booked.appointment_id, AppointmentStatus.COMPLETED, now=NOW)
