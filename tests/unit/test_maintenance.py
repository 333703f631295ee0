"""Tests for background housekeeping."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from callcatcher.core.errors import ValidationError
from callcatcher.core.scheduling.holds import InMemorySlotHoldStore
from callcatcher.core.scheduling.maintenance import HousekeepingRunner
from callcatcher.models.database import Appointment, CalendarSlot
from tests.conftest import NOW, FakeClock


class TestHousekeepingRunner:
    """Test session sweeps and slot upkeep."""

    @pytest.fixture
    def engine(self):
        engine = MagicMock()
        engine.expire = AsyncMock(return_value=2)
        return engine

    @pytest.fixture
    def generator(self):
        generator = MagicMock()
        generator.generate = AsyncMock()
        return generator

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def hold_store(self, clock):
        return InMemorySlotHoldStore(clock=clock)

    @pytest.fixture
    def runner(self, engine, generator, hold_store, session_factory):
        return HousekeepingRunner(
            engine=engine,
            generator=generator,
            hold_store=hold_store,
            session_factory=session_factory,
            clock=lambda: NOW,
        )

    @pytest.mark.asyncio
    async def test_sweep_counts_retired(self, runner, engine):
        assert await runner.sweep_sessions() == 2

        engine.expire.assert_awaited_once_with(NOW)
        assert runner.get_status()["sessions_retired"] == 2
        assert runner.get_status()["last_sweep_at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_sweep_drops_lapsed_holds(self, runner, hold_store, clock):
        for i in range(30):
            await hold_store.acquire(f"slot-{i}", f"call-{i}", 120)
        clock.now += 60
        await hold_store.acquire("slot-fresh", "call-fresh", 120)
        clock.now += 61

        await runner.sweep_sessions()

        assert list(hold_store._holds) == ["slot-fresh"]
        assert runner.get_status()["holds_purged"] == 30

    @pytest.mark.asyncio
    async def test_short_inventory_is_extended(self, runner, generator, business, slots):
        """Two weeks of slots is well short of the minimum future window."""
        report = await runner.maintain_slots()

        assert report.extended == [str(business.id)]
        generator.generate.assert_awaited_once_with(business.id, now=NOW)

    @pytest.mark.asyncio
    async def test_business_without_slots_is_extended(self, runner, generator, business):
        report = await runner.maintain_slots()

        assert report.extended == [str(business.id)]

    @pytest.mark.asyncio
    async def test_generation_failure_recorded(self, runner, generator, business):
        generator.generate.side_effect = ValidationError("bad hours", field="business_hours")

        report = await runner.maintain_slots()

        assert report.failed == [str(business.id)]
        assert report.extended == []

    @pytest.mark.asyncio
    async def test_prune_keeps_referenced_slots(self, runner, session_factory, business):
        old_start = NOW - timedelta(days=40)
        async with session_factory() as db:
            unreferenced = CalendarSlot(
                business_id=business.id,
                slot_start=old_start,
                slot_end=old_start + timedelta(hours=1),
            )
            referenced = CalendarSlot(
                business_id=business.id,
                slot_start=old_start + timedelta(hours=1),
                slot_end=old_start + timedelta(hours=2),
                is_available=False,
            )
            recent = CalendarSlot(
                business_id=business.id,
                slot_start=NOW - timedelta(days=2),
                slot_end=NOW - timedelta(days=2) + timedelta(hours=1),
            )
            db.add_all([unreferenced, referenced, recent])
            await db.flush()
            db.add(
                Appointment(
                    business_id=business.id,
                    slot_id=referenced.id,
                    customer_name="Old Customer",
                    start_time=referenced.slot_start,
                    end_time=referenced.slot_end,
                )
            )
            await db.commit()

        pruned = await runner.prune_slots(NOW)

        assert pruned == 1
        async with session_factory() as db:
            remaining = (await db.execute(select(func.count()).select_from(CalendarSlot))).scalar_one()
        assert remaining == 2

    @pytest.mark.asyncio
    async def test_overlapping_pass_skipped(self, runner, business):
        async with runner._maintenance_lock:
            assert await runner.maintain_slots() is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, runner, engine, business):
        runner.start()
        assert runner.is_running

        await runner.stop()

        assert not runner.is_running
