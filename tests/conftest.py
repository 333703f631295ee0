"""Shared fixtures: a throwaway SQLite database with one business."""

from datetime import datetime, timezone

import pytest

from callcatcher.core.scheduling.generator import SlotGenerator
from callcatcher.infra.database import build_engine, build_session_factory, init_db
from callcatcher.models.database import Business, ServiceType

WEEKDAY_HOURS = {
    day: {"start": "08:00", "end": "18:00", "enabled": True}
    for day in ["monday", "tuesday", "wednesday", "thursday", "friday"]
}

# Sunday 1 March 2026, 10:00 in New York (EST, UTC-5)
NOW = datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'callcatcher.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return build_session_factory(db_engine)


@pytest.fixture
async def business(session_factory) -> Business:
    """Barber shop open 08:00-18:00 weekdays, hourly slots."""
    business = Business(
        name="Main Street Barbers",
        phone_number="+15551110000",
        transfer_number="+15550000000",
        timezone="America/New_York",
        business_hours=WEEKDAY_HOURS,
        slot_duration_minutes=60,
        slot_interval_minutes=60,
        booking_horizon_days=14,
    )
    async with session_factory() as db:
        db.add(business)
        await db.commit()
    return business


@pytest.fixture
async def services(session_factory, business) -> list[ServiceType]:
    """Two services with distinct keywords."""
    rows = [
        ServiceType(
            business_id=business.id,
            name="Haircut",
            duration_minutes=30,
            keywords=["haircut", "cut", "trim"],
        ),
        ServiceType(
            business_id=business.id,
            name="Hot Shave",
            duration_minutes=45,
            keywords=["shave", "beard"],
        ),
    ]
    async with session_factory() as db:
        db.add_all(rows)
        await db.commit()
    return rows


@pytest.fixture
async def slots(session_factory, business, services):
    """Two weeks of inventory generated as of NOW."""
    return await SlotGenerator(session_factory).generate(business.id, 14, now=NOW)


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now
