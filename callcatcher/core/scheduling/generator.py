"""
Calendar slot generator.

Precomputes a business's bookable slots for a rolling horizon from its
weekly local hours. Every boundary is converted through the IANA zone for
its own calendar date, so offsets follow daylight-saving changes.

Reconciliation on re-run (future range only):
- slots matching the desired set are kept as they are
- unbooked slots that no longer match are deleted
- slots referenced by an appointment, or already taken, are preserved
- missing slots are created
Running twice over the same range changes nothing the second time.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import delete, exists, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callcatcher.config import settings
from callcatcher.core.errors import ValidationError
from callcatcher.infra.database import async_session_factory
from callcatcher.models.database import Appointment, Business, CalendarSlot

logger = logging.getLogger(__name__)

WEEKDAY_KEYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

# Rows per insert/delete statement; each chunk commits on its own
CHUNK_SIZE = 500


@dataclass
class GenerationReport:
    """Outcome of one generate() run."""

    business_id: str
    range_start: datetime
    range_end: datetime
    created: int = 0
    removed: int = 0
    preserved: int = 0
    kept: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "business_id": self.business_id,
            "range_start": self.range_start.isoformat(),
            "range_end": self.range_end.isoformat(),
            "created": self.created,
            "removed": self.removed,
            "preserved": self.preserved,
            "kept": self.kept,
        }


def _parse_clock(value: str) -> time:
    hour, minute = value.strip().split(":")[:2]
    return time(int(hour), int(minute))


def parse_business_hours(hours: Optional[dict]) -> dict[int, Optional[tuple[time, time]]]:
    """
    Normalise a business_hours JSON blob.

    Returns:
        weekday index -> (open, close) local times, or None when closed
    """
    hours = hours or {}
    parsed: dict[int, Optional[tuple[time, time]]] = {}

    for index, key in enumerate(WEEKDAY_KEYS):
        day = hours.get(key) or hours.get(key[:3])
        if not day or not day.get("enabled", True):
            parsed[index] = None
            continue
        try:
            opens = _parse_clock(day["start"])
            closes = _parse_clock(day["end"])
        except (KeyError, ValueError, AttributeError) as e:
            raise ValidationError(
                f"Invalid hours for {key}: {day!r}", field="business_hours"
            ) from e
        parsed[index] = (opens, closes) if opens < closes else None

    return parsed


def load_zone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {name}", field="timezone") from e


def iter_day_slots(
    day: date,
    window: tuple[time, time],
    zone: ZoneInfo,
    duration: timedelta,
    interval: timedelta,
) -> Iterator[tuple[datetime, datetime]]:
    """
    Yield (start, end) UTC instants for one local date.

    Wall times inside a spring-forward gap do not exist and are skipped,
    as is any slot whose absolute end would land outside the local window.
    """
    opens, closes = window
    window_start = datetime.combine(day, opens)
    window_end = datetime.combine(day, closes)
    # Absolute bounds; wall-clock comparisons break on the repeated hour
    open_at = window_start.replace(tzinfo=zone).astimezone(timezone.utc)
    close_at = window_end.replace(tzinfo=zone).astimezone(timezone.utc)
    cursor = window_start

    while cursor < window_end:
        start = cursor.replace(tzinfo=zone).astimezone(timezone.utc)

        if start.astimezone(zone).replace(tzinfo=None) != cursor:
            cursor += interval
            continue

        end = start + duration
        if open_at <= start and end <= close_at:
            yield start, end

        cursor += interval


def build_slot_times(
    hours: dict[int, Optional[tuple[time, time]]],
    zone: ZoneInfo,
    first_day: date,
    horizon_days: int,
    duration_minutes: int,
    interval_minutes: int,
) -> list[tuple[datetime, datetime]]:
    """Desired slot instants for every local date in the horizon."""
    duration = timedelta(minutes=duration_minutes)
    interval = timedelta(minutes=interval_minutes)
    slots: list[tuple[datetime, datetime]] = []

    for offset in range(horizon_days):
        day = first_day + timedelta(days=offset)
        window = hours.get(day.weekday())
        if window is None:
            continue
        slots.extend(iter_day_slots(day, window, zone, duration, interval))

    return slots


class SlotGenerator:
    """Populates and reconciles CalendarSlot inventory per business."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session_factory

    async def generate(
        self,
        business_id: uuid.UUID,
        horizon_days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> GenerationReport:
        """
        Generate slots from business-local today through the horizon.

        Args:
            business_id: Business to generate for
            horizon_days: Days ahead (defaults to the business, then settings)
            now: Current instant (tests)

        Returns:
            GenerationReport with counts

        Raises:
            ValidationError: Unknown business, bad timezone or hours
        """
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as db:
            business = await db.get(Business, business_id)
            if business is None:
                raise ValidationError(f"Business not found: {business_id}", field="business_id")

            zone = load_zone(business.timezone)
            hours = parse_business_hours(business.business_hours)
            horizon = horizon_days
            if horizon is None:
                horizon = business.booking_horizon_days or settings.default_horizon_days
            if horizon <= 0:
                raise ValidationError("Horizon must be positive", field="horizon_days")
            duration = business.slot_duration_minutes or 60
            interval = business.slot_interval_minutes or duration

            today = now.astimezone(zone).date()
            range_end = datetime.combine(
                today + timedelta(days=horizon), time(0), tzinfo=zone
            ).astimezone(timezone.utc)

            desired = {
                start: end
                for start, end in build_slot_times(hours, zone, today, horizon, duration, interval)
                if start >= now
            }

            existing = await self._existing_slots(db, business_id, now, range_end)

        report = GenerationReport(
            business_id=str(business_id),
            range_start=now,
            range_end=range_end,
        )

        to_delete: dict[uuid.UUID, datetime] = {}
        occupied: set[datetime] = set()
        for slot_id, start, end, is_available, referenced in existing:
            occupied.add(start)
            if desired.get(start) == end:
                report.kept += 1
            elif referenced or not is_available:
                report.preserved += 1
            else:
                to_delete[slot_id] = start

        deleted = await self._delete_unbooked(list(to_delete))
        report.removed = len(deleted)
        occupied -= {to_delete[slot_id] for slot_id in deleted}

        to_create = [
            {"business_id": business_id, "slot_start": start, "slot_end": end}
            for start, end in sorted(desired.items())
            if start not in occupied
        ]
        report.created = await self._insert(to_create)

        logger.info(
            f"Generated slots for business {business_id}: created={report.created} "
            f"removed={report.removed} preserved={report.preserved} kept={report.kept}"
        )
        return report

    async def _existing_slots(
        self,
        db: AsyncSession,
        business_id: uuid.UUID,
        range_start: datetime,
        range_end: datetime,
    ) -> list[tuple]:
        referenced = exists().where(Appointment.slot_id == CalendarSlot.id)
        result = await db.execute(
            select(
                CalendarSlot.id,
                CalendarSlot.slot_start,
                CalendarSlot.slot_end,
                CalendarSlot.is_available,
                referenced.label("referenced"),
            ).where(
                CalendarSlot.business_id == business_id,
                CalendarSlot.slot_start >= range_start,
                CalendarSlot.slot_start < range_end,
            )
        )
        return [tuple(row) for row in result.all()]

    async def _delete_unbooked(self, slot_ids: list[uuid.UUID]) -> set[uuid.UUID]:
        removed: set[uuid.UUID] = set()
        for i in range(0, len(slot_ids), CHUNK_SIZE):
            chunk = slot_ids[i:i + CHUNK_SIZE]
            async with self._session_factory() as db:
                # Re-checked per row so a booking made meanwhile is never orphaned
                result = await db.execute(
                    delete(CalendarSlot)
                    .where(
                        CalendarSlot.id.in_(chunk),
                        CalendarSlot.is_available.is_(True),
                        ~exists().where(Appointment.slot_id == CalendarSlot.id),
                    )
                    .returning(CalendarSlot.id)
                    .execution_options(synchronize_session=False)
                )
                removed.update(result.scalars().all())
                await db.commit()
        return removed

    async def _insert(self, rows: list[dict]) -> int:
        """Insert new slots; rows another run created meanwhile are skipped."""
        created = 0
        for i in range(0, len(rows), CHUNK_SIZE):
            chunk = rows[i:i + CHUNK_SIZE]
            async with self._session_factory() as db:
                try:
                    await db.execute(insert(CalendarSlot), chunk)
                    await db.commit()
                    created += len(chunk)
                    continue
                except IntegrityError:
                    await db.rollback()
            logger.info("Slots were created concurrently, inserting the rest one at a time")
            created += await self._insert_each(chunk)
        return created

    async def _insert_each(self, rows: list[dict]) -> int:
        created = 0
        for row in rows:
            async with self._session_factory() as db:
                try:
                    await db.execute(insert(CalendarSlot), [row])
                    await db.commit()
                    created += 1
                except IntegrityError:
                    await db.rollback()
                    logger.debug(f"Slot at {row['slot_start'].isoformat()} already exists, skipping")
        return created


# Singleton
_generator: Optional[SlotGenerator] = None


def get_slot_generator() -> SlotGenerator:
    """Get singleton SlotGenerator."""
    global _generator
    if _generator is None:
        _generator = SlotGenerator()
    return _generator
