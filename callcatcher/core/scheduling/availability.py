"""
Slot availability engine.

Answers "what can this caller book" from precomputed inventory minus the
time already taken by scheduled or confirmed appointments. Time-of-day
preferences are evaluated in the business's own timezone.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from callcatcher.config import settings
from callcatcher.core.errors import ValidationError
from callcatcher.core.scheduling.generator import load_zone
from callcatcher.core.scheduling.preferences import TimePreference
from callcatcher.infra.database import async_session_factory
from callcatcher.models.database import (
    BLOCKING_STATUSES, Appointment, Business, CalendarSlot,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailableSlot:
    """An open slot with its business-local rendering."""

    slot_id: str
    start: datetime  # UTC
    end: datetime  # UTC
    local_start: datetime
    local_end: datetime

    @property
    def spoken(self) -> str:
        """e.g. "Tuesday, March 3 at 9:00 AM"."""
        day = self.local_start.strftime("%A, %B %d").replace(" 0", " ")
        clock = self.local_start.strftime("%I:%M %p").lstrip("0")
        return f"{day} at {clock}"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "slot_id": self.slot_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "local_start": self.local_start.isoformat(),
            "local_end": self.local_end.isoformat(),
        }


class AvailabilityEngine:
    """Computes bookable slots for a business."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session_factory

    async def get_business_zone(self, business_id: uuid.UUID) -> ZoneInfo:
        """Timezone of a business."""
        async with self._session_factory() as db:
            business = await db.get(Business, business_id)
        if business is None:
            raise ValidationError(f"Business not found: {business_id}", field="business_id")
        return load_zone(business.timezone)

    async def find_available_slots(
        self,
        business_id: uuid.UUID,
        preference: Optional[TimePreference] = None,
        *,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        exclude_slot_ids: Iterable[str] = (),
        window_days: Optional[int] = None,
    ) -> list[AvailableSlot]:
        """
        Find open slots in chronological order.

        A slot qualifies when it is available, not blocked, starts no
        earlier than now, and does not overlap a scheduled/confirmed
        appointment ([start, end) half-open test).

        Args:
            business_id: Business to search
            preference: Optional date / weekday / bucket / exact time
            now: Current instant (tests)
            limit: Maximum number of slots returned
            exclude_slot_ids: Slots the caller already declined or lost
            window_days: Days searched when no date is given

        Returns:
            Ordered, de-duplicated slots; empty when nothing qualifies
        """
        now = now or datetime.now(timezone.utc)
        preference = preference or TimePreference()
        window_days = window_days or settings.search_window_days
        excluded = {str(slot_id) for slot_id in exclude_slot_ids}

        zone = await self.get_business_zone(business_id)
        today = now.astimezone(zone).date()
        first_day, last_day = preference.date_range(today, window_days)
        if last_day <= today:
            return []

        range_start = max(
            now, datetime.combine(first_day, time(0), tzinfo=zone).astimezone(timezone.utc)
        )
        range_end = datetime.combine(last_day, time(0), tzinfo=zone).astimezone(timezone.utc)

        overlapping = exists().where(
            and_(
                Appointment.business_id == CalendarSlot.business_id,
                Appointment.status.in_(BLOCKING_STATUSES),
                Appointment.start_time < CalendarSlot.slot_end,
                Appointment.end_time > CalendarSlot.slot_start,
            )
        )

        stmt = (
            select(CalendarSlot)
            .where(
                CalendarSlot.business_id == business_id,
                CalendarSlot.is_available.is_(True),
                CalendarSlot.is_blocked.is_(False),
                CalendarSlot.slot_start >= range_start,
                CalendarSlot.slot_start < range_end,
                ~overlapping,
            )
            .order_by(CalendarSlot.slot_start, CalendarSlot.id)
        )

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            rows = result.scalars().all()

        slots: list[AvailableSlot] = []
        seen_starts: set[datetime] = set()
        for row in rows:
            if str(row.id) in excluded or row.slot_start in seen_starts:
                continue
            local_start = row.slot_start.astimezone(zone)
            if not preference.matches(local_start):
                continue
            seen_starts.add(row.slot_start)
            slots.append(
                AvailableSlot(
                    slot_id=str(row.id),
                    start=row.slot_start,
                    end=row.slot_end,
                    local_start=local_start,
                    local_end=row.slot_end.astimezone(zone),
                )
            )
            if limit is not None and len(slots) >= limit:
                break

        logger.debug(
            f"Availability for business {business_id} ({preference.describe()}): "
            f"{len(slots)} slot(s) between {range_start.isoformat()} and {range_end.isoformat()}"
        )
        return slots

    async def local_today(self, business_id: uuid.UUID, now: Optional[datetime] = None) -> date:
        """Business-local calendar date."""
        zone = await self.get_business_zone(business_id)
        return (now or datetime.now(timezone.utc)).astimezone(zone).date()


# Singleton
_engine: Optional[AvailabilityEngine] = None


def get_availability_engine() -> AvailabilityEngine:
    """Get singleton AvailabilityEngine."""
    global _engine
    if _engine is None:
        _engine = AvailabilityEngine()
    return _engine
