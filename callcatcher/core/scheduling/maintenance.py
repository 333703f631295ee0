"""
Background housekeeping.

Two loops run beside the API:
- session sweep: retires idle or finished calls, releases their holds and
  drops holds that lapsed without being released
- slot maintenance: prunes old unreferenced slots and tops up each
  business's inventory so it always reaches min_future_days ahead
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete, exists, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from callcatcher.config import settings
from callcatcher.core.errors import ValidationError
from callcatcher.core.scheduling.engine import ConversationEngine, get_conversation_engine
from callcatcher.core.scheduling.generator import SlotGenerator, get_slot_generator
from callcatcher.core.scheduling.holds import SlotHoldStore, get_slot_hold_store
from callcatcher.infra.database import async_session_factory
from callcatcher.models.database import Appointment, Business, BusinessStatus, CalendarSlot

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    """Outcome of one slot maintenance pass."""

    pruned: int = 0
    extended: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "pruned": self.pruned,
            "extended": self.extended,
            "failed": self.failed,
        }


class HousekeepingRunner:
    """
    Periodic session expiry and slot inventory upkeep.

    - Sweeps sessions every session_sweep_interval_seconds
    - Maintains slots every slot_maintenance_interval_seconds
    - Each loop survives a failing pass and tries again next interval
    """

    def __init__(
        self,
        engine: Optional[ConversationEngine] = None,
        generator: Optional[SlotGenerator] = None,
        hold_store: Optional[SlotHoldStore] = None,
        session_factory: Optional[async_sessionmaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._engine = engine
        self._generator = generator
        self._hold_store = hold_store
        self._session_factory = session_factory or async_session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: list[asyncio.Task] = []
        self._sweep_lock = asyncio.Lock()
        self._maintenance_lock = asyncio.Lock()
        self.sessions_retired = 0
        self.holds_purged = 0
        self.slots_pruned = 0
        self.businesses_extended = 0
        self.last_sweep_at: Optional[datetime] = None
        self.last_maintenance_at: Optional[datetime] = None
        self.last_report: Optional[MaintenanceReport] = None

    def _get_engine(self) -> ConversationEngine:
        if self._engine is None:
            self._engine = get_conversation_engine()
        return self._engine

    def _get_generator(self) -> SlotGenerator:
        if self._generator is None:
            self._generator = get_slot_generator()
        return self._generator

    async def _get_hold_store(self) -> SlotHoldStore:
        if self._hold_store is None:
            self._hold_store = await get_slot_hold_store()
        return self._hold_store

    @property
    def is_running(self) -> bool:
        """Check if any loop is active."""
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start the background loops."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop(self.sweep_sessions, settings.session_sweep_interval_seconds, "session sweep")
            ),
            asyncio.create_task(
                self._loop(self.maintain_slots, settings.slot_maintenance_interval_seconds, "slot maintenance")
            ),
        ]
        logger.info("Housekeeping loops started")

    async def stop(self) -> None:
        """Cancel the loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Housekeeping loops stopped")

    async def _loop(self, job, interval_seconds: int, name: str) -> None:
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Housekeeping {name} failed: {e}")
            await asyncio.sleep(interval_seconds)

    async def sweep_sessions(self) -> int:
        """Retire idle and finished call sessions. Skipped if a sweep is already running."""
        if self._sweep_lock.locked():
            logger.warning("Session sweep already running, skipping")
            return 0
        async with self._sweep_lock:
            now = self._clock()
            retired = await self._get_engine().expire(now)
            purged = await (await self._get_hold_store()).purge_expired()
            self.last_sweep_at = now
            self.sessions_retired += retired
            self.holds_purged += purged
        return retired

    async def maintain_slots(self) -> Optional[MaintenanceReport]:
        """Prune old slots, then extend any business whose inventory runs short.

        Returns None if a pass is already running.
        """
        if self._maintenance_lock.locked():
            logger.warning("Slot maintenance already running, skipping")
            return None
        async with self._maintenance_lock:
            return await self._maintain_slots()

    async def _maintain_slots(self) -> MaintenanceReport:
        now = self._clock()
        report = MaintenanceReport()
        report.pruned = await self.prune_slots(now)

        horizon_floor = now + timedelta(days=settings.min_future_days)
        for business_id, last_start in await self._inventory_ends():
            if last_start is not None and last_start >= horizon_floor:
                continue
            try:
                await self._get_generator().generate(business_id, now=now)
                report.extended.append(str(business_id))
            except ValidationError as e:
                logger.error(f"Cannot generate slots for business {business_id}: {e}")
                report.failed.append(str(business_id))

        self.last_maintenance_at = now
        self.last_report = report
        self.slots_pruned += report.pruned
        self.businesses_extended += len(report.extended)
        logger.info(
            f"Slot maintenance: pruned={report.pruned} "
            f"extended={len(report.extended)} failed={len(report.failed)}"
        )
        return report

    async def prune_slots(self, now: datetime) -> int:
        """Delete past slots older than the retention window that no appointment references."""
        cutoff = now - timedelta(days=settings.slot_retention_days)
        async with self._session_factory() as db:
            result = await db.execute(
                delete(CalendarSlot)
                .where(
                    CalendarSlot.slot_end < cutoff,
                    ~exists().where(Appointment.slot_id == CalendarSlot.id),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount or 0

    async def _inventory_ends(self) -> list[tuple]:
        """(business_id, latest slot start) for every active business."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Business.id, func.max(CalendarSlot.slot_start))
                .outerjoin(CalendarSlot, CalendarSlot.business_id == Business.id)
                .where(Business.status == BusinessStatus.ACTIVE)
                .group_by(Business.id)
            )
            return [tuple(row) for row in result.all()]

    def get_status(self) -> dict:
        """Loop state for the readiness endpoint."""
        return {
            "running": self.is_running,
            "sessions_retired": self.sessions_retired,
            "holds_purged": self.holds_purged,
            "slots_pruned": self.slots_pruned,
            "businesses_extended": self.businesses_extended,
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
            "last_maintenance_at": (
                self.last_maintenance_at.isoformat() if self.last_maintenance_at else None
            ),
        }


# Singleton
_runner: Optional[HousekeepingRunner] = None


def get_housekeeping_runner() -> HousekeepingRunner:
    """Get singleton HousekeepingRunner."""
    global _runner
    if _runner is None:
        _runner = HousekeepingRunner()
    return _runner
