"""
Business profile and service catalog lookups.

The profile is read-only to the scheduling core. Services are matched to
caller speech by name first, then by keywords. A service with no stored
keywords falls back to the words of its name longer than two letters.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from callcatcher.core.errors import ValidationError
from callcatcher.core.scheduling.generator import load_zone
from callcatcher.infra.database import async_session_factory
from callcatcher.models.database import Business, BusinessStatus, ServiceType

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9]+")


def fallback_keywords(name: str) -> list[str]:
    """Keywords derived from a service name."""
    return [word for word in _WORD.findall(name.lower()) if len(word) > 2]


def _normalise(word: str) -> str:
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


@dataclass
class ServiceInfo:
    """A bookable service as the engine sees it."""

    id: str
    name: str
    duration_minutes: int
    keywords: list[str] = field(default_factory=list)

    @property
    def match_terms(self) -> set[str]:
        terms = self.keywords or fallback_keywords(self.name)
        return {_normalise(term.lower().strip()) for term in terms if term.strip()}


@dataclass
class BusinessProfile:
    """Read-only view of a business for one call."""

    id: str
    name: str
    timezone: str
    transfer_number: Optional[str]
    services: list[ServiceInfo]

    @property
    def zone(self) -> ZoneInfo:
        return load_zone(self.timezone)

    def service_names(self) -> list[str]:
        return [service.name for service in self.services]


def match_service(text: Optional[str], services: list[ServiceInfo]) -> Optional[ServiceInfo]:
    """
    Find the service the caller is asking for.

    Full-name mentions win; otherwise the service sharing the most
    keywords with the text is chosen. Ties are treated as no match.
    """
    if not text or not services:
        return None

    lowered = text.lower()
    named = [s for s in services if s.name.lower() in lowered]
    if named:
        return max(named, key=lambda s: len(s.name))

    words = {_normalise(word) for word in _WORD.findall(lowered)}
    scored = sorted(
        ((len(service.match_terms & words), service) for service in services),
        key=lambda pair: pair[0],
        reverse=True,
    )
    if not scored or scored[0][0] == 0:
        return None
    if len(scored) > 1 and scored[1][0] == scored[0][0]:
        logger.debug(f"Ambiguous service match for '{text}'")
        return None
    return scored[0][1]


class ServiceCatalog:
    """Loads business profiles from the store."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session_factory

    async def load_profile(self, business_id: Union[str, uuid.UUID]) -> BusinessProfile:
        """
        Load a business with its active services.

        Raises:
            ValidationError: Unknown or inactive business
        """
        try:
            business_uuid = business_id if isinstance(business_id, uuid.UUID) else uuid.UUID(str(business_id))
        except ValueError as e:
            raise ValidationError(f"Invalid business id: {business_id}", field="business_id") from e

        async with self._session_factory() as db:
            business = await db.get(Business, business_uuid)
            if business is None or business.status != BusinessStatus.ACTIVE:
                raise ValidationError(f"Business not available: {business_id}", field="business_id")

            result = await db.execute(
                select(ServiceType)
                .where(
                    ServiceType.business_id == business_uuid,
                    ServiceType.is_active.is_(True),
                )
                .order_by(ServiceType.name)
            )
            services = [
                ServiceInfo(
                    id=str(row.id),
                    name=row.name,
                    duration_minutes=row.duration_minutes,
                    keywords=list(row.keywords or []),
                )
                for row in result.scalars().all()
            ]

        return BusinessProfile(
            id=str(business.id),
            name=business.name,
            timezone=business.timezone,
            transfer_number=business.transfer_number,
            services=services,
        )


# Singleton
_catalog: Optional[ServiceCatalog] = None


def get_service_catalog() -> ServiceCatalog:
    """Get singleton ServiceCatalog."""
    global _catalog
    if _catalog is None:
        _catalog = ServiceCatalog()
    return _catalog
