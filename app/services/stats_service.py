"""Daily statistics aggregator."""

from datetime import date
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.redis_client import CacheManager
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentStatus, DailyStatsResponse

logger = structlog.get_logger()


class StatsService:
    """
    Per-status appointment counts for dashboards.

    Read-only and non-authoritative: results may be served from cache for
    up to ``STATS_CACHE_TTL_SECONDS`` after the latest transition.
    """

    def __init__(self, db: AsyncSession, cache_manager: CacheManager | None = None):
        """Initialize service with database session and optional cache."""
        self.db = db
        self.cache = cache_manager

    @staticmethod
    def _get_cache_key(
        day: date,
        doctor_id: UUID | None,
        department_id: UUID | None,
        room_id: UUID | None,
    ) -> str:
        """Generate cache key for one stats query."""
        return f"stats:daily:{day.isoformat()}:{doctor_id}:{department_id}:{room_id}"

    async def daily_stats(
        self,
        day: date,
        doctor_id: UUID | None = None,
        department_id: UUID | None = None,
        room_id: UUID | None = None,
    ) -> DailyStatsResponse:
        """
        Count appointments by status for one day.

        Args:
            day: Appointment date
            doctor_id: Optional doctor filter
            department_id: Optional department filter
            room_id: Optional room filter

        Returns:
            Counts for every status plus the total
        """
        cache_key = self._get_cache_key(day, doctor_id, department_id, room_id)
        if self.cache:
            cached = self.cache.get_json(cache_key)
            if cached:
                return DailyStatsResponse.model_validate(cached)

        conditions = [appointments.c.appointment_date == day]
        if doctor_id:
            conditions.append(appointments.c.doctor_id == doctor_id)
        if department_id:
            conditions.append(appointments.c.department_id == department_id)
        if room_id:
            conditions.append(appointments.c.room_id == room_id)

        stmt = (
            select(appointments.c.status, func.count().label("count"))
            .where(and_(*conditions))
            .group_by(appointments.c.status)
        )
        result = await self.db.execute(stmt)

        counts = {status.value: 0 for status in AppointmentStatus}
        for row in result.all():
            counts[row.status] = row.count

        stats = DailyStatsResponse(
            date=day,
            doctor_id=doctor_id,
            department_id=department_id,
            room_id=room_id,
            total=sum(counts.values()),
            **counts,
        )

        if self.cache:
            stored = self.cache.set_json(
                cache_key,
                stats.model_dump(mode="json"),
                ttl=settings.stats_cache_ttl_seconds,
            )
            if not stored:
                logger.debug("stats_cache_write_failed", key=cache_key)

        return stats
