"""
Week Calendar Service

Stores tournament week configuration. Weeks are validated and immutable once
created; the schedule generator creates them one or more weeks ahead.
"""

from datetime import date
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tournament_sync.database.models import TournamentWeek
from tournament_sync.services.base import BaseService
from tournament_sync.services.phase_clock import (
    Moment, Phase, WeekSchedule, ensure_utc, generate_schedule, phase_of, utc_now
)
from tournament_sync.utils.logger import setup_logger
from tournament_sync.utils.sync_exceptions import InvalidScheduleError, WeekNotFoundError

logger = setup_logger(__name__)


class CalendarService(BaseService):
    """Service for creating and reading tournament weeks."""

    async def create_week(self, schedule: WeekSchedule) -> WeekSchedule:
        """Persist a new week. Raises InvalidScheduleError if mis-ordered or already present."""
        schedule.validate()
        try:
            async with self.get_session() as session:
                existing = await session.get(TournamentWeek, schedule.week)
                if existing is not None:
                    raise InvalidScheduleError(schedule.week, "week already exists and is immutable")
                session.add(TournamentWeek(
                    week=schedule.week,
                    registration_start=ensure_utc(schedule.registration_start),
                    registration_end=ensure_utc(schedule.registration_end),
                    point_collection_start=ensure_utc(schedule.point_collection_start),
                    point_collection_end=ensure_utc(schedule.point_collection_end),
                ))
        except IntegrityError:
            raise InvalidScheduleError(schedule.week, "week already exists and is immutable")

        logger.info(f"Created week {schedule.week}: {schedule.to_dict()}")
        return schedule

    async def get_week(self, week: int) -> WeekSchedule:
        async with self.get_session() as session:
            row = await session.get(TournamentWeek, week)
            if row is None:
                raise WeekNotFoundError(week)
            return WeekSchedule.from_model(row)

    async def list_weeks(self) -> List[WeekSchedule]:
        async with self.get_session() as session:
            result = await session.execute(select(TournamentWeek).order_by(TournamentWeek.week))
            return [WeekSchedule.from_model(row) for row in result.scalars()]

    async def schedule_ahead(self, first_week: int, first_day: date, count: int,
                             tz_name: Optional[str] = None) -> List[WeekSchedule]:
        """
        Create `count` weeks starting at `first_week`, skipping weeks that already exist.

        Returns:
            The weeks that were newly created
        """
        existing = {w.week for w in await self.list_weeks()}
        created = []
        for schedule in generate_schedule(first_week, first_day, count, tz_name=tz_name):
            if schedule.week in existing:
                logger.debug(f"Week {schedule.week} already scheduled, skipping")
                continue
            created.append(await self.create_week(schedule))
        return created

    async def current_week(self, now: Optional[Moment] = None) -> WeekSchedule:
        """
        The latest week whose registration has started.

        Raises:
            WeekNotFoundError: If no week has started yet
        """
        now = now if now is not None else utc_now()
        started = [w for w in await self.list_weeks() if phase_of(w, now) != Phase.UPCOMING]
        if not started:
            raise WeekNotFoundError(None)
        return started[-1]
