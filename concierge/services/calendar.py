"""Calendar events for the scheduleEvent tool."""

from __future__ import annotations

import logging
from datetime import datetime

from concierge.services.schemas import EventRecord
from concierge.storage.database import Database
from concierge.storage.models import CalendarEvent

logger = logging.getLogger(__name__)


class CalendarService:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create_event(
        self,
        user_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime | None = None,
        description: str = "",
        location: str | None = None,
    ) -> EventRecord:
        if end_time is not None and end_time < start_time:
            raise ValueError("end time is before start time")

        async with self.db.session() as session:
            event = CalendarEvent(
                user_id=user_id,
                title=title,
                description=description,
                start_time=start_time,
                end_time=end_time,
                location=location,
            )
            session.add(event)
            await session.commit()

        logger.info("Scheduled event %s for user %s at %s", event.id, user_id, start_time.isoformat())
        return EventRecord(
            id=event.id,
            title=event.title,
            description=event.description,
            start_time=start_time,
            end_time=end_time,
            location=event.location,
        )
