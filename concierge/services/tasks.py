"""Task creation for the createTask tool."""

from __future__ import annotations

import logging
from datetime import datetime

from concierge.services.schemas import TaskRecord
from concierge.storage.database import Database
from concierge.storage.models import Task

logger = logging.getLogger(__name__)

# Stored priority: 1 is most urgent
PRIORITY_LEVELS: dict[str, int] = {
    "urgent": 1,
    "high": 2,
    "medium": 3,
    "low": 4,
}
DEFAULT_PRIORITY = PRIORITY_LEVELS["medium"]


class TaskService:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(
        self,
        user_id: str,
        title: str,
        description: str = "",
        priority: int = DEFAULT_PRIORITY,
        due_date: datetime | None = None,
    ) -> TaskRecord:
        task = Task(
            user_id=user_id,
            title=title,
            description=description,
            priority=priority,
            status="pending",
            due_date=due_date,
        )
        async with self.db.session() as session:
            session.add(task)
            await session.flush()
            record = TaskRecord(
                id=task.id,
                title=task.title,
                description=task.description,
                priority=task.priority,
                status=task.status,
                due_date=task.due_date,
                created_at=task.created_at,
            )
            await session.commit()
        logger.info("Created task %s for user %s (priority %d)", record.id, user_id, priority)
        return record
