"""SQL-backed cost-tracking sink."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import func, select

from concierge.chat.schemas import CostEntry
from concierge.storage.database import Database
from concierge.storage.models import CostRecord

logger = logging.getLogger(__name__)


def _start_of_day(now: datetime | None = None) -> datetime:
    now = now or datetime.now(UTC)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class SqlCostSink:
    """Implements CostSink on the cost_records table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def record(self, user_id: str, entry: CostEntry) -> CostEntry:
        async with self.db.session() as session:
            row = CostRecord(
                user_id=user_id,
                provider=entry.provider,
                service_type=entry.type,
                amount=entry.amount,
                currency=entry.currency,
                details=dict(entry.metadata),
            )
            session.add(row)
            await session.commit()
            return self._to_entry(row)

    async def daily_total(self, user_id: str, provider: str) -> float:
        """Sum of today's (UTC) spend for one provider."""
        async with self.db.session() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(CostRecord.amount), 0.0)).where(
                    CostRecord.user_id == user_id,
                    CostRecord.provider == provider,
                    CostRecord.created_at >= _start_of_day(),
                )
            )
            return float(result.scalar_one())

    @staticmethod
    def _to_entry(row: CostRecord) -> CostEntry:
        return CostEntry(
            id=row.id,
            provider=row.provider,
            type=row.service_type,
            amount=row.amount,
            currency=row.currency,
            metadata=dict(row.details or {}),
            created_at=row.created_at,
        )
