"""Contact lookup for the searchContacts tool."""

from __future__ import annotations

import logging

from sqlalchemy import or_, select

from concierge.services.schemas import ContactRecord
from concierge.storage.database import Database
from concierge.storage.models import Contact

logger = logging.getLogger(__name__)

MAX_RESULTS = 50


class ContactDirectory:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def search(self, user_id: str, query: str, limit: int = 10) -> list[ContactRecord]:
        """Case-insensitive substring match on name, phone, email and company."""
        limit = max(1, min(limit, MAX_RESULTS))
        pattern = f"%{_escape_like(query.strip())}%"
        async with self.db.session() as session:
            result = await session.execute(
                select(Contact)
                .where(
                    Contact.user_id == user_id,
                    or_(
                        Contact.name.ilike(pattern, escape="\\"),
                        Contact.phone.ilike(pattern, escape="\\"),
                        Contact.email.ilike(pattern, escape="\\"),
                        Contact.company.ilike(pattern, escape="\\"),
                    ),
                )
                .order_by(Contact.name)
                .limit(limit)
            )
            contacts = [_to_record(c) for c in result.scalars().all()]

        logger.debug("Contact search %r for user %s: %d hits", query, user_id, len(contacts))
        return contacts

    async def find_by_phone(self, user_id: str, phone: str) -> ContactRecord | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(Contact).where(Contact.user_id == user_id, Contact.phone == phone).limit(1)
            )
            contact = result.scalars().first()
            return _to_record(contact) if contact is not None else None


def _to_record(contact: Contact) -> ContactRecord:
    return ContactRecord(
        id=contact.id,
        name=contact.name,
        email=contact.email,
        phone=contact.phone,
        company=contact.company,
        notes=contact.notes,
    )


def _escape_like(text: str) -> str:
    """Make LIKE wildcards in user input match literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
