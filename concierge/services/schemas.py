"""Pydantic records returned by the domain services."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TaskRecord(BaseModel):
    id: str
    title: str
    description: str = ""
    priority: int
    status: str
    due_date: datetime | None = None
    created_at: datetime | None = None


class EventRecord(BaseModel):
    id: str
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime | None = None
    location: str | None = None


class ContactRecord(BaseModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    notes: str | None = None


class GatewayReceipt(BaseModel):
    """What the messaging provider reported for an SMS or call."""

    sid: str
    status: str
    to: str
    from_number: str | None = None
    price: float | None = None  # positive USD amount; None until the provider prices it
    price_unit: str | None = None
