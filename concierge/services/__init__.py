"""Domain services behind the assistant's tools."""

from concierge.services.calendar import CalendarService
from concierge.services.contacts import ContactDirectory
from concierge.services.messaging import MessageLog, TwilioGateway
from concierge.services.schemas import ContactRecord, EventRecord, GatewayReceipt, TaskRecord
from concierge.services.tasks import PRIORITY_LEVELS, TaskService

__all__ = [
    "CalendarService",
    "ContactDirectory",
    "ContactRecord",
    "EventRecord",
    "GatewayReceipt",
    "MessageLog",
    "PRIORITY_LEVELS",
    "TaskRecord",
    "TaskService",
    "TwilioGateway",
]
