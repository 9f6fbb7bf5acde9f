"""Events that can trigger proactive behaviour, and their prompt rendering."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from advisor.models import CalendarEvent, CrmContact, CrmNote, NormalizedEmail

EMAIL_BODY_PROMPT_CHARS = 1000
CRM_NOTE_PROMPT_CHARS = 500


@dataclass(frozen=True, slots=True)
class NewEmailEvent:
    email: NormalizedEmail
    type: str = "new_email"


@dataclass(frozen=True, slots=True)
class CalendarEventSoonEvent:
    event: CalendarEvent
    type: str = "calendar_event_soon"


@dataclass(frozen=True, slots=True)
class CrmContactUpdatedEvent:
    contact: CrmContact
    type: str = "crm_contact_updated"


@dataclass(frozen=True, slots=True)
class CrmNoteAddedEvent:
    contact: CrmContact
    note: CrmNote
    type: str = "crm_note_added"


Event = Union[NewEmailEvent, CalendarEventSoonEvent, CrmContactUpdatedEvent, CrmNoteAddedEvent]


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def format_event(event: Event) -> str:
    """Render an event as the block of text shown to the model."""

    if isinstance(event, NewEmailEvent):
        email = event.email
        return (
            "NEW EMAIL RECEIVED:\n"
            f"From: {email.sender_name or email.sender} <{email.sender}>\n"
            f"Subject: {email.subject}\n"
            f"Date: {email.date.isoformat()}\n"
            f"Preview: {email.snippet}\n\n"
            "Full Body:\n"
            f"{_truncate(email.body, EMAIL_BODY_PROMPT_CHARS)}"
        )
    if isinstance(event, CalendarEventSoonEvent):
        cal = event.event
        return (
            "UPCOMING CALENDAR EVENT:\n"
            f"Title: {cal.title}\n"
            f"Start: {cal.start.isoformat()}\n"
            f"End: {cal.end.isoformat()}\n"
            f"Attendees: {', '.join(cal.attendees) or 'None'}\n"
            f"Location: {cal.location or 'Not specified'}"
        )
    if isinstance(event, CrmContactUpdatedEvent):
        contact = event.contact
        return (
            "CRM CONTACT UPDATED:\n"
            f"Name: {contact.full_name or 'Unknown'}\n"
            f"Email: {contact.email}\n"
            f"Company: {contact.company or 'Not specified'}\n"
            f"Phone: {contact.phone or 'Not specified'}"
        )
    if isinstance(event, CrmNoteAddedEvent):
        return (
            "CRM NOTE ADDED:\n"
            f"Contact: {event.contact.full_name or 'Unknown'} <{event.contact.email}>\n"
            f"Note: {_truncate(event.note.content, CRM_NOTE_PROMPT_CHARS)}"
        )
    raise TypeError(f"Unsupported event: {event!r}")
