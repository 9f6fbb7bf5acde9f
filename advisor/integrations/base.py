"""Interfaces to the email, calendar and CRM API clients.

Concrete clients own OAuth and HTTP. A ``None`` return (or an empty result
where noted) means the service is not available for the user, usually because
the account needs to be reconnected.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from advisor.models import CalendarEvent, CrmContact, CrmNote, NormalizedEmail, SentEmail, TimeSlot


class EmailClient(ABC):
    @abstractmethod
    async def send_email(
        self,
        user_id: str,
        to: str,
        subject: str,
        body: str,
        cc: list[str] | None = None,
        thread_id: str | None = None,
    ) -> SentEmail | None:
        """Send a message, as a reply in ``thread_id`` when given."""

    @abstractmethod
    async def list_emails(
        self,
        user_id: str,
        query: str | None = None,
        max_results: int = 10,
    ) -> list[NormalizedEmail] | None:
        """List recent inbox messages matching an optional search query."""


class CalendarClient(ABC):
    @abstractmethod
    async def list_events(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        max_results: int = 10,
    ) -> list[CalendarEvent] | None:
        """List events overlapping ``[start, end)``."""

    @abstractmethod
    async def find_availability(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        duration_minutes: int,
    ) -> list[TimeSlot] | None:
        """Free slots of at least ``duration_minutes`` within working hours."""

    @abstractmethod
    async def create_event(
        self,
        user_id: str,
        title: str,
        start: datetime,
        end: datetime,
        attendees: list[str] | None = None,
        description: str | None = None,
        location: str | None = None,
        send_notifications: bool = False,
    ) -> CalendarEvent | None:
        """Create an event on the user's primary calendar."""


class CrmClient(ABC):
    @abstractmethod
    async def search_contacts(self, user_id: str, query: str, limit: int = 10) -> list[CrmContact] | None:
        """Search contacts by name, email or company."""

    @abstractmethod
    async def get_contact_by_email(self, user_id: str, email: str) -> CrmContact | None:
        """Exact lookup by email address."""

    @abstractmethod
    async def create_contact(
        self,
        user_id: str,
        email: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
        company: str | None = None,
    ) -> CrmContact | None:
        """Create a contact."""

    @abstractmethod
    async def create_note(self, user_id: str, contact_id: str, content: str) -> CrmNote | None:
        """Attach a note to a contact."""
