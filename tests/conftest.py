from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from advisor.db import Database
from advisor.integrations.base import CalendarClient, CrmClient, EmailClient
from advisor.llm.base import LLMProvider
from advisor.models import (
    CalendarEvent,
    CrmContact,
    CrmNote,
    LLMResponse,
    NormalizedEmail,
    SentEmail,
    TimeSlot,
)

VOCABULARY = ["retirement", "meeting", "portfolio", "tax", "insurance", "college"]


def keyword_vector(text: str) -> list[float]:
    words = re.findall(r"[a-z0-9]+", text.lower())
    return [float(words.count(term)) for term in VOCABULARY]


class ScriptedLLM(LLMProvider):
    """Replays queued responses and embeds text as keyword counts."""

    def __init__(self, responses: list[LLMResponse | Exception] | None = None) -> None:
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []
        self.embed_calls: list[list[str]] = []

    async def generate(
        self,
        messages,
        tools=None,
        tool_choice=None,
        temperature=None,
        max_tokens=None,
        response_format=None,
    ):  # noqa: ANN001, ANN201
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "tools": tools,
                "tool_choice": tool_choice,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if not self.responses:
            return LLMResponse(content="done")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def embed(self, texts):  # noqa: ANN001, ANN201
        self.embed_calls.append(list(texts))
        return [keyword_vector(text) for text in texts]


class FakeEmailClient(EmailClient):
    def __init__(self, inbox: list[NormalizedEmail] | None = None) -> None:
        self.inbox = list(inbox or [])
        self.sent: list[dict[str, Any]] = []
        self.available = True

    async def send_email(self, user_id, to, subject, body, cc=None, thread_id=None):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        self.sent.append(
            {"user_id": user_id, "to": to, "subject": subject, "body": body, "cc": cc, "thread_id": thread_id}
        )
        n = len(self.sent)
        return SentEmail(id=f"msg-{n}", thread_id=thread_id or f"thread-{n}")

    async def list_emails(self, user_id, query=None, max_results=10):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        return self.inbox[:max_results]


class FakeCalendarClient(CalendarClient):
    def __init__(self, slots: list[TimeSlot] | None = None) -> None:
        self.slots = list(slots or [])
        self.created: list[dict[str, Any]] = []
        self.available = True

    async def list_events(self, user_id, start, end, max_results=10):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        return [
            CalendarEvent(id=f"evt-{i}", title=c["title"], start=c["start"], end=c["end"])
            for i, c in enumerate(self.created, start=1)
        ][:max_results]

    async def find_availability(self, user_id, start, end, duration_minutes):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        return list(self.slots)

    async def create_event(
        self,
        user_id,
        title,
        start,
        end,
        attendees=None,
        description=None,
        location=None,
        send_notifications=False,
    ):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        self.created.append(
            {
                "title": title,
                "start": start,
                "end": end,
                "attendees": attendees or [],
                "description": description,
                "send_notifications": send_notifications,
            }
        )
        return CalendarEvent(
            id=f"evt-{len(self.created)}",
            title=title,
            start=start,
            end=end,
            attendees=attendees or [],
            description=description,
            location=location,
        )


class FakeCrmClient(CrmClient):
    def __init__(self, contacts: list[CrmContact] | None = None) -> None:
        self.contacts = {c.email.lower(): c for c in contacts or []}
        self.notes: list[tuple[str, str]] = []
        self.available = True
        self.fail_notes = False

    async def search_contacts(self, user_id, query, limit=10):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        q = query.lower()
        return [
            c for c in self.contacts.values() if q in c.email.lower() or q in c.full_name.lower()
        ][:limit]

    async def get_contact_by_email(self, user_id, email):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        return self.contacts.get(email.lower())

    async def create_contact(self, user_id, email, first_name, last_name, phone=None, company=None):  # noqa: ANN001, ANN201
        if not self.available:
            return None
        contact = CrmContact(
            id=f"c-{len(self.contacts) + 1}",
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            company=company,
        )
        self.contacts[email.lower()] = contact
        return contact

    async def create_note(self, user_id, contact_id, content):  # noqa: ANN001, ANN201
        if self.fail_notes:
            raise RuntimeError("HubSpot returned 500")
        if not self.available:
            return None
        self.notes.append((contact_id, content))
        return CrmNote(id=f"note-{len(self.notes)}", content=content, created_at=datetime.now(timezone.utc))


def make_email(
    email_id: str = "e1",
    sender: str = "client@example.com",
    subject: str = "Hello",
    body: str = "Hi there",
    thread_id: str = "t1",
) -> NormalizedEmail:
    return NormalizedEmail(
        id=email_id,
        thread_id=thread_id,
        sender=sender,
        subject=subject,
        body=body,
        date=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
        sender_name="Client",
        to=["advisor@example.com"],
        snippet=body[:100],
    )


def future_slots(count: int = 3) -> list[TimeSlot]:
    base = datetime(2030, 1, 7, 10, 0, tzinfo=timezone.utc)
    return [TimeSlot(start=base + timedelta(days=i), end=base + timedelta(days=i, minutes=30)) for i in range(count)]


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "advisor.db")
    database.initialize()
    return database


@pytest.fixture
def email_client():
    return FakeEmailClient()


@pytest.fixture
def calendar_client():
    return FakeCalendarClient(future_slots())


@pytest.fixture
def crm_client():
    return FakeCrmClient(
        [CrmContact(id="c-1", email="client@example.com", first_name="Casey", last_name="Client", company="Acme")]
    )
