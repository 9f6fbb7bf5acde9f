"""Meeting scheduling workflow.

Steps: ``initial`` sends a request email with proposed slots and waits;
an inbound reply moves the task to ``received_reply``; the engine then runs
``received_reply -> scheduled -> noted -> confirmed`` without pausing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from advisor.errors import WorkflowError
from advisor.integrations.base import CalendarClient, CrmClient, EmailClient
from advisor.llm.base import LLMProvider
from advisor.llm.parsing import extract_json_object
from advisor.models import NormalizedEmail, Task, TaskStatus, TaskType
from advisor.tasks import TaskEngine
from advisor.workflows.base import StepOutcome, Workflow, WorkflowResult

LOGGER = logging.getLogger(__name__)

AVAILABILITY_WINDOW = timedelta(days=7)
MAX_PROPOSED_SLOTS = 3
_REPLY_BODY_CHARS = 2000


class MeetingContact(BaseModel):
    email: str
    name: str | None = None
    crm_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email


class MeetingDetails(BaseModel):
    purpose: str
    duration_minutes: int = Field(gt=0)
    proposed_times: list[datetime] = Field(default_factory=list)


class _StepState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    contact: MeetingContact
    meeting: MeetingDetails


class Initial(_StepState):
    step: Literal["initial"] = "initial"


class SentRequest(_StepState):
    step: Literal["sent_request"] = "sent_request"
    email_thread_id: str | None = None
    last_email_id: str | None = None
    waiting_for_reply_from: str


class ReceivedReply(SentRequest):
    step: Literal["received_reply"] = "received_reply"
    reply_email_id: str
    reply_snippet: str = ""
    reply_body: str = ""


class Scheduled(ReceivedReply):
    step: Literal["scheduled"] = "scheduled"
    calendar_event_id: str
    scheduled_time: datetime


class Noted(Scheduled):
    step: Literal["noted"] = "noted"
    crm_note_id: str | None = None


class Confirmed(Noted):
    step: Literal["confirmed"] = "confirmed"


MeetingState = Annotated[
    Union[Initial, SentRequest, ReceivedReply, Scheduled, Noted, Confirmed],
    Field(discriminator="step"),
]
_STATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(MeetingState)

SLOT_CHOICE_PROMPT = """A contact replied to my meeting request. Which proposed time did they pick?

PROPOSED TIMES:
{options}

THEIR REPLY:
{reply}

Respond only with JSON: {{"choice": <option number, or null if none fits>}}"""


class MeetingSchedulingWorkflow(Workflow):
    """Email a contact, wait for their reply, book the slot, note it in the CRM, confirm."""

    task_type = TaskType.MEETING_SCHEDULING

    def __init__(
        self,
        email: EmailClient,
        calendar: CalendarClient,
        crm: CrmClient,
        llm: LLMProvider | None = None,
    ) -> None:
        self._email = email
        self._calendar = calendar
        self._crm = crm
        self._llm = llm

    @staticmethod
    def initial_context(
        contact_email: str,
        purpose: str,
        duration_minutes: int,
        contact_name: str | None = None,
        preferred_times: list[datetime] | None = None,
    ) -> dict[str, Any]:
        who = contact_name or contact_email
        state = Initial(
            contact=MeetingContact(email=contact_email, name=contact_name),
            meeting=MeetingDetails(
                purpose=purpose,
                duration_minutes=duration_minutes,
                proposed_times=preferred_times or [],
            ),
        )
        return {
            **state.model_dump(mode="json"),
            "messages": [
                {
                    "role": "system",
                    "content": f'Workflow started: Schedule {duration_minutes} min meeting with {who} for "{purpose}"',
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ],
        }

    @staticmethod
    def describe(contact_email: str, purpose: str, contact_name: str | None = None) -> str:
        return f"Schedule meeting with {contact_name or contact_email}: {purpose}"

    def parse_state(self, context: dict[str, Any]) -> BaseModel:
        return _STATE_ADAPTER.validate_python(context)

    async def run_step(self, task: Task, state: Any) -> StepOutcome:
        if isinstance(state, Confirmed):
            return StepOutcome(state, TaskStatus.COMPLETED, message="Meeting scheduling completed!")
        if isinstance(state, Noted):
            return await self._send_confirmation(task, state)
        if isinstance(state, Scheduled):
            return await self._add_crm_note(task, state)
        if isinstance(state, ReceivedReply):
            return await self._schedule(task, state)
        if isinstance(state, SentRequest):
            return StepOutcome(state, TaskStatus.WAITING_REPLY, message="Waiting for reply")
        if isinstance(state, Initial):
            return await self._send_request(task, state)
        raise WorkflowError(f"Unknown step: {getattr(state, 'step', state)!r}")

    def apply_reply(self, state: Any, email: NormalizedEmail) -> BaseModel:
        if not isinstance(state, SentRequest) or isinstance(state, ReceivedReply):
            raise WorkflowError(f"Cannot accept a reply at step {state.step}")
        return ReceivedReply(
            **state.model_dump(exclude={"step"}),
            reply_email_id=email.id,
            reply_snippet=email.snippet,
            reply_body=email.body[:_REPLY_BODY_CHARS],
        )

    async def _send_request(self, task: Task, state: Initial) -> StepOutcome:
        meeting = state.meeting
        proposed = list(meeting.proposed_times[:MAX_PROPOSED_SLOTS])
        if not proposed:
            now = datetime.now(timezone.utc)
            slots = await self._calendar.find_availability(
                task.user_id, now, now + AVAILABILITY_WINDOW, meeting.duration_minutes
            )
            if slots is None:
                LOGGER.warning("Calendar unavailable for user %s; sending request without times", task.user_id)
                slots = []
            proposed = [slot.start for slot in slots[:MAX_PROPOSED_SLOTS]]

        if proposed:
            options = "\n".join(f"{i}. {_format_slot(t)}" for i, t in enumerate(proposed, start=1))
            times_block = f"Here are some times that work for me:\n\n{options}\n\nPlease let me know which time works best for you, or suggest an alternative."
        else:
            times_block = "Please let me know a few times that work for you."

        body = (
            f"Hi {state.contact.name or 'there'},\n\n"
            f"I'd like to schedule a {meeting.duration_minutes}-minute meeting with you to discuss: {meeting.purpose}\n\n"
            f"{times_block}\n\n"
            "Best regards"
        )
        sent = await self._email.send_email(
            task.user_id,
            to=state.contact.email,
            subject=f"Meeting Request: {meeting.purpose}",
            body=body,
        )
        if sent is None:
            raise WorkflowError("Failed to send meeting request email")

        next_state = SentRequest(
            contact=state.contact,
            meeting=meeting.model_copy(update={"proposed_times": proposed}),
            email_thread_id=sent.thread_id,
            last_email_id=sent.id,
            waiting_for_reply_from=state.contact.email,
        )
        return StepOutcome(
            next_state,
            TaskStatus.WAITING_REPLY,
            log=f"Sent meeting request email to {state.contact.email}. Waiting for reply...",
            message=f"Meeting request sent to {state.contact.email}. I'll process their reply when it arrives.",
            data={"email_id": sent.id, "thread_id": sent.thread_id},
        )

    async def _schedule(self, task: Task, state: ReceivedReply) -> StepOutcome:
        start = await self._choose_time(state)
        end = start + timedelta(minutes=state.meeting.duration_minutes)
        event = await self._calendar.create_event(
            task.user_id,
            title=f"Meeting: {state.meeting.purpose}",
            start=start,
            end=end,
            attendees=[state.contact.email],
            description=f"Meeting with {state.contact.display_name}\n\nPurpose: {state.meeting.purpose}",
            send_notifications=True,
        )
        if event is None:
            raise WorkflowError("Failed to create calendar event")
        next_state = Scheduled(
            **state.model_dump(exclude={"step"}),
            calendar_event_id=event.id,
            scheduled_time=start,
        )
        return StepOutcome(next_state, TaskStatus.IN_PROGRESS, log=f"Created calendar event for {_format_slot(start)}")

    async def _choose_time(self, state: ReceivedReply) -> datetime:
        proposed = state.meeting.proposed_times
        if not proposed:
            return datetime.now(timezone.utc) + timedelta(days=1)
        if self._llm is None or len(proposed) == 1 or not state.reply_body.strip():
            return proposed[0]

        options = "\n".join(f"{i}. {_format_slot(t)}" for i, t in enumerate(proposed, start=1))
        prompt = SLOT_CHOICE_PROMPT.format(options=options, reply=state.reply_body)
        try:
            response = await self._llm.generate(
                [{"role": "user", "content": prompt}],
                temperature=0.0,
                max_tokens=50,
            )
        except Exception:  # noqa: BLE001
            LOGGER.warning("Slot choice request failed; using first proposed time", exc_info=True)
            return proposed[0]

        decision = extract_json_object(response.content or "") or {}
        choice = decision.get("choice")
        if isinstance(choice, int) and not isinstance(choice, bool) and 1 <= choice <= len(proposed):
            return proposed[choice - 1]
        return proposed[0]

    async def _add_crm_note(self, task: Task, state: Scheduled) -> StepOutcome:
        contact = state.contact
        note_id: str | None = None
        try:
            crm_contact = await self._crm.get_contact_by_email(task.user_id, contact.email)
            if crm_contact is not None:
                note = await self._crm.create_note(
                    task.user_id,
                    crm_contact.id,
                    f"Scheduled meeting: {state.meeting.purpose}\n"
                    f"Time: {_format_slot(state.scheduled_time)}\n"
                    f"Duration: {state.meeting.duration_minutes} minutes\n"
                    f"Calendar Event ID: {state.calendar_event_id}",
                )
                if note is not None:
                    note_id = note.id
                    contact = contact.model_copy(update={"crm_id": crm_contact.id})
        except Exception:  # noqa: BLE001
            LOGGER.warning("CRM note skipped for task %s", task.id, exc_info=True)

        next_state = Noted(
            **state.model_dump(exclude={"step", "contact"}),
            contact=contact,
            crm_note_id=note_id,
        )
        log = (
            f"Added note to {contact.display_name}'s CRM record"
            if note_id
            else "Skipped CRM note (contact not found or CRM not connected)"
        )
        return StepOutcome(next_state, TaskStatus.IN_PROGRESS, log=log)

    async def _send_confirmation(self, task: Task, state: Noted) -> StepOutcome:
        when = state.scheduled_time
        body = (
            f"Hi {state.contact.name or 'there'},\n\n"
            "This confirms our meeting:\n\n"
            f"Date: {when.strftime('%A, %B %d, %Y')}\n"
            f"Time: {when.strftime('%I:%M %p %Z').strip()}\n"
            f"Duration: {state.meeting.duration_minutes} minutes\n"
            f"Topic: {state.meeting.purpose}\n\n"
            "A calendar invite has been sent separately. Looking forward to speaking with you!\n\n"
            "Best regards"
        )
        sent = await self._email.send_email(
            task.user_id,
            to=state.contact.email,
            subject=f"Confirmed: {state.meeting.purpose}",
            body=body,
            thread_id=state.email_thread_id,
        )
        if sent is None:
            raise WorkflowError("Failed to send confirmation email")
        return StepOutcome(
            Confirmed(**state.model_dump(exclude={"step"})),
            TaskStatus.COMPLETED,
            log="Sent confirmation email. Meeting scheduling complete!",
            message=(
                f"Meeting scheduled with {state.contact.display_name} for {_format_slot(when)}. "
                "Calendar invite and confirmation email sent!"
            ),
            data={"meeting_time": when.isoformat(), "calendar_event_id": state.calendar_event_id},
        )


def _format_slot(when: datetime) -> str:
    return f"{when.strftime('%A, %B %d')} at {when.strftime('%I:%M %p').lstrip('0')}"


async def start_meeting_scheduling(
    engine: TaskEngine,
    user_id: str,
    contact_email: str,
    purpose: str,
    duration_minutes: int,
    contact_name: str | None = None,
    preferred_times: list[datetime] | None = None,
) -> WorkflowResult:
    """Create a meeting-scheduling task and run it up to its first pause."""

    task = engine.create(
        user_id,
        TaskType.MEETING_SCHEDULING,
        MeetingSchedulingWorkflow.describe(contact_email, purpose, contact_name),
        MeetingSchedulingWorkflow.initial_context(
            contact_email, purpose, duration_minutes, contact_name, preferred_times
        ),
    )
    return await engine.advance(task)
