"""Calendar tools."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from advisor.errors import ToolError
from advisor.integrations.base import CalendarClient
from advisor.models import CalendarEvent, ToolContext
from advisor.tools.base import Tool, ToolName

RECONNECT_GOOGLE = "Calendar is not available. Please reconnect your Google account."


def parse_iso_datetime(value: str, field_name: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""

    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ToolError(f"{field_name} must be an ISO 8601 date or datetime, got {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_range(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ToolError("End must be after start")


def _event_dict(event: CalendarEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "start": event.start.isoformat(),
        "end": event.end.isoformat(),
        "attendees": event.attendees,
        "location": event.location,
        "description": event.description,
        "link": event.html_link,
    }


class ListCalendarEventsTool(Tool):
    name = ToolName.LIST_CALENDAR_EVENTS
    description = "List calendar events within a date range. Use this to see upcoming meetings and appointments."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "start_date": {"type": "string", "description": "Start of the range (ISO 8601)"},
            "end_date": {"type": "string", "description": "End of the range (ISO 8601)"},
            "max_results": {"type": "integer", "description": "Maximum number of events to return (default: 10)"},
        },
        "required": ["start_date", "end_date"],
        "additionalProperties": False,
    }

    def __init__(self, calendar: CalendarClient) -> None:
        self._calendar = calendar

    async def run(self, context: ToolContext, **kwargs: Any) -> list[dict[str, Any]]:
        start = parse_iso_datetime(kwargs["start_date"], "start_date")
        end = parse_iso_datetime(kwargs["end_date"], "end_date")
        _check_range(start, end)
        events = await self._calendar.list_events(
            context.user_id, start, end, max_results=int(kwargs.get("max_results", 10))
        )
        if events is None:
            raise ToolError(RECONNECT_GOOGLE)
        return [_event_dict(event) for event in events]


class FindCalendarAvailabilityTool(Tool):
    name = ToolName.FIND_CALENDAR_AVAILABILITY
    description = "Find available time slots in the calendar. Use this when scheduling meetings."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "start_date": {"type": "string", "description": "Start of the search window (ISO 8601)"},
            "end_date": {"type": "string", "description": "End of the search window (ISO 8601)"},
            "duration_minutes": {"type": "integer", "description": "Required meeting length in minutes"},
        },
        "required": ["start_date", "end_date", "duration_minutes"],
        "additionalProperties": False,
    }

    def __init__(self, calendar: CalendarClient) -> None:
        self._calendar = calendar

    async def run(self, context: ToolContext, **kwargs: Any) -> list[dict[str, str]]:
        start = parse_iso_datetime(kwargs["start_date"], "start_date")
        end = parse_iso_datetime(kwargs["end_date"], "end_date")
        _check_range(start, end)
        duration = int(kwargs["duration_minutes"])
        if duration <= 0:
            raise ToolError("duration_minutes must be positive")
        slots = await self._calendar.find_availability(context.user_id, start, end, duration)
        if slots is None:
            raise ToolError(RECONNECT_GOOGLE)
        return [{"start": slot.start.isoformat(), "end": slot.end.isoformat()} for slot in slots]


class CreateCalendarEventTool(Tool):
    name = ToolName.CREATE_CALENDAR_EVENT
    description = "Create a new calendar event. Use this to schedule meetings."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Title of the event"},
            "start_time": {"type": "string", "description": "Start time (ISO 8601)"},
            "end_time": {"type": "string", "description": "End time (ISO 8601)"},
            "attendees": {"type": "array", "items": {"type": "string"}, "description": "Attendee email addresses"},
            "description": {"type": "string", "description": "Description or notes for the event"},
            "location": {"type": "string", "description": "Location or meeting link"},
        },
        "required": ["title", "start_time", "end_time"],
        "additionalProperties": False,
    }

    def __init__(self, calendar: CalendarClient) -> None:
        self._calendar = calendar

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        start = parse_iso_datetime(kwargs["start_time"], "start_time")
        end = parse_iso_datetime(kwargs["end_time"], "end_time")
        _check_range(start, end)
        attendees = kwargs.get("attendees") or []
        event = await self._calendar.create_event(
            context.user_id,
            title=kwargs["title"],
            start=start,
            end=end,
            attendees=attendees,
            description=kwargs.get("description"),
            location=kwargs.get("location"),
            send_notifications=bool(attendees),
        )
        if event is None:
            raise ToolError(RECONNECT_GOOGLE)
        return _event_dict(event)
