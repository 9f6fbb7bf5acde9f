"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from advisor.models import ToolContext


class ToolName(str, Enum):
    """Closed set of tools advertised to the model."""

    SEND_EMAIL = "send_email"
    READ_EMAILS = "read_emails"
    LIST_CALENDAR_EVENTS = "list_calendar_events"
    FIND_CALENDAR_AVAILABILITY = "find_calendar_availability"
    CREATE_CALENDAR_EVENT = "create_calendar_event"
    FIND_HUBSPOT_CONTACT = "find_hubspot_contact"
    CREATE_HUBSPOT_CONTACT = "create_hubspot_contact"
    CREATE_HUBSPOT_NOTE = "create_hubspot_note"
    SEARCH_RAG = "search_rag"
    STORE_TASK = "store_task"
    UPDATE_TASK = "update_task"
    SCHEDULE_MEETING = "schedule_meeting"
    ADD_INSTRUCTION = "add_instruction"
    LIST_INSTRUCTIONS = "list_instructions"
    REMOVE_INSTRUCTION = "remove_instruction"


class Tool(ABC):
    """Base class for all advisor tools.

    ``run`` returns the success payload. Expected failures are raised as
    :class:`advisor.errors.ToolError`; the registry turns both into a
    :class:`advisor.models.ToolResult`.
    """

    name: ToolName
    description: str
    parameters_schema: dict[str, Any]

    @abstractmethod
    async def run(self, context: ToolContext, **kwargs: Any) -> Any:
        """Execute tool with validated arguments."""
