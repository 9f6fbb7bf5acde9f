"""HubSpot CRM tools."""

from __future__ import annotations

from typing import Any

from advisor.errors import ToolError
from advisor.integrations.base import CrmClient
from advisor.models import CrmContact, ToolContext
from advisor.tools.base import Tool, ToolName

RECONNECT_HUBSPOT = "HubSpot is not available. Please reconnect your HubSpot account."


def _contact_dict(contact: CrmContact) -> dict[str, Any]:
    return {
        "id": contact.id,
        "email": contact.email,
        "name": contact.full_name or None,
        "company": contact.company,
        "phone": contact.phone,
        "job_title": contact.job_title,
    }


class FindHubspotContactTool(Tool):
    name = ToolName.FIND_HUBSPOT_CONTACT
    description = "Search for a contact in HubSpot CRM. Use this to look up client information."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query (name, email, company, etc.)"},
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    def __init__(self, crm: CrmClient) -> None:
        self._crm = crm

    async def run(self, context: ToolContext, **kwargs: Any) -> list[dict[str, Any]]:
        contacts = await self._crm.search_contacts(context.user_id, kwargs["query"])
        if contacts is None:
            raise ToolError(RECONNECT_HUBSPOT)
        return [_contact_dict(contact) for contact in contacts]


class CreateHubspotContactTool(Tool):
    name = ToolName.CREATE_HUBSPOT_CONTACT
    description = "Create a new contact in HubSpot CRM. Use this when adding a new client."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "email": {"type": "string", "description": "Email address of the contact"},
            "first_name": {"type": "string"},
            "last_name": {"type": "string"},
            "phone": {"type": "string"},
            "company": {"type": "string"},
        },
        "required": ["email", "first_name", "last_name"],
        "additionalProperties": False,
    }

    def __init__(self, crm: CrmClient) -> None:
        self._crm = crm

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        contact = await self._crm.create_contact(
            context.user_id,
            email=kwargs["email"],
            first_name=kwargs["first_name"],
            last_name=kwargs["last_name"],
            phone=kwargs.get("phone"),
            company=kwargs.get("company"),
        )
        if contact is None:
            raise ToolError(RECONNECT_HUBSPOT)
        return _contact_dict(contact)


class CreateHubspotNoteTool(Tool):
    name = ToolName.CREATE_HUBSPOT_NOTE
    description = "Add a note to a HubSpot contact. Use this to log interactions or information about a client."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "contact_email": {"type": "string", "description": "Email of the contact to add the note to"},
            "content": {"type": "string", "description": "Content of the note"},
        },
        "required": ["contact_email", "content"],
        "additionalProperties": False,
    }

    def __init__(self, crm: CrmClient) -> None:
        self._crm = crm

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        contact = await self._crm.get_contact_by_email(context.user_id, kwargs["contact_email"])
        if contact is None:
            raise ToolError(
                f"No HubSpot contact found for {kwargs['contact_email']}. "
                "Create the contact first, or reconnect your HubSpot account."
            )
        note = await self._crm.create_note(context.user_id, contact.id, kwargs["content"])
        if note is None:
            raise ToolError(RECONNECT_HUBSPOT)
        return {"note_id": note.id, "contact_id": contact.id}
