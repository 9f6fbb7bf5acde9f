"""Email tools backed by the user's mailbox client."""

from __future__ import annotations

from typing import Any

from advisor.errors import ToolError
from advisor.integrations.base import EmailClient
from advisor.models import NormalizedEmail, ToolContext
from advisor.tools.base import Tool, ToolName

RECONNECT_GOOGLE = "Email is not available. Please reconnect your Google account."
_BODY_PREVIEW_CHARS = 500


class SendEmailTool(Tool):
    name = ToolName.SEND_EMAIL
    description = "Send an email to a recipient. Use this when the user wants to send an email to someone."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "to": {"type": "string", "description": "Email address of the recipient"},
            "subject": {"type": "string", "description": "Subject line of the email"},
            "body": {"type": "string", "description": "Body content of the email"},
            "cc": {"type": "array", "items": {"type": "string"}, "description": "Optional CC recipients"},
        },
        "required": ["to", "subject", "body"],
        "additionalProperties": False,
    }

    def __init__(self, email: EmailClient) -> None:
        self._email = email

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        sent = await self._email.send_email(
            context.user_id,
            to=kwargs["to"],
            subject=kwargs["subject"],
            body=kwargs["body"],
            cc=kwargs.get("cc"),
        )
        if sent is None:
            raise ToolError(RECONNECT_GOOGLE)
        return {"message_id": sent.id, "thread_id": sent.thread_id, "to": kwargs["to"]}


class ReadEmailsTool(Tool):
    name = ToolName.READ_EMAILS
    description = "Read recent emails from the inbox. Use this to check for new emails or find specific emails."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": 'Search query to filter emails (e.g. "from:john@example.com" or "subject:meeting")',
            },
            "max_results": {"type": "integer", "description": "Maximum number of emails to return (default: 10)"},
        },
        "required": [],
        "additionalProperties": False,
    }

    def __init__(self, email: EmailClient) -> None:
        self._email = email

    async def run(self, context: ToolContext, **kwargs: Any) -> list[dict[str, Any]]:
        max_results = max(1, min(int(kwargs.get("max_results", 10)), 50))
        emails = await self._email.list_emails(context.user_id, query=kwargs.get("query"), max_results=max_results)
        if emails is None:
            raise ToolError(RECONNECT_GOOGLE)
        return [_summarize(email) for email in emails]


def _summarize(email: NormalizedEmail) -> dict[str, Any]:
    body = email.body
    if len(body) > _BODY_PREVIEW_CHARS:
        body = body[:_BODY_PREVIEW_CHARS] + "..."
    return {
        "id": email.id,
        "thread_id": email.thread_id,
        "from": email.sender,
        "from_name": email.sender_name,
        "subject": email.subject,
        "date": email.date.isoformat(),
        "snippet": email.snippet,
        "body": body,
        "is_read": email.is_read,
    }
