"""Task tools: persist follow-ups and start resumable workflows."""

from __future__ import annotations

from typing import Any

from advisor.errors import TaskNotFoundError, ToolError, WorkflowError
from advisor.models import Task, TaskStatus, TaskType, ToolContext
from advisor.tasks import TaskEngine
from advisor.tools.base import Tool, ToolName
from advisor.tools.calendar_tools import parse_iso_datetime
from advisor.workflows.meeting_scheduling import start_meeting_scheduling

_RESERVED_CONTEXT_KEYS = frozenset({"messages", "step"})


def _task_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "type": task.type.value,
        "status": task.status.value,
        "description": task.description,
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
    }


def _user_data(data: dict[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (data or {}).items() if k not in _RESERVED_CONTEXT_KEYS}


class StoreTaskTool(Tool):
    name = ToolName.STORE_TASK
    description = (
        "Create a new task that may require follow-up or async processing. "
        "Use this for tasks that cannot be completed immediately (e.g. waiting for an email reply)."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": [t.value for t in TaskType], "description": "Type of task"},
            "description": {"type": "string", "description": "What needs to be done"},
            "data": {"type": "object", "description": "Additional data needed to complete the task"},
            "trigger_condition": {
                "type": "string",
                "description": 'Condition that should resume the task (e.g. "email_reply_from:john@example.com")',
            },
        },
        "required": ["type", "description"],
        "additionalProperties": False,
    }

    def __init__(self, engine: TaskEngine) -> None:
        self._engine = engine

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        task_context = _user_data(kwargs.get("data"))
        if kwargs.get("trigger_condition"):
            task_context["trigger_condition"] = kwargs["trigger_condition"]
        task = self._engine.create(context.user_id, TaskType(kwargs["type"]), kwargs["description"], task_context)
        return _task_dict(task)


class UpdateTaskTool(Tool):
    name = ToolName.UPDATE_TASK
    description = "Update an existing task's status or data."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "task_id": {"type": "string"},
            "status": {
                "type": "string",
                "enum": [
                    TaskStatus.PENDING.value,
                    TaskStatus.IN_PROGRESS.value,
                    TaskStatus.COMPLETED.value,
                    TaskStatus.FAILED.value,
                    TaskStatus.CANCELLED.value,
                ],
            },
            "data": {"type": "object", "description": "Fields to merge into the task data"},
            "notes": {"type": "string", "description": "Notes about the update"},
        },
        "required": ["task_id"],
        "additionalProperties": False,
    }

    def __init__(self, engine: TaskEngine) -> None:
        self._engine = engine

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        task_id = kwargs["task_id"]
        try:
            task = self._engine.get(task_id)
        except TaskNotFoundError:
            task = None
        if task is None or task.user_id != context.user_id:
            raise ToolError(f"Task not found: {task_id}")

        status = TaskStatus(kwargs["status"]) if kwargs.get("status") else None
        try:
            updated = self._engine.update(
                task_id,
                status=status,
                context=_user_data(kwargs.get("data")),
                add_message=kwargs.get("notes"),
                role="agent",
            )
        except WorkflowError as exc:
            raise ToolError(str(exc)) from exc
        return _task_dict(updated)


class ScheduleMeetingTool(Tool):
    name = ToolName.SCHEDULE_MEETING
    description = (
        "Start a meeting-scheduling workflow: email the contact with available times, wait for their reply, "
        "book the meeting, note it in HubSpot and send a confirmation."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "contact_email": {"type": "string"},
            "contact_name": {"type": "string"},
            "purpose": {"type": "string", "description": "What the meeting is about"},
            "duration_minutes": {"type": "integer", "description": "Meeting length (default: 30)"},
            "preferred_times": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Times to propose (ISO 8601); calendar availability is used when omitted",
            },
        },
        "required": ["contact_email", "purpose"],
        "additionalProperties": False,
    }

    def __init__(self, engine: TaskEngine) -> None:
        self._engine = engine

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        duration = int(kwargs.get("duration_minutes", 30))
        if duration <= 0:
            raise ToolError("duration_minutes must be positive")
        preferred = [parse_iso_datetime(str(t), "preferred_times") for t in kwargs.get("preferred_times") or []]
        result = await start_meeting_scheduling(
            self._engine,
            context.user_id,
            contact_email=kwargs["contact_email"],
            purpose=kwargs["purpose"],
            duration_minutes=duration,
            contact_name=kwargs.get("contact_name"),
            preferred_times=preferred,
        )
        if not result.success:
            raise ToolError(f"Meeting scheduling failed: {result.message}")
        return result.to_dict()
