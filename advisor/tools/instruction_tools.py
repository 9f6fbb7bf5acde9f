"""Tools for managing standing instructions."""

from __future__ import annotations

from typing import Any

from advisor.db import Database
from advisor.errors import ToolError
from advisor.models import Instruction, ToolContext
from advisor.tools.base import Tool, ToolName


def _instruction_dict(instruction: Instruction) -> dict[str, Any]:
    return {
        "id": instruction.id,
        "content": instruction.content,
        "active": instruction.active,
        "created_at": instruction.created_at.isoformat(),
    }


class AddInstructionTool(Tool):
    name = ToolName.ADD_INSTRUCTION
    description = (
        "Save a standing instruction to apply to future emails, calendar events and CRM changes, "
        'e.g. "When a new client emails me, add them to HubSpot". '
        "Pass instruction_id instead of content to reactivate a previously removed instruction."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "content": {"type": "string", "description": "The instruction, in plain language"},
            "instruction_id": {"type": "string", "description": "Reactivate this deactivated instruction"},
        },
        "required": [],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        instruction_id = kwargs.get("instruction_id")
        if instruction_id:
            if not self._db.set_instruction_active(context.user_id, instruction_id, True):
                raise ToolError(f"Instruction not found: {instruction_id}")
            instruction = self._db.get_instruction(context.user_id, instruction_id)
            if instruction is None:
                raise ToolError(f"Instruction not found: {instruction_id}")
            return _instruction_dict(instruction)

        content = (kwargs.get("content") or "").strip()
        if not content:
            raise ToolError("Instruction content must not be empty")
        return _instruction_dict(self._db.add_instruction(context.user_id, content))


class ListInstructionsTool(Tool):
    name = ToolName.LIST_INSTRUCTIONS
    description = "List the user's standing instructions."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "include_inactive": {"type": "boolean", "description": "Also list deactivated instructions"},
        },
        "required": [],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> list[dict[str, Any]]:
        active_only = not kwargs.get("include_inactive", False)
        return [_instruction_dict(i) for i in self._db.list_instructions(context.user_id, active_only=active_only)]


class RemoveInstructionTool(Tool):
    name = ToolName.REMOVE_INSTRUCTION
    description = "Stop applying a standing instruction. Deactivates it unless permanent deletion is requested."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "instruction_id": {"type": "string"},
            "permanent": {"type": "boolean", "description": "Delete instead of deactivating"},
        },
        "required": ["instruction_id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        instruction_id = kwargs["instruction_id"]
        if kwargs.get("permanent", False):
            found = self._db.delete_instruction(context.user_id, instruction_id)
        else:
            found = self._db.set_instruction_active(context.user_id, instruction_id, False)
        if not found:
            raise ToolError(f"Instruction not found: {instruction_id}")
        return {"instruction_id": instruction_id, "deleted": bool(kwargs.get("permanent", False))}
