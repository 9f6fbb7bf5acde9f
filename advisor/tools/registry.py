"""Registry for safe tool registration and dispatch."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Iterable, Literal

from pydantic import ValidationError, create_model

from advisor.db import Database
from advisor.errors import ToolError
from advisor.llm.openai_compat import safe_json_loads
from advisor.models import ToolContext, ToolResult
from advisor.tools.base import Tool, ToolName

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of the tools advertised to the model.

    Dispatch never raises: unknown names, invalid arguments and tool errors
    all come back as a failed :class:`ToolResult`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._tools: dict[ToolName, Tool] = {}

    def register(self, tool: Tool) -> None:
        name = ToolName(tool.name)
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name.value}")
        _check_schema(name, tool.parameters_schema)
        self._tools[name] = tool

    def define(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def validate_complete(self) -> None:
        """Fail fast if any advertised tool name has no implementation."""

        missing = [name.value for name in ToolName if name not in self._tools]
        if missing:
            raise RuntimeError(f"Tools without implementation: {', '.join(missing)}")

    def names(self) -> list[str]:
        return [name.value for name in self._tools]

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": name.value,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for name, tool in self._tools.items()
        ]

    async def dispatch(self, tool_name: str, raw_arguments: Any, context: ToolContext) -> ToolResult:
        tool = self._lookup(tool_name)
        if tool is None:
            LOGGER.warning("Model requested unknown tool %r", tool_name)
            return ToolResult.fail(f"Unknown tool: {tool_name}")

        arguments = safe_json_loads(raw_arguments)
        try:
            validated = _validate_json_schema(tool.parameters_schema, arguments)
        except ValueError as exc:
            result = ToolResult.fail(str(exc))
            self._record(context, tool_name, arguments, result)
            return result

        LOGGER.info("Dispatching tool %s for user %s", tool_name, context.user_id)
        try:
            result = ToolResult.ok(await tool.run(context, **validated))
        except ToolError as exc:
            result = ToolResult.fail(str(exc))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Tool %s failed", tool_name)
            result = ToolResult.fail(str(exc) or "Tool execution failed")
        self._record(context, tool_name, validated, result)
        return result

    def _lookup(self, tool_name: str) -> Tool | None:
        try:
            return self._tools.get(ToolName(tool_name))
        except ValueError:
            return None

    def _record(self, context: ToolContext, tool_name: str, arguments: dict[str, Any], result: ToolResult) -> None:
        try:
            self._db.log_tool_execution(context.user_id, tool_name, arguments, result.to_dict(), result.success)
        except sqlite3.Error:
            LOGGER.exception("Could not record execution of tool %s", tool_name)


def _check_schema(name: ToolName, schema: dict[str, Any]) -> None:
    if schema.get("type") != "object" or not isinstance(schema.get("properties"), dict):
        raise ValueError(f"Tool {name.value} must declare an object parameter schema")
    undeclared = set(schema.get("required", [])) - set(schema["properties"])
    if undeclared:
        raise ValueError(f"Tool {name.value} requires undeclared parameters: {sorted(undeclared)}")


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[Any, Any]] = {}
    for name, config in props.items():
        typ = _python_type(config)
        if name in required:
            fields[name] = (typ, ...)
        else:
            fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(config: dict[str, Any]) -> Any:
    if config.get("enum"):
        return Literal[tuple(config["enum"])]
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(config.get("type", "string"), str)
