"""Workflow contracts used by the task engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from advisor.models import NormalizedEmail, Task, TaskStatus, TaskType

# Context keys the engine reads when matching an inbound reply to a waiting task.
REPLY_FROM_KEY = "waiting_for_reply_from"
THREAD_ID_KEY = "email_thread_id"


@dataclass(slots=True)
class StepOutcome:
    """What a step handler produced: the next state and the task status to record."""

    state: BaseModel
    status: TaskStatus
    log: str | None = None
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkflowResult:
    """Structured report of an ``advance``/``resume`` call."""

    success: bool
    task_id: str
    step: str
    message: str
    status: TaskStatus | None = None
    waiting_for_reply: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "step": self.step,
            "status": self.status.value if self.status else None,
            "message": self.message,
            "waiting_for_reply": self.waiting_for_reply,
            "data": self.data,
        }


class Workflow(ABC):
    """One resumable workflow definition for a task type.

    State is a pydantic model tagged by ``step``; the engine stores it as the
    task context (alongside the message log) and parses it back before each
    step.
    """

    task_type: TaskType

    @abstractmethod
    def parse_state(self, context: dict[str, Any]) -> BaseModel:
        """Deserialize the stored task context into the workflow's step state."""

    def dump_state(self, state: BaseModel) -> dict[str, Any]:
        return state.model_dump(mode="json")

    @abstractmethod
    async def run_step(self, task: Task, state: Any) -> StepOutcome:
        """Run the handler for ``state.step``."""

    @abstractmethod
    def apply_reply(self, state: Any, email: NormalizedEmail) -> BaseModel:
        """Fold an awaited email reply into the state before resuming."""
