"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskType(str, Enum):
    MEETING_SCHEDULING = "meeting_scheduling"
    EMAIL_FOLLOWUP = "email_followup"
    CRM_UPDATE = "crm_update"
    REMINDER = "reminder"
    OTHER = "other"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING_REPLY = "waiting_reply"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class SourceKind(str, Enum):
    """Kinds of documents indexed by the retrieval pipeline."""

    EMAIL = "email"
    CONTACT = "contact"


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class Usage:
    """Token accounting for one or more model calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: Usage | None) -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    usage: Usage | None = None
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class ToolContext:
    """Caller identity handed to every tool run."""

    user_id: str


@dataclass(slots=True)
class ToolResult:
    """Outcome of a tool dispatch. Failures are values, never exceptions."""

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ToolExecution:
    """One tool call executed during an agent turn."""

    name: str
    args: dict[str, Any]
    result: ToolResult


@dataclass(slots=True)
class AgentResult:
    """Final output of a non-streaming agent turn."""

    response: str
    tool_calls: list[ToolExecution] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    max_iterations_reached: bool = False


@dataclass(slots=True)
class AgentEvent:
    """Event emitted by the streaming agent loop.

    ``type`` is one of ``thinking``, ``tool_call``, ``tool_result``,
    ``content`` or ``done``.
    """

    type: str
    data: Any


@dataclass(slots=True)
class Task:
    """Persistent, resumable unit of work."""

    id: str
    user_id: str
    type: TaskType
    status: TaskStatus
    description: str
    context: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def messages(self) -> list[dict[str, Any]]:
        return list(self.context.get("messages", []))


@dataclass(slots=True)
class Instruction:
    """Standing user instruction evaluated against incoming events."""

    id: str
    user_id: str
    content: str
    active: bool
    created_at: datetime


@dataclass(slots=True)
class NormalizedEmail:
    """Email message as returned by the email collaborator."""

    id: str
    thread_id: str
    sender: str
    subject: str
    body: str
    date: datetime
    sender_name: str | None = None
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    snippet: str = ""
    is_read: bool = False
    labels: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SentEmail:
    id: str
    thread_id: str


@dataclass(slots=True)
class TimeSlot:
    start: datetime
    end: datetime


@dataclass(slots=True)
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    attendees: list[str] = field(default_factory=list)
    description: str | None = None
    location: str | None = None
    html_link: str | None = None


@dataclass(slots=True)
class CrmContact:
    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    phone: str | None = None
    job_title: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


@dataclass(slots=True)
class CrmNote:
    id: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class EmbeddingRecord:
    """One stored chunk of an indexed source document."""

    user_id: str
    source: SourceKind
    source_id: str
    chunk_index: int
    content: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SearchResult:
    source: SourceKind
    source_id: str
    chunk_index: int
    content: str
    metadata: dict[str, Any]
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "source_id": self.source_id,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "metadata": self.metadata,
            "score": round(self.score, 4),
        }
