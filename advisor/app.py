"""Application factory: wires every layer from settings and injected clients."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from advisor.agent_runtime import AgentRuntime
from advisor.config import Settings
from advisor.db import Database
from advisor.integrations.base import CalendarClient, CrmClient, EmailClient
from advisor.llm.base import LLMProvider
from advisor.llm.openai_compat import OpenAICompatibleProvider
from advisor.poller import EventPoller, EventRouter, EventSource
from advisor.proactive import ProactiveEvaluator
from advisor.rag.embeddings import EmbeddingService
from advisor.rag.pipeline import RagPipeline
from advisor.tasks import TaskEngine
from advisor.tools.calendar_tools import (
    CreateCalendarEventTool,
    FindCalendarAvailabilityTool,
    ListCalendarEventsTool,
)
from advisor.tools.crm_tools import CreateHubspotContactTool, CreateHubspotNoteTool, FindHubspotContactTool
from advisor.tools.email_tools import ReadEmailsTool, SendEmailTool
from advisor.tools.instruction_tools import AddInstructionTool, ListInstructionsTool, RemoveInstructionTool
from advisor.tools.rag_tool import SearchRagTool
from advisor.tools.registry import ToolRegistry
from advisor.tools.task_tools import ScheduleMeetingTool, StoreTaskTool, UpdateTaskTool
from advisor.workflows.meeting_scheduling import MeetingSchedulingWorkflow

LOGGER = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass(slots=True)
class App:
    settings: Settings
    db: Database
    llm: LLMProvider
    tools: ToolRegistry
    runtime: AgentRuntime
    rag: RagPipeline
    tasks: TaskEngine
    proactive: ProactiveEvaluator
    router: EventRouter
    poller: EventPoller | None = None


def build_app(
    settings: Settings,
    email: EmailClient,
    calendar: CalendarClient,
    crm: CrmClient,
    llm: LLMProvider | None = None,
    event_source: EventSource | None = None,
) -> App:
    """Initialize storage and construct all components.

    The tool registry must cover every advertised tool name; a missing
    implementation fails here rather than at the first model call.
    """

    configure_logging(settings.log_level)
    db = Database(settings.database_path)
    db.initialize()

    provider = llm or OpenAICompatibleProvider(settings)
    rag = RagPipeline(
        db,
        EmbeddingService(provider),
        chunk_size=settings.rag_chunk_size,
        chunk_overlap=settings.rag_chunk_overlap,
        min_chunk_size=settings.rag_min_chunk_size,
        min_score=settings.rag_min_score,
    )
    tasks = TaskEngine(
        db,
        workflows=[MeetingSchedulingWorkflow(email, calendar, crm, llm=provider)],
        max_steps_per_advance=settings.task_max_steps_per_advance,
    )

    tools = ToolRegistry(db)
    tools.define(
        [
            SendEmailTool(email),
            ReadEmailsTool(email),
            ListCalendarEventsTool(calendar),
            FindCalendarAvailabilityTool(calendar),
            CreateCalendarEventTool(calendar),
            FindHubspotContactTool(crm),
            CreateHubspotContactTool(crm),
            CreateHubspotNoteTool(crm),
            SearchRagTool(rag),
            StoreTaskTool(tasks),
            UpdateTaskTool(tasks),
            ScheduleMeetingTool(tasks),
            AddInstructionTool(db),
            ListInstructionsTool(db),
            RemoveInstructionTool(db),
        ]
    )
    tools.validate_complete()

    runtime = AgentRuntime(
        llm=provider,
        tool_registry=tools,
        max_iterations=settings.agent_max_iterations,
        temperature=settings.agent_temperature,
        max_tokens=settings.agent_max_tokens,
    )
    proactive = ProactiveEvaluator(
        db,
        provider,
        runtime,
        max_iterations=settings.proactive_max_iterations,
        auto_execute=settings.proactive_auto_execute,
        max_actions_per_hour=settings.proactive_max_actions_per_hour,
    )
    router = EventRouter(rag, tasks, proactive)
    poller = (
        EventPoller(event_source, router, poll_interval_seconds=settings.poll_interval_seconds)
        if event_source is not None
        else None
    )
    LOGGER.info("Advisor app ready with %d tools", len(tools.names()))
    return App(
        settings=settings,
        db=db,
        llm=provider,
        tools=tools,
        runtime=runtime,
        rag=rag,
        tasks=tasks,
        proactive=proactive,
        router=router,
        poller=poller,
    )
