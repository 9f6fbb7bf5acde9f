"""Inbound event routing and the background polling loop."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from advisor.events import CrmContactUpdatedEvent, Event, NewEmailEvent
from advisor.proactive import ProactiveEvaluator, ProactiveResult
from advisor.rag.pipeline import RagPipeline
from advisor.tasks import TaskEngine
from advisor.workflows.base import WorkflowResult

LOGGER = logging.getLogger(__name__)


class EventSource(ABC):
    """Produces new events per user, e.g. from a mailbox history cursor."""

    @abstractmethod
    async def list_users(self) -> list[str]:
        """Users with a connected account to poll."""

    @abstractmethod
    async def poll(self, user_id: str) -> list[Event]:
        """Events that arrived since the previous poll for ``user_id``."""


@dataclass(slots=True)
class RouteOutcome:
    indexed_chunks: int | None = None
    resumed: WorkflowResult | None = None
    proactive: ProactiveResult | None = None


class EventRouter:
    """Fan an event out to indexing, task resumption and proactive evaluation.

    Each branch runs independently; a failure in one is logged and the
    others still run.
    """

    def __init__(
        self,
        rag: RagPipeline,
        engine: TaskEngine,
        proactive: ProactiveEvaluator | None = None,
    ) -> None:
        self._rag = rag
        self._engine = engine
        self._proactive = proactive

    async def handle(self, user_id: str, event: Event) -> RouteOutcome:
        outcome = RouteOutcome()

        try:
            if isinstance(event, NewEmailEvent):
                outcome.indexed_chunks = await self._rag.ingest_email(user_id, event.email)
            elif isinstance(event, CrmContactUpdatedEvent):
                outcome.indexed_chunks = await self._rag.ingest_contact(user_id, event.contact)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to index %s event for user %s", event.type, user_id)

        if isinstance(event, NewEmailEvent):
            try:
                outcome.resumed = await self._resume_waiting(user_id, event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to resume task for email %s", event.email.id)

        if self._proactive is not None:
            try:
                outcome.proactive = await self._proactive.process_event(user_id, event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Proactive processing failed for user %s", user_id)

        return outcome

    async def _resume_waiting(self, user_id: str, event: NewEmailEvent) -> WorkflowResult | None:
        email = event.email
        task = self._engine.find_waiting(user_id, email.sender, email.thread_id)
        if task is None:
            return None
        LOGGER.info("Email %s from %s resumes task %s", email.id, email.sender, task.id)
        result = await self._engine.resume(task.id, email)
        LOGGER.info("Task %s resumed: %s", task.id, result.message)
        return result


class EventPoller:
    """Polls an event source for every user and routes what it finds."""

    def __init__(
        self,
        source: EventSource,
        router: EventRouter,
        poll_interval_seconds: float = 90.0,
    ) -> None:
        self._source = source
        self._router = router
        self._poll_interval_seconds = poll_interval_seconds
        self._stop_event = asyncio.Event()

    async def poll_user(self, user_id: str) -> int:
        """Route all new events for one user; returns how many were handled."""

        try:
            events = await self._source.poll(user_id)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Polling failed for user %s", user_id)
            return 0
        for event in events:
            await self._router.handle(user_id, event)
        if events:
            LOGGER.info("User %s: %d new event(s)", user_id, len(events))
        return len(events)

    async def run_once(self) -> int:
        try:
            users = await self._source.list_users()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not list users to poll")
            return 0
        total = 0
        for user_id in users:
            total += await self.poll_user(user_id)
        return total

    async def run_forever(self) -> None:
        """Run the poll loop until stop() is called."""

        LOGGER.info("Event poller started (interval: %ss)", self._poll_interval_seconds)
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        LOGGER.info("Event poller stopped")

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()
