"""Persistent task engine: create, update and advance resumable workflows."""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Any, Iterable

from advisor.db import Database
from advisor.errors import TaskNotFoundError, WorkflowError
from advisor.models import NormalizedEmail, Task, TaskStatus, TaskType
from advisor.workflows.base import REPLY_FROM_KEY, THREAD_ID_KEY, Workflow, WorkflowResult

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_STEPS_PER_ADVANCE = 20


class TaskEngine:
    """Owns task persistence and drives registered workflows step by step.

    ``advance`` runs step handlers in a loop while the task stays
    ``in_progress``; it returns as soon as a workflow waits for a reply or
    reaches a terminal status. ``resume`` is serialized per task so a reply
    delivered twice advances the task once.
    """

    def __init__(
        self,
        db: Database,
        workflows: Iterable[Workflow] = (),
        max_steps_per_advance: int = DEFAULT_MAX_STEPS_PER_ADVANCE,
    ) -> None:
        self._db = db
        self._workflows: dict[TaskType, Workflow] = {}
        self._max_steps = max_steps_per_advance
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        for workflow in workflows:
            self.register_workflow(workflow)

    def register_workflow(self, workflow: Workflow) -> None:
        if workflow.task_type in self._workflows:
            raise ValueError(f"Workflow already registered for {workflow.task_type.value}")
        self._workflows[workflow.task_type] = workflow

    # -- persistence --------------------------------------------------------

    def create(
        self,
        user_id: str,
        task_type: TaskType,
        description: str,
        initial_context: dict[str, Any] | None = None,
    ) -> Task:
        context = dict(initial_context or {})
        if not context.get("messages"):
            context["messages"] = [_log_entry("system", f"Task created: {description}")]
        task = self._db.create_task(user_id, task_type, description, context)
        LOGGER.info("Created %s task %s for user %s", task_type.value, task.id, user_id)
        return task

    def get(self, task_id: str) -> Task:
        task = self._db.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list(self, user_id: str, statuses: Iterable[TaskStatus] | None = None) -> list[Task]:
        return self._db.list_tasks(user_id, statuses)

    def summary(self, user_id: str) -> dict[str, int]:
        counts = self._db.count_tasks_by_status(user_id)
        return {status.value: counts.get(status.value, 0) for status in TaskStatus}

    def update(
        self,
        task_id: str,
        status: TaskStatus | None = None,
        context: dict[str, Any] | None = None,
        add_message: str | None = None,
        role: str = "system",
    ) -> Task:
        """Shallow-merge ``context`` into the stored context and append to the log.

        A finished task (completed, failed or cancelled) keeps its status;
        asking to change it raises :class:`WorkflowError`.
        """

        task = self.get(task_id)
        if task.is_terminal and status is not None and status is not task.status:
            raise WorkflowError(f"Task {task_id} is already {task.status.value}")
        merged = {**task.context, **(context or {})}
        messages = task.messages
        if add_message:
            messages.append(_log_entry(role, add_message))
        merged["messages"] = messages
        updated = self._db.update_task(task_id, status=status, context=merged)
        if updated is None:
            raise TaskNotFoundError(task_id)
        return updated

    def cancel(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task.is_terminal:
            return task
        LOGGER.info("Cancelling task %s", task_id)
        return self.update(task_id, status=TaskStatus.CANCELLED, add_message="Task cancelled by user")

    def find_waiting(self, user_id: str, sender: str, thread_id: str | None = None) -> Task | None:
        """First task (oldest first) waiting on a reply from ``sender``."""

        sender_key = _address_key(sender)
        if not sender_key:
            return None
        for task in self._db.list_tasks(user_id, [TaskStatus.WAITING_REPLY]):
            awaited = task.context.get(REPLY_FROM_KEY)
            if not awaited or _address_key(str(awaited)) != sender_key:
                continue
            task_thread = task.context.get(THREAD_ID_KEY)
            if thread_id and task_thread and task_thread != thread_id:
                continue
            return task
        return None

    # -- execution ----------------------------------------------------------

    async def start(
        self,
        user_id: str,
        task_type: TaskType,
        description: str,
        initial_context: dict[str, Any] | None = None,
    ) -> WorkflowResult:
        task = self.create(user_id, task_type, description, initial_context)
        return await self.advance(task)

    async def advance(self, task: Task) -> WorkflowResult:
        step = str(task.context.get("step", "unknown"))
        if task.is_terminal:
            return WorkflowResult(
                success=task.status is TaskStatus.COMPLETED,
                task_id=task.id,
                step=step,
                status=task.status,
                message=f"Task is already {task.status.value}",
            )
        workflow = self._workflows.get(task.type)
        if workflow is None:
            return WorkflowResult(
                success=False,
                task_id=task.id,
                step=step,
                status=task.status,
                message=f"No workflow registered for task type {task.type.value}",
            )

        for _ in range(self._max_steps):
            step = str(task.context.get("step", "unknown"))
            try:
                state = workflow.parse_state(task.context)
                outcome = await workflow.run_step(task, state)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Task %s failed at step %s", task.id, step)
                return self._fail(task.id, step, str(exc) or "Workflow failed")

            try:
                task = self.update(
                    task.id,
                    status=outcome.status,
                    context=workflow.dump_state(outcome.state),
                    add_message=outcome.log,
                    role="agent",
                )
            except WorkflowError as exc:
                LOGGER.warning("Task %s was finished elsewhere during step %s", task.id, step)
                return self._finished_elsewhere(task.id, step, str(exc))
            if outcome.status is not TaskStatus.IN_PROGRESS:
                return WorkflowResult(
                    success=outcome.status is not TaskStatus.FAILED,
                    task_id=task.id,
                    step=str(task.context.get("step", step)),
                    status=outcome.status,
                    message=outcome.message or outcome.log or "",
                    waiting_for_reply=outcome.status is TaskStatus.WAITING_REPLY,
                    data=outcome.data,
                )

        return self._fail(task.id, str(task.context.get("step", step)), f"Exceeded {self._max_steps} steps in one advance")

    async def resume(self, task_id: str, reply: NormalizedEmail) -> WorkflowResult:
        """Feed an inbound reply to a waiting task and advance it."""

        lock = self._locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[task_id] = lock

        async with lock:
            task = self._db.get_task(task_id)
            if task is None:
                return WorkflowResult(success=False, task_id=task_id, step="unknown", message="Task not found")
            step = str(task.context.get("step", "unknown"))
            if task.is_terminal:
                return WorkflowResult(
                    success=False,
                    task_id=task_id,
                    step=step,
                    status=task.status,
                    message=f"Task is already {task.status.value}",
                )
            workflow = self._workflows.get(task.type)
            if workflow is None:
                return WorkflowResult(
                    success=False,
                    task_id=task_id,
                    step=step,
                    status=task.status,
                    message=f"No workflow registered for task type {task.type.value}",
                )
            claimed = self._db.transition_task_status(
                task_id, (TaskStatus.WAITING_REPLY, TaskStatus.PENDING), TaskStatus.IN_PROGRESS
            )
            if not claimed:
                LOGGER.info("Task %s is not waiting for a reply; ignoring resume", task_id)
                return WorkflowResult(
                    success=False,
                    task_id=task_id,
                    step=step,
                    status=task.status,
                    message="Task is not waiting for a reply",
                )

            try:
                state = workflow.apply_reply(workflow.parse_state(task.context), reply)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Task %s could not accept reply %s", task_id, reply.id)
                return self._fail(task_id, step, str(exc) or "Could not process reply")

            task = self.update(
                task_id,
                status=TaskStatus.IN_PROGRESS,
                context=workflow.dump_state(state),
                add_message=f'Received reply from {reply.sender}: "{reply.snippet}"',
            )
            return await self.advance(task)

    def _fail(self, task_id: str, step: str, reason: str) -> WorkflowResult:
        try:
            self.update(task_id, status=TaskStatus.FAILED, add_message=f"Error: {reason}")
        except WorkflowError as exc:
            return self._finished_elsewhere(task_id, step, str(exc))
        return WorkflowResult(
            success=False,
            task_id=task_id,
            step=step,
            status=TaskStatus.FAILED,
            message=reason,
        )

    def _finished_elsewhere(self, task_id: str, step: str, reason: str) -> WorkflowResult:
        task = self.get(task_id)
        return WorkflowResult(success=False, task_id=task_id, step=step, status=task.status, message=reason)


def _log_entry(role: str, content: str) -> dict[str, str]:
    return {"role": role, "content": content, "timestamp": datetime.now(timezone.utc).isoformat()}


def _address_key(value: str) -> str:
    _, address = parseaddr(value)
    return (address or value).strip().lower()
