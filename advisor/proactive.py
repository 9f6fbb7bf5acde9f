"""Proactive evaluation of incoming events against standing instructions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from advisor.agent_runtime import AgentRuntime
from advisor.db import Database
from advisor.events import Event, format_event
from advisor.llm.base import LLMProvider
from advisor.llm.parsing import extract_json_object
from advisor.models import Instruction, ToolContext

LOGGER = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 3600.0

EVALUATOR_SYSTEM_PROMPT = (
    "You evaluate events against user instructions and decide whether to act. Respond only with valid JSON."
)

EVALUATION_PROMPT = """You are an AI assistant for a financial advisor. You have been given ongoing instructions to follow.

ACTIVE INSTRUCTIONS:
{instructions}

EVENT THAT JUST OCCURRED:
{event}

Based on the instructions above, should you take any action in response to this event?

Respond in this exact JSON format:
{{
  "shouldAct": true/false,
  "reasoning": "Brief explanation of your decision",
  "suggestedAction": "If shouldAct is true, describe the specific action to take"
}}

IMPORTANT:
- Only act if the event clearly matches one of the instructions
- Don't act on every email - only if an instruction specifically applies
- Be conservative - when in doubt, don't act
- The suggestedAction should be specific and actionable"""

ACTION_PROMPT = """An event occurred and based on my instructions, I need to take action.

MY INSTRUCTIONS:
{instructions}

EVENT THAT OCCURRED:
{event}

ACTION TO TAKE:
{action}

Please execute this action now. Use the appropriate tools to complete it."""


@dataclass(slots=True)
class ProactiveResult:
    should_act: bool
    reasoning: str
    suggested_action: str | None = None
    executed: bool = False
    execution_result: str | None = None
    tool_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_act": self.should_act,
            "reasoning": self.reasoning,
            "suggested_action": self.suggested_action,
            "executed": self.executed,
            "execution_result": self.execution_result,
            "tool_failures": self.tool_failures,
        }


def format_instructions(instructions: list[Instruction]) -> str:
    if not instructions:
        return "No active instructions."
    return "\n".join(f"{i}. {instruction.content}" for i, instruction in enumerate(instructions, start=1))


class ProactiveEvaluator:
    """Ask the model whether an event matches an instruction, and act on it if so.

    Evaluation never raises: provider and parse failures become a
    ``should_act=False`` decision. Auto-executed actions are limited per user
    to ``max_actions_per_hour`` (0 disables the limit).
    """

    def __init__(
        self,
        db: Database,
        llm: LLMProvider,
        runtime: AgentRuntime,
        max_iterations: int = 5,
        auto_execute: bool = True,
        max_actions_per_hour: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._llm = llm
        self._runtime = runtime
        self._max_iterations = max_iterations
        self._auto_execute = auto_execute
        self._max_actions_per_hour = max_actions_per_hour
        self._clock = clock
        self._recent_actions: dict[str, deque[float]] = defaultdict(deque)

    async def evaluate(self, user_id: str, event: Event) -> ProactiveResult:
        instructions = self._db.list_instructions(user_id, active_only=True)
        if not instructions:
            return ProactiveResult(should_act=False, reasoning="No active instructions to evaluate against.")

        prompt = EVALUATION_PROMPT.format(instructions=format_instructions(instructions), event=format_event(event))
        try:
            response = await self._llm.generate(
                [
                    {"role": "system", "content": EVALUATOR_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.3,
                max_tokens=500,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Proactive evaluation failed for user %s", user_id)
            return ProactiveResult(should_act=False, reasoning=f"Evaluation failed: {exc}")

        decision = extract_json_object(response.content or "")
        if decision is None:
            LOGGER.error("Could not parse proactive evaluation: %r", response.content)
            return ProactiveResult(should_act=False, reasoning="Failed to evaluate - could not parse response")

        should_act = decision.get("shouldAct") is True
        suggested = decision.get("suggestedAction")
        result = ProactiveResult(
            should_act=should_act,
            reasoning=str(decision.get("reasoning") or ""),
            suggested_action=(suggested.strip() or None) if isinstance(suggested, str) else None,
        )
        LOGGER.info("Proactive evaluation for %s on %s: should_act=%s", user_id, event.type, result.should_act)
        return result

    async def execute_action(
        self,
        user_id: str,
        event: Event,
        suggested_action: str,
        reasoning: str | None = None,
    ) -> ProactiveResult:
        """Run the suggested action through the agent loop.

        ``executed`` is true only when the turn finished within its iteration
        budget; the decision's ``reasoning`` is carried through unchanged.
        """

        reasoning = reasoning or suggested_action
        instructions = self._db.list_instructions(user_id, active_only=True)
        prompt = ACTION_PROMPT.format(
            instructions=format_instructions(instructions),
            event=format_event(event),
            action=suggested_action,
        )
        try:
            outcome = await self._runtime.run(
                [{"role": "user", "content": prompt}],
                ToolContext(user_id=user_id),
                max_iterations=self._max_iterations,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Proactive action failed for user %s", user_id)
            return ProactiveResult(
                should_act=True,
                reasoning=reasoning,
                suggested_action=suggested_action,
                executed=False,
                execution_result=f"Failed to execute: {exc}",
            )

        tool_failures = sum(1 for call in outcome.tool_calls if not call.result.success)
        if outcome.max_iterations_reached:
            LOGGER.warning(
                "Proactive action for %s did not finish within %d iterations", user_id, self._max_iterations
            )
            return ProactiveResult(
                should_act=True,
                reasoning=reasoning,
                suggested_action=suggested_action,
                executed=False,
                execution_result=f"Failed to execute: no result after {self._max_iterations} iterations",
                tool_failures=tool_failures,
            )
        LOGGER.info(
            "Proactive action for %s executed with %d tool call(s), %d failed",
            user_id,
            len(outcome.tool_calls),
            tool_failures,
        )
        return ProactiveResult(
            should_act=True,
            reasoning=reasoning,
            suggested_action=suggested_action,
            executed=True,
            execution_result=outcome.response,
            tool_failures=tool_failures,
        )

    async def process_event(self, user_id: str, event: Event, auto_execute: bool | None = None) -> ProactiveResult:
        evaluation = await self.evaluate(user_id, event)
        if not evaluation.should_act or not evaluation.suggested_action:
            return evaluation
        if not (self._auto_execute if auto_execute is None else auto_execute):
            return evaluation
        if not self._reserve_action(user_id):
            LOGGER.warning("Proactive action limit reached for user %s", user_id)
            evaluation.reasoning = (
                f"{evaluation.reasoning} (not executed: limit of {self._max_actions_per_hour} "
                "proactive actions per hour reached)"
            ).strip()
            return evaluation
        # Side effects must not be abandoned half way if the caller is cancelled.
        return await asyncio.shield(
            self.execute_action(user_id, event, evaluation.suggested_action, evaluation.reasoning)
        )

    async def process_events(self, items: Iterable[tuple[str, Event]]) -> list[ProactiveResult]:
        """Process events for many users concurrently, preserving input order."""

        return list(await asyncio.gather(*(self.process_event(user_id, event) for user_id, event in items)))

    def _reserve_action(self, user_id: str) -> bool:
        if self._max_actions_per_hour <= 0:
            return True
        now = self._clock()
        recent = self._recent_actions[user_id]
        while recent and now - recent[0] >= RATE_WINDOW_SECONDS:
            recent.popleft()
        if len(recent) >= self._max_actions_per_hour:
            return False
        recent.append(now)
        return True
