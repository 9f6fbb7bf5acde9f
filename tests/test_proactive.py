import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from advisor.agent_runtime import AgentRuntime
from advisor.events import (
    CalendarEventSoonEvent,
    CrmContactUpdatedEvent,
    CrmNoteAddedEvent,
    NewEmailEvent,
    format_event,
)
from advisor.llm.parsing import extract_json_object
from advisor.models import AgentResult, CalendarEvent, CrmContact, CrmNote, LLMResponse, LLMToolCall
from advisor.proactive import ProactiveEvaluator, format_instructions
from advisor.tools.instruction_tools import RemoveInstructionTool
from advisor.tools.registry import ToolRegistry
from conftest import ScriptedLLM, make_email

RETIREMENT_RULE = "Always flag emails mentioning retirement"


class KeywordJudge(ScriptedLLM):
    """Acts only when an instruction keyword appears in the event text."""

    async def generate(self, messages, tools=None, tool_choice=None, temperature=None, max_tokens=None, response_format=None):  # noqa: ANN001, ANN201, E501
        await super().generate(messages, tools, tool_choice, temperature, max_tokens, response_format)
        prompt = messages[-1]["content"]
        event_text = prompt.split("EVENT THAT JUST OCCURRED:")[1]
        if "retirement" in event_text.lower():
            return LLMResponse(
                content='{"shouldAct": true, "reasoning": "mentions retirement", '
                '"suggestedAction": "Flag the email for the advisor"}'
            )
        return LLMResponse(content='```json\n{"shouldAct": false, "reasoning": "no instruction applies"}\n```')


def _runtime(response: str = "Flagged.") -> MagicMock:
    runtime = MagicMock()
    runtime.run = AsyncMock(return_value=AgentResult(response=response))
    return runtime


def _calendar_event() -> CalendarEventSoonEvent:
    start = datetime(2030, 1, 7, 10, tzinfo=timezone.utc)
    return CalendarEventSoonEvent(CalendarEvent(id="evt", title="Team sync", start=start, end=start))


@pytest.mark.asyncio
async def test_no_active_instructions_skips_the_model(db):
    llm = ScriptedLLM()
    evaluator = ProactiveEvaluator(db, llm, _runtime())

    result = await evaluator.process_event("u1", NewEmailEvent(make_email(body="401k retirement plan")))

    assert result.should_act is False
    assert llm.calls == []


@pytest.mark.asyncio
async def test_retirement_rule_matches_email_but_not_calendar_event(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    llm = KeywordJudge()
    evaluator = ProactiveEvaluator(db, llm, _runtime())

    email_result = await evaluator.evaluate("u1", NewEmailEvent(make_email(body="Questions about my 401k retirement plan")))
    calendar_result = await evaluator.evaluate("u1", _calendar_event())

    assert email_result.should_act is True
    assert email_result.suggested_action == "Flag the email for the advisor"
    assert calendar_result.should_act is False
    assert calendar_result.reasoning == "no instruction applies"

    call = llm.calls[0]
    assert call["temperature"] == 0.3
    assert call["max_tokens"] == 500
    assert call["messages"][0]["role"] == "system"
    assert f"1. {RETIREMENT_RULE}" in call["messages"][1]["content"]


@pytest.mark.asyncio
async def test_unparsable_and_failing_evaluations_do_not_act(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    llm = ScriptedLLM([LLMResponse(content="I think so?"), RuntimeError("rate limited")])
    evaluator = ProactiveEvaluator(db, llm, _runtime())
    event = NewEmailEvent(make_email())

    unparsable = await evaluator.evaluate("u1", event)
    failed = await evaluator.evaluate("u1", event)

    assert unparsable.should_act is False
    assert "could not parse" in unparsable.reasoning
    assert failed.should_act is False
    assert "rate limited" in failed.reasoning


@pytest.mark.asyncio
async def test_process_event_executes_through_the_agent_loop(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    runtime = _runtime("Flagged the email.")
    evaluator = ProactiveEvaluator(db, KeywordJudge(), runtime, max_iterations=5)

    result = await evaluator.process_event("u1", NewEmailEvent(make_email(body="retirement")))

    assert result.executed is True
    assert result.execution_result == "Flagged the email."
    assert result.reasoning == "mentions retirement"
    assert result.tool_failures == 0
    (messages, context), kwargs = runtime.run.call_args
    assert kwargs == {"max_iterations": 5}
    assert context.user_id == "u1"
    assert [m["role"] for m in messages] == ["user"]
    assert "ACTION TO TAKE:\nFlag the email for the advisor" in messages[0]["content"]


@pytest.mark.asyncio
async def test_auto_execute_can_be_disabled(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    runtime = _runtime()
    evaluator = ProactiveEvaluator(db, KeywordJudge(), runtime, auto_execute=False)

    result = await evaluator.process_event("u1", NewEmailEvent(make_email(body="retirement")))

    assert result.should_act is True
    assert result.executed is False
    runtime.run.assert_not_called()

    forced = await evaluator.process_event("u1", NewEmailEvent(make_email(body="retirement")), auto_execute=True)
    assert forced.executed is True


@pytest.mark.asyncio
async def test_execution_failure_is_captured(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    runtime = MagicMock()
    runtime.run = AsyncMock(side_effect=RuntimeError("tool crashed"))
    evaluator = ProactiveEvaluator(db, KeywordJudge(), runtime)

    result = await evaluator.process_event("u1", NewEmailEvent(make_email(body="retirement")))

    assert result.executed is False
    assert result.execution_result == "Failed to execute: tool crashed"


class EndlessToolCaller(ScriptedLLM):
    """Never answers; keeps asking to remove an instruction that does not exist."""

    async def generate(self, messages, tools=None, tool_choice=None, temperature=None, max_tokens=None, response_format=None):  # noqa: ANN001, ANN201, E501
        await super().generate(messages, tools, tool_choice, temperature, max_tokens, response_format)
        return LLMResponse(
            content="",
            tool_calls=[LLMToolCall(name="remove_instruction", arguments={"instruction_id": "missing"})],
        )


@pytest.mark.asyncio
async def test_exhausted_action_budget_is_not_reported_as_executed(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    registry = ToolRegistry(db)
    registry.register(RemoveInstructionTool(db))
    looping = EndlessToolCaller()
    runtime = AgentRuntime(llm=looping, tool_registry=registry, max_iterations=10)
    evaluator = ProactiveEvaluator(db, KeywordJudge(), runtime, max_iterations=3)

    result = await evaluator.process_event("u1", NewEmailEvent(make_email(body="retirement")))

    assert len(looping.calls) == 3
    assert result.should_act is True
    assert result.executed is False
    assert result.execution_result == "Failed to execute: no result after 3 iterations"
    assert result.reasoning == "mentions retirement"
    assert result.suggested_action == "Flag the email for the advisor"
    assert result.tool_failures == 3
    assert result.to_dict()["executed"] is False


@pytest.mark.asyncio
async def test_hourly_action_limit_per_user(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    db.add_instruction("u2", RETIREMENT_RULE)
    now = [1000.0]
    runtime = _runtime()
    evaluator = ProactiveEvaluator(db, KeywordJudge(), runtime, max_actions_per_hour=2, clock=lambda: now[0])
    event = NewEmailEvent(make_email(body="retirement"))

    results = [await evaluator.process_event("u1", event) for _ in range(3)]
    other_user = await evaluator.process_event("u2", event)

    assert [r.executed for r in results] == [True, True, False]
    assert "limit of 2" in results[2].reasoning
    assert other_user.executed is True

    now[0] += 3600
    assert (await evaluator.process_event("u1", event)).executed is True


@pytest.mark.asyncio
async def test_process_events_runs_users_concurrently(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    db.add_instruction("u2", RETIREMENT_RULE)
    evaluator = ProactiveEvaluator(db, KeywordJudge(), _runtime())

    results = await evaluator.process_events(
        [("u1", NewEmailEvent(make_email(body="retirement"))), ("u2", _calendar_event()), ("u3", _calendar_event())]
    )

    assert [r.should_act for r in results] == [True, False, False]
    assert results[2].reasoning == "No active instructions to evaluate against."


@pytest.mark.asyncio
async def test_execution_survives_caller_cancellation(db):
    db.add_instruction("u1", RETIREMENT_RULE)
    finished = asyncio.Event()

    async def slow_run(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        await asyncio.sleep(0.05)
        finished.set()
        return AgentResult(response="done")

    runtime = MagicMock()
    runtime.run = slow_run
    evaluator = ProactiveEvaluator(db, KeywordJudge(), runtime)

    task = asyncio.create_task(evaluator.process_event("u1", NewEmailEvent(make_email(body="retirement"))))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.wait_for(finished.wait(), timeout=1)


def test_format_event_variants():
    email_text = format_event(NewEmailEvent(make_email(body="x" * 1200)))
    assert email_text.startswith("NEW EMAIL RECEIVED:\nFrom: Client <client@example.com>")
    assert email_text.endswith("x" * 1000 + "...")

    calendar_text = format_event(_calendar_event())
    assert "Attendees: None" in calendar_text
    assert "Location: Not specified" in calendar_text

    contact = CrmContact(id="c1", email="pat@example.com", first_name="Pat", last_name="Lee")
    assert "Company: Not specified" in format_event(CrmContactUpdatedEvent(contact))

    note = CrmNote(id="n1", content="n" * 600, created_at=datetime.now(timezone.utc))
    note_text = format_event(CrmNoteAddedEvent(contact, note))
    assert note_text.startswith("CRM NOTE ADDED:\nContact: Pat Lee <pat@example.com>")
    assert note_text.endswith("n" * 500 + "...")


def test_format_instructions(db):
    assert format_instructions([]) == "No active instructions."
    db.add_instruction("u1", "one")
    db.add_instruction("u1", "two")
    assert format_instructions(db.list_instructions("u1")) == "1. one\n2. two"


def test_extract_json_object_takes_first_well_formed_object():
    assert extract_json_object('noise {bad} then {"shouldAct": false} and {"x": 1}') == {"shouldAct": False}
    assert extract_json_object("no json here") is None
    assert extract_json_object('[{"a": 1}]') == {"a": 1}
