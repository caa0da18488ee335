import asyncio
import json

import pytest
from pydantic import BaseModel

from conftest import ScriptedBackend, call, text_reply, tool_reply, usage
from fixloop.errors import (
    AgentCancelledError,
    BackendError,
    ContractViolation,
    IterationLimitError,
    NoResultError,
)
from fixloop.models import FixResult, ValidationOutcome
from fixloop.runner import RETRY_PROMPT, START_PROMPT, AgentDefinition, AgentRunner, ResultCell
from fixloop.tools import AgentTool
from fixloop.usage import UsageTracker


class EchoInput(BaseModel):
    text: str


class EchoOutput(BaseModel):
    echoed: str


class EchoTool(AgentTool):
    name = "Echo"
    description = "Echo text back"
    input_model = EchoInput

    def __init__(self):
        self.calls = []

    def run(self, args):
        self.calls.append(args.text)
        return EchoOutput(echoed=args.text)


class SlowTool(AgentTool):
    name = "Slow"
    description = "Never finishes in time"

    async def handle(self, args):
        await asyncio.sleep(5)
        return EchoOutput(echoed="late")


class ExitImpostor(AgentTool):
    name = "Exit"
    description = "Clashes with the built-in Exit tool"


def exit_call(result, call_id="call_exit"):
    return call("Exit", json.dumps({"result": result}), call_id)


def user_prompts(messages):
    return [m["content"] for m in messages if m["role"] == "user"]


def tool_messages(messages):
    return [m for m in messages if m["role"] == "tool"]


# ---------------------------------------------------------------------------
# Iteration bound and validation retry
# ---------------------------------------------------------------------------

def test_always_failing_validator_runs_exactly_max_iterations():
    backend = ScriptedBackend([tool_reply(exit_call("x")) for _ in range(3)])
    agent = AgentDefinition(
        instructions="do it",
        max_iterations=3,
        validator=lambda result: ValidationOutcome.fail("never good enough"),
    )

    with pytest.raises(IterationLimitError, match="within 3 iterations") as excinfo:
        asyncio.run(AgentRunner(backend).run(agent))

    assert len(backend.requests) == 3
    assert excinfo.value.last_reason == "never good enough"
    assert len(user_prompts(backend.requests[-1]["messages"])) == 3


def test_fail_once_sends_one_corrective_prompt_with_the_diagnostic():
    verdicts = [ValidationOutcome.fail("missing tests"), ValidationOutcome.ok()]
    backend = ScriptedBackend([tool_reply(exit_call("first")), tool_reply(exit_call("second"))])
    agent = AgentDefinition(instructions="do it", max_iterations=5, validator=lambda result: verdicts.pop(0))

    result = asyncio.run(AgentRunner(backend).run(agent))

    assert result == "second"
    assert len(backend.requests) == 2
    prompts = user_prompts(backend.requests[1]["messages"])
    assert prompts == [START_PROMPT, RETRY_PROMPT.format(reason="missing tests")]


def test_structured_validation_reason_is_serialized_into_the_prompt():
    verdicts = [ValidationOutcome.fail({"error": "check failed", "check_output": "E1"}), ValidationOutcome.ok()]
    backend = ScriptedBackend([tool_reply(exit_call("a")), tool_reply(exit_call("b"))])
    agent = AgentDefinition(instructions="do it", validator=lambda result: verdicts.pop(0))

    asyncio.run(AgentRunner(backend).run(agent))

    retry = user_prompts(backend.requests[1]["messages"])[-1]
    assert '"check_output": "E1"' in retry


def test_async_validator_is_awaited():
    async def validate(result):
        await asyncio.sleep(0)
        return ValidationOutcome.ok()

    backend = ScriptedBackend([tool_reply(exit_call("value"))])
    agent = AgentDefinition(instructions="do it", validator=validate)

    assert asyncio.run(AgentRunner(backend).run(agent)) == "value"


def test_validator_receives_the_exact_exit_value():
    seen = []

    def validate(result):
        seen.append(result)
        return ValidationOutcome.ok()

    payload = {"success": True, "changes_summary": "Renamed get to fetch"}
    backend = ScriptedBackend([tool_reply(exit_call(payload))])
    agent = AgentDefinition(instructions="do it", result_type=FixResult, validator=validate)

    result = asyncio.run(AgentRunner(backend).run(agent))

    assert seen == [FixResult(**payload)]
    assert result is seen[0]


def test_zero_iterations_is_rejected_before_calling_the_model():
    backend = ScriptedBackend([])
    with pytest.raises(ContractViolation):
        asyncio.run(AgentRunner(backend).run(AgentDefinition(instructions="x", max_iterations=0)))
    assert backend.requests == []


# ---------------------------------------------------------------------------
# Turn semantics
# ---------------------------------------------------------------------------

def test_turn_without_exit_is_not_retried():
    backend = ScriptedBackend([text_reply("I am done"), tool_reply(exit_call("unused"))])
    agent = AgentDefinition(instructions="do it", max_iterations=5)

    with pytest.raises(NoResultError, match="without calling Exit"):
        asyncio.run(AgentRunner(backend).run(agent))

    assert len(backend.requests) == 1


def test_all_calls_in_a_round_are_resolved_alongside_exit():
    echo = EchoTool()
    verdicts = [ValidationOutcome.fail("again"), ValidationOutcome.ok()]
    backend = ScriptedBackend(
        [
            tool_reply(
                call("Echo", '{"text": "a"}', "c1"),
                exit_call("done", "c2"),
                call("Echo", '{"text": "b"}', "c3"),
            ),
            tool_reply(exit_call("final")),
        ]
    )
    agent = AgentDefinition(instructions="do it", tools=[echo], validator=lambda result: verdicts.pop(0))

    asyncio.run(AgentRunner(backend).run(agent))

    assert sorted(echo.calls) == ["a", "b"]
    results = tool_messages(backend.requests[1]["messages"])
    assert [m["tool_call_id"] for m in results] == ["c1", "c2", "c3"]
    assert json.loads(results[0]["content"]) == {"echoed": "a"}
    assert json.loads(results[2]["content"]) == {"echoed": "b"}


def test_tool_results_are_fed_back_before_the_next_model_call():
    backend = ScriptedBackend([tool_reply(call("Echo", '{"text": "hi"}')), tool_reply(exit_call("ok"))])
    agent = AgentDefinition(instructions="do it", tools=[EchoTool()])

    assert asyncio.run(AgentRunner(backend).run(agent)) == "ok"

    second = backend.requests[1]["messages"]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["function"]["name"] == "Echo"
    assert second[-1] == {"role": "tool", "tool_call_id": "call_Echo", "content": '{"echoed":"hi"}'}


def test_second_exit_in_the_same_round_keeps_the_first_result():
    seen = []
    backend = ScriptedBackend([tool_reply(exit_call("first", "e1"), exit_call("second", "e2"))])

    def validate(result):
        seen.append(result)
        return ValidationOutcome.ok()

    agent = AgentDefinition(instructions="do it", validator=validate)

    assert asyncio.run(AgentRunner(backend).run(agent)) == "first"
    assert seen == ["first"]


def test_turn_that_never_settles_is_bounded():
    backend = ScriptedBackend([tool_reply(call("Echo", '{"text": "x"}')) for _ in range(3)])
    agent = AgentDefinition(instructions="do it", tools=[EchoTool()], max_turn_steps=3)

    with pytest.raises(Exception, match="did not settle within 3"):
        asyncio.run(AgentRunner(backend).run(agent))


# ---------------------------------------------------------------------------
# Tool failures are reported, not fatal
# ---------------------------------------------------------------------------

def test_unknown_tool_is_reported_back_to_the_model():
    backend = ScriptedBackend([tool_reply(call("Nope")), tool_reply(exit_call("ok"))])

    assert asyncio.run(AgentRunner(backend).run(AgentDefinition(instructions="x"))) == "ok"

    last = backend.requests[1]["messages"][-1]
    assert json.loads(last["content"]) == {"error": "Tool 'Nope' is not available"}


def test_invalid_tool_input_is_reported_back_to_the_model():
    echo = EchoTool()
    backend = ScriptedBackend([tool_reply(call("Echo", '{"wrong": 1}')), tool_reply(exit_call("ok"))])

    asyncio.run(AgentRunner(backend).run(AgentDefinition(instructions="x", tools=[echo])))

    error = json.loads(backend.requests[1]["messages"][-1]["content"])["error"]
    assert error.startswith("Invalid input for Echo")
    assert echo.calls == []


def test_slow_tool_times_out_as_a_tool_failure():
    backend = ScriptedBackend([tool_reply(call("Slow")), tool_reply(exit_call("ok"))])
    agent = AgentDefinition(instructions="x", tools=[SlowTool()], tool_timeout=0.05)

    assert asyncio.run(AgentRunner(backend).run(agent)) == "ok"

    error = json.loads(backend.requests[1]["messages"][-1]["content"])["error"]
    assert error == "Slow timed out after 0.05 seconds"


def test_duplicate_tool_names_are_a_contract_violation():
    backend = ScriptedBackend([])
    agent = AgentDefinition(instructions="x", tools=[ExitImpostor()])

    with pytest.raises(ContractViolation, match="Duplicate tool name 'Exit'"):
        asyncio.run(AgentRunner(backend).run(agent))


def test_exit_tool_is_declared_to_the_model():
    backend = ScriptedBackend([tool_reply(exit_call("ok"))])
    asyncio.run(AgentRunner(backend).run(AgentDefinition(instructions="x", tools=[EchoTool()])))

    names = [tool["function"]["name"] for tool in backend.requests[0]["tools"]]
    assert names == ["Echo", "Exit"]
    exit_schema = backend.requests[0]["tools"][1]["function"]["parameters"]
    assert exit_schema["required"] == ["result"]


# ---------------------------------------------------------------------------
# Fatal conditions
# ---------------------------------------------------------------------------

def test_backend_error_propagates_without_retry():
    backend = ScriptedBackend([BackendError("upstream down"), tool_reply(exit_call("unused"))])
    agent = AgentDefinition(instructions="x", max_iterations=5, validator=lambda r: ValidationOutcome.ok())

    with pytest.raises(BackendError, match="upstream down"):
        asyncio.run(AgentRunner(backend).run(agent))

    assert len(backend.requests) == 1


def test_cancel_before_start_never_calls_the_model():
    backend = ScriptedBackend([])

    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        await AgentRunner(backend).run(AgentDefinition(instructions="x"), cancel)

    with pytest.raises(AgentCancelledError):
        asyncio.run(scenario())
    assert backend.requests == []


def test_cancel_interrupts_a_pending_model_call():
    class HangingBackend:
        async def complete(self, model, messages, tools):
            await asyncio.Event().wait()

    async def scenario():
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)
        await AgentRunner(HangingBackend()).run(AgentDefinition(instructions="x"), cancel)

    with pytest.raises(AgentCancelledError):
        asyncio.run(scenario())


def test_cancel_interrupts_a_hanging_tool_call():
    class HangingTool(AgentTool):
        name = "Hang"
        description = "Never returns"

        def __init__(self):
            self.cancelled = False

        async def handle(self, args):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise

    tool = HangingTool()
    backend = ScriptedBackend([tool_reply(call("Hang"))])
    agent = AgentDefinition(instructions="x", tools=[tool], tool_timeout=None)

    async def scenario():
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)
        await AgentRunner(backend).run(agent, cancel)

    with pytest.raises(AgentCancelledError):
        asyncio.run(scenario())
    assert tool.cancelled is True
    assert len(backend.requests) == 1


# ---------------------------------------------------------------------------
# Usage and result cell
# ---------------------------------------------------------------------------

def test_usage_is_forwarded_to_the_sink():
    tracker = UsageTracker()
    backend = ScriptedBackend(
        [
            tool_reply(call("Echo", '{"text": "x"}'), usage=usage(model="", input_tokens=100, output_tokens=20)),
            tool_reply(exit_call("ok"), usage=usage(model="", input_tokens=150, output_tokens=10)),
        ]
    )
    agent = AgentDefinition(instructions="x", tools=[EchoTool()], model="test/model")

    asyncio.run(AgentRunner(backend, usage_sink=tracker).run(agent))

    [totals] = tracker.totals()
    assert totals.model == "test/model"
    assert totals.calls == 2
    assert totals.input_tokens == 250
    assert totals.total_tokens == 280


def test_result_cell_refuses_a_second_value():
    cell = ResultCell()
    cell.set("a")
    with pytest.raises(Exception, match="already called"):
        cell.set("b")
    assert cell.value == "a"
    cell.clear()
    assert not cell.is_set
