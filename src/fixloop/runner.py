# runner.py
# Agent runner: the bounded model <-> tool loop for one task.
#
# The runner owns all control flow. The model only answers; every tool call
# it requests is executed here, and the run ends when the model hands its
# structured result to the implicit Exit tool and the result is accepted.
#
# Control flow per iteration:
#   prompt → turn (model ⇄ tools until settled) → Exit captured?
#   → validator → return | corrective prompt → next iteration

import asyncio
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from pydantic import BaseModel, Field, create_model

from fixloop.backends import ConversationBackend
from fixloop.errors import (
    AgentCancelledError,
    AgentError,
    ContractViolation,
    InvocationError,
    IterationLimitError,
    NoResultError,
)
from fixloop.models import BackendReply, ToolCallRequest, UsageEvent, ValidationOutcome
from fixloop.tools import AgentTool

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXIT_TOOL_NAME = "Exit"

START_PROMPT = "Begin the task. Call tools as needed, then call Exit with the result."

RETRY_PROMPT = "The result you provided did not pass validation: {reason}. Please try again."

EXIT_RESULT_DESCRIPTION = (
    "The result of the agent run. Output the result requested exactly, "
    "without additional padding, explanation, or code fences unless requested."
)

Validator = Callable[[Any], "ValidationOutcome | Awaitable[ValidationOutcome]"]
UsageSink = Callable[[UsageEvent], None]


# ---------------------------------------------------------------------------
# Agent definition
# ---------------------------------------------------------------------------


@dataclass
class AgentDefinition:
    """What to run: instructions, tools, model and acceptance policy."""

    instructions: str
    tools: Sequence[AgentTool] = ()
    model: str = "anthropic/claude-3.5-haiku"
    max_iterations: int = 100
    result_type: Any = str
    validator: Validator | None = None
    max_turn_steps: int = 50
    tool_timeout: float | None = 60.0
    name: str = "agent"


# ---------------------------------------------------------------------------
# Exit tool and its result cell
# ---------------------------------------------------------------------------


class ResultCell:
    """Single slot written by the Exit handler, read and cleared by the runner."""

    def __init__(self) -> None:
        self._value: Any = None
        self._is_set = False

    @property
    def is_set(self) -> bool:
        return self._is_set

    @property
    def value(self) -> Any:
        if not self._is_set:
            raise AgentError("No result has been captured")
        return self._value

    def set(self, value: Any) -> None:
        if self._is_set:
            raise InvocationError("Exit was already called in this iteration; the first result is kept.")
        self._value = value
        self._is_set = True

    def clear(self) -> None:
        self._value = None
        self._is_set = False


class ExitOutput(BaseModel):
    message: str = "Exiting with result"


@lru_cache(maxsize=None)
def _exit_input_model(result_type: Any) -> type[BaseModel]:
    return create_model(
        "ExitInput",
        result=(result_type, Field(..., description=EXIT_RESULT_DESCRIPTION)),
    )


class ExitTool(AgentTool):
    name = EXIT_TOOL_NAME
    description = "Call this tool when you are finished with the work or are otherwise unable to continue."

    def __init__(self, result_type: Any, cell: ResultCell) -> None:
        self.input_model = _exit_input_model(result_type)
        self.cell = cell

    async def handle(self, args: BaseModel) -> ExitOutput:
        self.cell.set(args.result)
        return ExitOutput()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_toolset(tools: Sequence[AgentTool], exit_tool: ExitTool) -> dict[str, AgentTool]:
    toolset: dict[str, AgentTool] = {}
    for tool in [*tools, exit_tool]:
        if tool.name in toolset:
            raise ContractViolation(f"Duplicate tool name '{tool.name}' in agent definition")
        toolset[tool.name] = tool
    return toolset


def _format_reason(reason: Any) -> str:
    if isinstance(reason, str):
        return reason
    if isinstance(reason, BaseModel):
        return reason.model_dump_json()
    return json.dumps(reason, default=str)


async def _until_cancelled(awaitable: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """Await ``awaitable`` but abort it as soon as ``cancel`` is set."""
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        raise AgentCancelledError("Run was cancelled")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()

    work.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await work
    raise AgentCancelledError("Run was cancelled")


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class AgentRunner:
    """
    Drives an AgentDefinition to an accepted result.

    Example:
        runner = AgentRunner(OpenAIBackend(api_key=...), usage_sink=tracker)
        result = await runner.run(AgentDefinition(instructions="...", tools=tools))

    Only validation failures are retried. Backend errors, a turn without
    Exit, and cancellation end the run immediately.
    """

    def __init__(self, backend: ConversationBackend, usage_sink: UsageSink | None = None) -> None:
        self._backend = backend
        self._usage_sink = usage_sink

    async def run(self, agent: AgentDefinition, cancel: asyncio.Event | None = None) -> Any:
        if agent.max_iterations < 1:
            raise ContractViolation("max_iterations must be at least 1")

        cell = ResultCell()
        toolset = _build_toolset(agent.tools, ExitTool(agent.result_type, cell))
        declarations = [tool.as_openai_tool() for tool in toolset.values()]

        messages: list[dict[str, Any]] = [{"role": "system", "content": agent.instructions}]
        prompt = START_PROMPT
        last_reason: str | None = None

        for iteration in range(1, agent.max_iterations + 1):
            if cancel is not None and cancel.is_set():
                raise AgentCancelledError("Run was cancelled")

            cell.clear()
            messages.append({"role": "user", "content": prompt})
            logger.debug("%s: iteration %d of %d", agent.name, iteration, agent.max_iterations)

            await self._run_turn(agent, toolset, declarations, messages, cell, cancel)

            if not cell.is_set:
                raise NoResultError("Agent completed without calling Exit")

            result = cell.value
            if agent.validator is None:
                return result

            outcome = agent.validator(result)
            if inspect.isawaitable(outcome):
                outcome = await _until_cancelled(outcome, cancel)

            if outcome.success:
                logger.debug("%s: result accepted on iteration %d", agent.name, iteration)
                return result

            last_reason = _format_reason(outcome.reason)
            logger.warning("%s: result failed validation: %s. Retrying.", agent.name, last_reason)
            prompt = RETRY_PROMPT.format(reason=last_reason)
            cell.clear()

        raise IterationLimitError(agent.max_iterations, last_reason)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        agent: AgentDefinition,
        toolset: dict[str, AgentTool],
        declarations: list[dict[str, Any]],
        messages: list[dict[str, Any]],
        cell: ResultCell,
        cancel: asyncio.Event | None,
    ) -> None:
        """
        One turn: call the model, execute every tool it asks for, report the
        results, and repeat until the model stops calling tools or Exit has
        fired. All calls requested together are resolved before Exit is
        looked at.
        """
        for _ in range(agent.max_turn_steps):
            reply: BackendReply = await _until_cancelled(
                self._backend.complete(agent.model, messages, declarations), cancel
            )
            self._record_usage(agent.model, reply)
            messages.append(reply.as_message())

            if not reply.tool_calls:
                return

            contents = await self._invoke_all(agent, toolset, reply.tool_calls, cancel)
            for call, content in zip(reply.tool_calls, contents):
                messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

            if cell.is_set:
                return

        raise AgentError(
            f"{agent.name}: turn did not settle within {agent.max_turn_steps} model round trips"
        )

    async def _invoke_all(
        self,
        agent: AgentDefinition,
        toolset: dict[str, AgentTool],
        calls: list[ToolCallRequest],
        cancel: asyncio.Event | None,
    ) -> list[str]:
        tasks = [
            asyncio.ensure_future(self._invoke(agent, toolset, call, cancel)) for call in calls
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _invoke(
        self,
        agent: AgentDefinition,
        toolset: dict[str, AgentTool],
        call: ToolCallRequest,
        cancel: asyncio.Event | None,
    ) -> str:
        tool = toolset.get(call.name)
        if tool is None:
            logger.warning("%s: model requested unknown tool '%s'", agent.name, call.name)
            return json.dumps({"error": f"Tool '{call.name}' is not available"})

        logger.debug("%s: invoking %s", agent.name, call.name)
        try:
            return await _until_cancelled(tool.invoke(call.arguments, agent.tool_timeout), cancel)
        except InvocationError as exc:
            logger.debug("%s: %s failed: %s", agent.name, call.name, exc)
            return json.dumps({"error": str(exc)})

    def _record_usage(self, model: str, reply: BackendReply) -> None:
        if self._usage_sink is None or reply.usage is None:
            return
        usage = reply.usage
        if not usage.model:
            usage = usage.model_copy(update={"model": model})
        self._usage_sink(usage)
