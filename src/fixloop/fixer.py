# fixer.py
# Code fixer: runs an agent inside a package sandbox to repair hand-written
# code against build errors. This is what a caller runs for fix B.

import asyncio
import logging
from pathlib import Path

from fixloop.errors import ContractViolation
from fixloop.models import FixResult, ValidationOutcome
from fixloop.runner import AgentDefinition, AgentRunner
from fixloop.tools import CheckTool, sandbox_tools

logger = logging.getLogger(__name__)

FIX_INSTRUCTIONS = """\
You are fixing build errors in the hand-written code of a software package. \
The package is your working directory; every path you pass to a tool is \
relative to it and cannot leave it.

Build errors:
{errors}

Approach:
1. Locate the code named in the errors with Grep or Glob before reading whole files.
2. Read only the line ranges you need with ReadFileLines.
3. Make the smallest change that fixes the errors with WriteFile. Do not edit generated code.
4. {check_step}
5. Call Exit with your result:
   - success: true only if you changed code and the errors are resolved
   - changes_summary: what you changed, file by file
   - failure_reason: if you could not fix the errors, why\
"""

CHECK_STEP = "Run Check after your changes. Keep fixing until it passes."
NO_CHECK_STEP = "Re-read the changed lines to confirm the edit is what you intended."


class CodeFixer:
    """
    Example:
        fixer = CodeFixer(runner, model="anthropic/claude-3.5-haiku", check_command="make check")
        result = await fixer.fix("/repo/sdk/foo", errors)
    """

    def __init__(
        self,
        runner: AgentRunner,
        model: str,
        check_command: str | None = None,
        check_timeout: float = 120.0,
        max_iterations: int = 5,
        max_turn_steps: int = 50,
        tool_timeout: float = 60.0,
    ) -> None:
        self._runner = runner
        self._model = model
        self._check_command = check_command
        self._check_timeout = check_timeout
        self._max_iterations = max_iterations
        self._max_turn_steps = max_turn_steps
        self._tool_timeout = tool_timeout

    def build_agent(self, package_path: str | Path, errors: str) -> AgentDefinition:
        root = Path(package_path)
        if not root.is_dir():
            raise ContractViolation(f"Package path does not exist: {package_path}")
        if not errors.strip():
            raise ContractViolation("errors are required to run a fix")

        tools = sandbox_tools(root, self._check_command, self._check_timeout)
        check = next((tool for tool in tools if isinstance(tool, CheckTool)), None)

        return AgentDefinition(
            name="code-fixer",
            instructions=FIX_INSTRUCTIONS.format(
                errors=errors.strip(),
                check_step=CHECK_STEP if check is not None else NO_CHECK_STEP,
            ),
            tools=tools,
            model=self._model,
            max_iterations=self._max_iterations,
            max_turn_steps=self._max_turn_steps,
            tool_timeout=self._tool_timeout,
            result_type=FixResult,
            validator=_check_passes(check) if check is not None else None,
        )

    async def fix(self, package_path: str | Path, errors: str, cancel: asyncio.Event | None = None) -> FixResult:
        agent = self.build_agent(package_path, errors)
        logger.info("Running code fixer on %s with %d tools", package_path, len(agent.tools))
        result: FixResult = await self._runner.run(agent, cancel)
        logger.info("Code fixer finished: success=%s", result.success)
        return result


def _check_passes(check: CheckTool):
    """Reject a claimed success while the check command still fails."""

    async def validate(result: FixResult) -> ValidationOutcome:
        if not result.success:
            return ValidationOutcome.ok()
        outcome = await check.handle(check.input_model())
        if outcome.success:
            return ValidationOutcome.ok()
        return ValidationOutcome.fail(
            {"error": "You reported success but the check still fails", "check_output": outcome.output}
        )

    return validate
