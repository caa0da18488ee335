# workflow.py
# Fix-and-verify workflow: a resumable state machine driven by its caller.
#
# The machine never performs a fix itself. Each call returns the next
# instruction; the caller carries it out and comes back with a step result.
# State lives in a WorkflowStore between calls, addressed by workflow id.
#
# Phases:
#   Classify ──applicable──→ AttemptFixA ──applied──→ Verify
#            └─not/unknown─→ AttemptFixB ──applied──→ Verify
#   AttemptFixA ──not applied──→ AttemptFixB
#   AttemptFixB ──not applied──→ Failure
#   Verify ──passed──→ Success
#          └─failed──→ Classify   (while iteration ≤ max_iterations)
#                  └─→ Failure    (otherwise)

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from fixloop.errors import ContractViolation
from fixloop.models import (
    STEP_RESULT_ADAPTER,
    ClassificationResult,
    ExpectedResult,
    FixAppliedResult,
    HistoryEntry,
    Outcome,
    StepResult,
    ToolSuggestion,
    VerifyCompleteResult,
    WorkflowPhase,
    WorkflowResponse,
    WorkflowState,
)
from fixloop.store import InMemoryWorkflowStore, WorkflowStore

logger = logging.getLogger(__name__)

REQUEST_TYPES = ("build_error", "user_request")
DEFAULT_MAX_ITERATIONS = 3


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

CLASSIFY_INSTRUCTION = """\
Analyze the problem below and decide whether it can be fixed by changing the \
source definitions the package is generated from (fix A), instead of editing \
hand-written code inside the package (fix B).

{label}:
{errors}

Respond with a JSON object: {{"type": "classification", "applicable": true/false}}

Set applicable to true if a change to the source definitions (renames, \
visibility, model usage) could fix any of these errors. Set it to false for \
implementation issues, logic errors, or anything that requires code changes.\
"""

FIX_A_INSTRUCTION = """\
Fix the errors that can be resolved by changing the source definitions.

Errors:
{errors}

{location}

Make the smallest change to the source definitions that addresses the errors. \
Do not edit generated code.

After making changes, respond with a JSON object:
- If a fix was applied: {{"type": "fix_applied", "description": "what was changed"}}
- If the source definitions cannot help: {{"type": "fix_not_applicable", "reason": "why"}}\
"""

FIX_B_INSTRUCTION = """\
Fix the hand-written code in the package at {package_path} so that it builds \
against the current generated code. Running `fixloop fix` with the suggested \
arguments does this with a sandboxed agent and prints the result JSON.

Errors:
{errors}

Respond with a JSON object:
- If a fix was applied: {{"type": "fix_applied", "description": "what was changed"}}
- If the fix could not be applied: {{"type": "fix_failed", "reason": "why"}}\
"""

VERIFY_INSTRUCTION = """\
{steps} the package at {package_path} to verify the fix.

Respond with a JSON object: {{"type": "verify_complete", "success": true/false, \
"output": "optional summary", "errors": "error output if it failed"}}\
"""


# ---------------------------------------------------------------------------
# Expected result shapes
# ---------------------------------------------------------------------------

CLASSIFICATION_EXPECTED = ExpectedResult(
    type="classification",
    description="Whether fixing the source definitions (fix A) could resolve the errors",
    fields={
        "type": 'Must be "classification"',
        "applicable": "Boolean: true if source definition changes could help; false if code changes are needed",
    },
    example='{"type": "classification", "applicable": true}',
)

FIX_A_EXPECTED = ExpectedResult(
    type="fix_applied OR fix_not_applicable",
    description="Result of attempting to fix the errors in the source definitions",
    fields={
        "type": 'Either "fix_applied" or "fix_not_applicable"',
        "description": "If applied: what was changed",
        "reason": "If not applicable: why the source definitions cannot help",
    },
    example='{"type": "fix_applied", "description": "Renamed Property1 to Property2 for clients"}',
)

FIX_B_EXPECTED = ExpectedResult(
    type="fix_applied OR fix_failed",
    description="Result of attempting to fix the hand-written package code",
    fields={
        "type": 'Either "fix_applied" or "fix_failed"',
        "description": "If applied: what was changed",
        "reason": "If failed: why the fix could not be applied",
    },
    example='{"type": "fix_applied", "description": "Updated method signature to match generated code"}',
)

VERIFY_EXPECTED = ExpectedResult(
    type="verify_complete",
    description="Result of rebuilding the package",
    fields={
        "type": 'Must be "verify_complete"',
        "success": "Boolean: true if the build succeeded",
        "output": "Optional: build output or summary",
        "errors": "If failed: the build error messages",
    },
    example='{"type": "verify_complete", "success": true}',
)


# ---------------------------------------------------------------------------
# Verification collaborator
# ---------------------------------------------------------------------------


class VerificationReport(BaseModel):
    success: bool
    output: str | None = None
    errors: str | None = None


class Verifier(Protocol):
    def verify(self, state: WorkflowState) -> VerificationReport:
        """Rebuild the package described by ``state`` and report the outcome."""
        ...


class CommandVerifier:
    """
    Verifies a fix by running shell-free commands in the package directory:
    the regenerate command first when the last fix touched the source
    definitions, then the build command.
    """

    def __init__(self, build_command: str, regenerate_command: str | None = None, timeout: float = 600.0) -> None:
        self.build_argv = shlex.split(build_command)
        self.regenerate_argv = shlex.split(regenerate_command) if regenerate_command else None
        self.timeout = timeout

    def verify(self, state: WorkflowState) -> VerificationReport:
        cwd = Path(state.package_path)
        if state.last_fix_kind == "fix_a" and self.regenerate_argv:
            report = self._run("Regeneration", self.regenerate_argv, cwd)
            if not report.success:
                return VerificationReport(success=False, errors=f"Regeneration failed:\n{report.errors}")
        return self._run("Build", self.build_argv, cwd)

    def _run(self, label: str, argv: list[str], cwd: Path) -> VerificationReport:
        logger.info("%s: %s (cwd=%s)", label, " ".join(argv), cwd)
        try:
            completed = subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return VerificationReport(success=False, errors=f"{label} timed out after {self.timeout:g} seconds")
        except OSError as exc:
            return VerificationReport(success=False, errors=f"{label} could not be started: {exc}")

        output = (completed.stdout + completed.stderr).strip()
        if completed.returncode == 0:
            return VerificationReport(success=True, output=output or f"{label} succeeded")
        return VerificationReport(
            success=False,
            errors=output or f"{label} exited with code {completed.returncode}",
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_step_result(raw: Any) -> StepResult:
    """Parse a JSON string or dict into a StepResult. Raises ContractViolation."""
    if raw is None or raw == "" or raw == b"":
        raise ContractViolation("result is required to continue a workflow")
    try:
        if isinstance(raw, (str, bytes)):
            return STEP_RESULT_ADAPTER.validate_json(raw)
        return STEP_RESULT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise ContractViolation(f"Failed to parse step result: {exc}") from exc


def _record(state: WorkflowState, phase: WorkflowPhase, action: str, outcome: Outcome, detail: str | None = None) -> None:
    state.history.append(
        HistoryEntry(iteration=state.iteration, phase=phase, action=action, outcome=outcome, detail=detail)
    )


def _fix_outcome(result: StepResult) -> Outcome:
    if isinstance(result, FixAppliedResult):
        return "success"
    if result.type == "fix_not_applicable":
        return "skipped"
    return "failure"


def _fix_detail(result: StepResult) -> str | None:
    return getattr(result, "description", None) or getattr(result, "reason", None)


def build_summary(state: WorkflowState, outcome: str) -> str:
    lines = [
        "## Fix Workflow Summary",
        f"- **Outcome**: {outcome}",
        f"- **Iterations**: {min(state.iteration, state.max_iterations)} of {state.max_iterations}",
        f"- **Package**: {state.package_path}",
        "",
        "### History",
    ]
    for entry in state.history:
        lines.append(f"- [Iteration {entry.iteration}] {entry.phase.value}: {entry.action} ({entry.outcome})")
        if entry.detail:
            lines.append(f"  - Details: {entry.detail}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class FixWorkflow:
    """
    Coordinates classify → fix → verify attempts across stateless calls.

    Example:
        workflow = FixWorkflow()
        response = workflow.start("error CS0246 ...", "build_error", "/repo/sdk/foo")
        response = workflow.continue_workflow(
            response.workflow_id, '{"type": "classification", "applicable": false}'
        )
    """

    def __init__(self, store: WorkflowStore | None = None, verifier: Verifier | None = None) -> None:
        self._store = store if store is not None else InMemoryWorkflowStore()
        self._verifier = verifier

    @property
    def store(self) -> WorkflowStore:
        return self._store

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(
        self,
        request: str | None,
        request_type: str | None,
        package_path: str | None,
        source_path: str | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> WorkflowResponse:
        if not request:
            raise ContractViolation("request is required to start a new workflow")
        if not request_type:
            raise ContractViolation("request_type is required to start a new workflow")
        if request_type not in REQUEST_TYPES:
            raise ContractViolation(f"request_type must be one of {list(REQUEST_TYPES)}, got '{request_type}'")
        if not package_path:
            raise ContractViolation("package_path is required to start a new workflow")
        if max_iterations < 1:
            raise ContractViolation("max_iterations must be at least 1")

        state = WorkflowState(
            phase=WorkflowPhase.CLASSIFY,
            request_type=request_type,
            original_request=request,
            current_errors=request,
            package_path=package_path,
            source_path=source_path or None,
            max_iterations=max_iterations,
            iteration=1,
        )
        workflow_id = self._store.create(state)
        logger.info("Started workflow %s for %s", workflow_id, package_path)

        return WorkflowResponse(
            phase=WorkflowPhase.CLASSIFY,
            message="Workflow started. Analyzing errors to determine fix approach...",
            next_instruction=self._classify_instruction(state),
            expected_result=CLASSIFICATION_EXPECTED,
            workflow_id=workflow_id,
        )

    def continue_workflow(self, workflow_id: str, step_result: Any) -> WorkflowResponse:
        """
        Apply a step result to a stored workflow.

        Raises ContractViolation, leaving stored state untouched, when the id
        is unknown or completed or the step result does not fit the current
        phase.
        """
        state = self._store.get(workflow_id)
        if state is None:
            raise ContractViolation(
                f"Workflow '{workflow_id}' not found. It may have completed, or the process was restarted. "
                "Start a new workflow."
            )

        result = parse_step_result(step_result)
        logger.info("Continuing workflow %s from %s with %s", workflow_id, state.phase.value, result.type)

        # state is a private copy; nothing is stored until the transition succeeds.
        response = self._apply(state, result)

        if response.is_complete:
            if not self._store.try_complete(workflow_id):
                raise ContractViolation(f"Workflow '{workflow_id}' was already completed")
            logger.info("Workflow %s finished: %s", workflow_id, response.status)
        else:
            self._store.update(workflow_id, state)
        return response

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _apply(self, state: WorkflowState, result: StepResult) -> WorkflowResponse:
        if state.phase.is_terminal:
            raise ContractViolation(f"Workflow '{state.workflow_id}' is in terminal phase {state.phase.value}")
        if state.phase == WorkflowPhase.CLASSIFY:
            return self._on_classification(state, result)
        if state.phase == WorkflowPhase.ATTEMPT_FIX_A:
            return self._on_fix_a(state, result)
        if state.phase == WorkflowPhase.ATTEMPT_FIX_B:
            return self._on_fix_b(state, result)
        return self._on_verify(state, result)

    def _on_classification(self, state: WorkflowState, result: StepResult) -> WorkflowResponse:
        if not isinstance(result, ClassificationResult):
            raise ContractViolation(f"Expected classification result, got: {result.type}")

        if result.applicable is None:
            action = "Classification undetermined, routing to fix B"
        else:
            action = f"Classified: fix A applicable = {result.applicable}"
        _record(state, WorkflowPhase.CLASSIFY, action, "success")

        if result.applicable:
            return self._enter_fix_a(state)
        return self._enter_fix_b(state, "Fix A does not apply. Attempting fix B...")

    def _on_fix_a(self, state: WorkflowState, result: StepResult) -> WorkflowResponse:
        _record(state, WorkflowPhase.ATTEMPT_FIX_A, f"Fix A attempt: {result.type}", _fix_outcome(result), _fix_detail(result))
        if isinstance(result, FixAppliedResult):
            return self._enter_verify(state, "Fix A applied. Regenerating and building to verify...")
        return self._enter_fix_b(state, "Fix A not applicable. Attempting fix B...")

    def _on_fix_b(self, state: WorkflowState, result: StepResult) -> WorkflowResponse:
        _record(state, WorkflowPhase.ATTEMPT_FIX_B, f"Fix B attempt: {result.type}", _fix_outcome(result), _fix_detail(result))
        if isinstance(result, FixAppliedResult):
            return self._enter_verify(state, "Fix B applied. Building to verify...")
        return self._finish(state, WorkflowPhase.FAILURE, "Fix B could not be applied.", "Fix B failed")

    def _on_verify(self, state: WorkflowState, result: StepResult) -> WorkflowResponse:
        if not isinstance(result, VerifyCompleteResult):
            raise ContractViolation(f"Expected verify_complete result, got: {result.type}")
        return self._after_verification(state, result.success, result.output, result.errors)

    def _after_verification(
        self, state: WorkflowState, success: bool, output: str | None, errors: str | None
    ) -> WorkflowResponse:
        action = "Regenerate and build" if state.last_fix_kind == "fix_a" else "Build verification"
        _record(state, WorkflowPhase.VERIFY, action, "success" if success else "failure", errors or output)

        if success:
            return self._finish(state, WorkflowPhase.SUCCESS, "Build succeeded! Workflow complete.", "Build succeeded")

        state.current_errors = errors or state.current_errors
        state.iteration += 1
        if state.iteration > state.max_iterations:
            return self._finish(
                state,
                WorkflowPhase.FAILURE,
                f"Max iterations ({state.max_iterations}) reached. Build still failing.",
                "Max iterations reached",
            )

        state.phase = WorkflowPhase.CLASSIFY
        return WorkflowResponse(
            phase=WorkflowPhase.CLASSIFY,
            message=(
                f"Build failed. Starting iteration {state.iteration} of {state.max_iterations}. "
                "Reclassifying new errors..."
            ),
            next_instruction=self._classify_instruction(state),
            expected_result=CLASSIFICATION_EXPECTED,
            workflow_id=state.workflow_id,
        )

    # ------------------------------------------------------------------
    # Phase entry
    # ------------------------------------------------------------------

    def _enter_fix_a(self, state: WorkflowState) -> WorkflowResponse:
        state.phase = WorkflowPhase.ATTEMPT_FIX_A
        state.last_fix_kind = "fix_a"
        if state.source_path:
            location = f"Source definitions: {state.source_path}"
        else:
            location = f"Package Path: {state.package_path}\n(Discover the source definition location from the package metadata)"
        return WorkflowResponse(
            phase=WorkflowPhase.ATTEMPT_FIX_A,
            message="Attempting to fix the source definitions...",
            next_instruction=FIX_A_INSTRUCTION.format(errors=state.current_errors, location=location),
            expected_result=FIX_A_EXPECTED,
            workflow_id=state.workflow_id,
        )

    def _enter_fix_b(self, state: WorkflowState, message: str) -> WorkflowResponse:
        state.phase = WorkflowPhase.ATTEMPT_FIX_B
        state.last_fix_kind = "fix_b"
        return WorkflowResponse(
            phase=WorkflowPhase.ATTEMPT_FIX_B,
            message=message,
            next_instruction=FIX_B_INSTRUCTION.format(package_path=state.package_path, errors=state.current_errors),
            run_tool=ToolSuggestion(
                name="fixloop fix",
                args={"package_path": state.package_path, "errors": state.current_errors},
            ),
            expected_result=FIX_B_EXPECTED,
            workflow_id=state.workflow_id,
        )

    def _enter_verify(self, state: WorkflowState, message: str) -> WorkflowResponse:
        state.phase = WorkflowPhase.VERIFY
        if self._verifier is not None:
            report = self._verifier.verify(state)
            return self._after_verification(state, report.success, report.output, report.errors)

        steps = "Regenerate and then build" if state.last_fix_kind == "fix_a" else "Build"
        return WorkflowResponse(
            phase=WorkflowPhase.VERIFY,
            message=message,
            next_instruction=VERIFY_INSTRUCTION.format(steps=steps, package_path=state.package_path),
            expected_result=VERIFY_EXPECTED,
            workflow_id=state.workflow_id,
        )

    def _finish(self, state: WorkflowState, phase: WorkflowPhase, message: str, outcome: str) -> WorkflowResponse:
        state.phase = phase
        return WorkflowResponse(
            phase=phase,
            message=message,
            workflow_id=state.workflow_id,
            is_complete=True,
            status="success" if phase == WorkflowPhase.SUCCESS else "failure",
            summary=build_summary(state, outcome),
        )

    @staticmethod
    def _classify_instruction(state: WorkflowState) -> str:
        label = "Build Errors" if state.request_type == "build_error" else "Request"
        return CLASSIFY_INSTRUCTION.format(label=label, errors=state.current_errors)
