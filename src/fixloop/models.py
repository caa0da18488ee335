# models.py
# Data contracts for the agent runner and the fix workflow.
# No business logic lives here: pure schema and validation.

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Agent runner
# ---------------------------------------------------------------------------


class ValidationOutcome(BaseModel):
    """Verdict of a result validator. ``reason`` may be text or structured."""

    success: bool
    reason: Any = None

    @classmethod
    def ok(cls) -> "ValidationOutcome":
        return cls(success=True)

    @classmethod
    def fail(cls, reason: Any) -> "ValidationOutcome":
        return cls(success=False, reason=reason)


class UsageEvent(BaseModel):
    """Token consumption reported by the backend for one model call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model within a turn."""

    id: str
    name: str
    arguments: str = Field(default="{}", description="Raw JSON arguments as sent by the model.")


class BackendReply(BaseModel):
    """One assistant message returned by the model backend."""

    content: str | None = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    usage: UsageEvent | None = None

    def as_message(self) -> dict[str, Any]:
        """Render as a chat message for the conversation history."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


class ToolDescription(BaseModel):
    """Inspectable declaration of a tool: name, purpose and input schema."""

    name: str
    description: str
    parameters: dict[str, Any]


# ---------------------------------------------------------------------------
# Workflow state
# ---------------------------------------------------------------------------


class WorkflowPhase(str, Enum):
    CLASSIFY = "Classify"
    ATTEMPT_FIX_A = "AttemptFixA"
    ATTEMPT_FIX_B = "AttemptFixB"
    VERIFY = "Verify"
    SUCCESS = "Success"
    FAILURE = "Failure"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowPhase.SUCCESS, WorkflowPhase.FAILURE)


RequestType = Literal["build_error", "user_request"]
FixKind = Literal["fix_a", "fix_b"]
Outcome = Literal["success", "failure", "skipped"]


class HistoryEntry(BaseModel):
    """Immutable record of one transition. Read only by the terminal summary."""

    model_config = ConfigDict(frozen=True)

    iteration: int
    phase: WorkflowPhase
    action: str
    outcome: Outcome
    detail: str | None = None


class WorkflowState(BaseModel):
    """Everything a continuation needs, addressed by ``workflow_id``."""

    workflow_id: str = ""
    phase: WorkflowPhase = WorkflowPhase.CLASSIFY
    request_type: RequestType
    original_request: str
    current_errors: str
    iteration: int = 1
    max_iterations: int = 3
    last_fix_kind: FixKind | None = None
    package_path: str
    source_path: str | None = None
    history: list[HistoryEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Step results (caller → workflow)
# ---------------------------------------------------------------------------


class ClassificationResult(BaseModel):
    type: Literal["classification"]
    applicable: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("applicable", "fix_a_applicable", "fixAApplicable"),
        description="True if fix strategy A can address the errors. Missing means undecided.",
    )


class FixAppliedResult(BaseModel):
    type: Literal["fix_applied"]
    description: str = ""


class FixNotApplicableResult(BaseModel):
    type: Literal["fix_not_applicable"]
    reason: str = ""


class FixFailedResult(BaseModel):
    type: Literal["fix_failed"]
    reason: str = ""


class VerifyCompleteResult(BaseModel):
    type: Literal["verify_complete"]
    success: bool
    output: str | None = None
    errors: str | None = None


StepResult = Annotated[
    Union[
        ClassificationResult,
        FixAppliedResult,
        FixNotApplicableResult,
        FixFailedResult,
        VerifyCompleteResult,
    ],
    Field(discriminator="type"),
]

STEP_RESULT_ADAPTER: TypeAdapter[StepResult] = TypeAdapter(StepResult)


# ---------------------------------------------------------------------------
# Workflow responses (workflow → caller)
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExpectedResult(_WireModel):
    """Describes the step-result JSON the workflow expects next."""

    type: str
    description: str
    fields: dict[str, str] = Field(default_factory=dict)
    example: str | None = None


class ToolSuggestion(_WireModel):
    """A concrete command the caller should run for the next step."""

    name: str
    args: dict[str, str] = Field(default_factory=dict)


class WorkflowResponse(_WireModel):
    phase: WorkflowPhase
    message: str
    workflow_id: str
    is_complete: bool = False
    next_instruction: str | None = None
    expected_result: ExpectedResult | None = Field(default=None, alias="expectedResultShape")
    run_tool: ToolSuggestion | None = None
    status: Literal["success", "failure"] | None = None
    summary: str | None = None

    @property
    def continuation_required(self) -> bool:
        return not self.is_complete

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        payload["continuationRequired"] = self.continuation_required
        return payload


# ---------------------------------------------------------------------------
# Code fixer result (agent → caller)
# ---------------------------------------------------------------------------


class FixResult(BaseModel):
    """Structured result the code-fix agent passes to Exit."""

    success: bool = Field(..., description="True if the errors were fixed and the check passes.")
    changes_summary: str = Field(default="", description="What was changed, file by file.")
    failure_reason: str = Field(default="", description="Why the fix could not be applied.")

    def to_step_result(self) -> dict[str, str]:
        if self.success:
            return {"type": "fix_applied", "description": self.changes_summary}
        return {"type": "fix_failed", "reason": self.failure_reason or "Fix could not be applied"}
