# errors.py
# Exception taxonomy shared by the runner, the tools and the workflow.
#
# Domain failures (a fix that could not be applied, a build that still
# fails) are not exceptions. They are step results recorded in workflow
# history and drive phase transitions.


class FixloopError(Exception):
    """Base class for every error raised by fixloop."""


class ContractViolation(FixloopError):
    """Malformed input at a public boundary. Never mutates stored state."""


class InvocationError(FixloopError):
    """A tool call failed: bad input shape, handler exception, or timeout.

    The runner reports these back into the conversation as a tool-level
    failure instead of aborting the run.
    """


class BackendError(FixloopError):
    """The model backend failed or timed out. Fatal for the current run."""


class AgentCancelledError(FixloopError):
    """The run was cancelled cooperatively before producing a result."""


class AgentError(FixloopError):
    """The agent loop ended without an accepted result."""


class NoResultError(AgentError):
    """A turn settled without the model calling Exit. Never retried."""


class IterationLimitError(AgentError):
    """Every iteration produced a result that failed validation."""

    def __init__(self, max_iterations: int, last_reason: str | None = None) -> None:
        super().__init__(
            f"Agent did not return a valid result within {max_iterations} iterations"
        )
        self.max_iterations = max_iterations
        self.last_reason = last_reason
