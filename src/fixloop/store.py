# store.py
# Workflow state storage behind an opaque id.
#
# Callers always work on copies: get() hands out a deep copy and update()
# stores one, so a failed continuation can never leave a half-applied
# transition behind. Completion is a one-time, race-safe check-and-set.

import threading
import uuid
from typing import Protocol

from fixloop.errors import ContractViolation
from fixloop.models import WorkflowState


class WorkflowStore(Protocol):
    def create(self, state: WorkflowState) -> str:
        """Store a new workflow and return its id."""
        ...

    def get(self, workflow_id: str) -> WorkflowState | None:
        """Return a copy of the active workflow, or None if unknown or completed."""
        ...

    def update(self, workflow_id: str, state: WorkflowState) -> None:
        """Replace the stored state of an active workflow."""
        ...

    def try_complete(self, workflow_id: str) -> bool:
        """Lock the workflow as finished. False if it already was."""
        ...


class InMemoryWorkflowStore:
    """
    Process-local store. State does not survive a restart.

    Independent ids never share state. Per-id updates are last-writer-wins;
    only completion is exclusive.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, WorkflowState] = {}
        self._completed: set[str] = set()

    def create(self, state: WorkflowState) -> str:
        workflow_id = f"workflow-{uuid.uuid4().hex}"
        stored = state.model_copy(deep=True, update={"workflow_id": workflow_id})
        with self._lock:
            self._active[workflow_id] = stored
        return workflow_id

    def get(self, workflow_id: str) -> WorkflowState | None:
        with self._lock:
            if workflow_id in self._completed:
                return None
            state = self._active.get(workflow_id)
        return state.model_copy(deep=True) if state is not None else None

    def update(self, workflow_id: str, state: WorkflowState) -> None:
        stored = state.model_copy(deep=True, update={"workflow_id": workflow_id})
        with self._lock:
            if workflow_id in self._completed:
                raise ContractViolation(f"Workflow '{workflow_id}' is already complete")
            if workflow_id not in self._active:
                raise ContractViolation(f"Workflow '{workflow_id}' not found")
            self._active[workflow_id] = stored

    def try_complete(self, workflow_id: str) -> bool:
        with self._lock:
            if workflow_id in self._completed or workflow_id not in self._active:
                return False
            self._completed.add(workflow_id)
            del self._active[workflow_id]
        return True

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def is_completed(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._completed
