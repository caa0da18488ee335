# usage.py
# Shared token usage sink. Runners push UsageEvents; the CLI renders totals.
#
# add() only appends under a lock, so it is safe to call from any turn or
# thread and never waits on I/O.

import threading

from pydantic import BaseModel

from fixloop.models import UsageEvent


class ModelUsage(BaseModel):
    model: str
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[UsageEvent] = []

    def add(self, event: UsageEvent) -> None:
        with self._lock:
            self._events.append(event)

    def __call__(self, event: UsageEvent) -> None:
        self.add(event)

    def events(self) -> list[UsageEvent]:
        with self._lock:
            return list(self._events)

    def totals(self) -> list[ModelUsage]:
        """Per-model totals, in first-seen order."""
        by_model: dict[str, ModelUsage] = {}
        for event in self.events():
            entry = by_model.setdefault(event.model, ModelUsage(model=event.model))
            entry.input_tokens += event.input_tokens
            entry.output_tokens += event.output_tokens
            entry.calls += 1
        return list(by_model.values())

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
