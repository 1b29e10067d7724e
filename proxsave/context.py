"""Cancellation and deadline propagation for a backup run.

A ``RunContext`` is handed down from the orchestrator to every collector,
the process runner and the archiver. Children created with
``with_timeout`` observe their parent's cancellation but can expire on
their own without affecting the parent.
"""

from __future__ import annotations

import threading
import time

from proxsave.exceptions import DeadlineExceededError, OperationCancelledError


class RunContext:
    def __init__(
        self,
        parent: RunContext | None = None,
        deadline: float | None = None,
    ):
        self._parent = parent
        self._deadline = deadline
        self._event = threading.Event()

    @classmethod
    def background(cls) -> RunContext:
        return cls()

    def with_timeout(self, seconds: float | None) -> RunContext:
        if seconds is None or seconds <= 0:
            return RunContext(parent=self)
        return RunContext(parent=self, deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def deadline(self) -> float | None:
        deadlines = [d for d in (self._deadline, self._parent_deadline()) if d]
        return min(deadlines) if deadlines else None

    def _parent_deadline(self) -> float | None:
        return self._parent.deadline if self._parent else None

    def remaining(self) -> float | None:
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def error(self) -> OperationCancelledError | None:
        """Return the reason this context is done, or None while it is live."""
        if self._event.is_set():
            return OperationCancelledError()
        if self._parent is not None:
            parent_error = self._parent.error()
            if parent_error is not None:
                return parent_error
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DeadlineExceededError()
        return None

    @property
    def cancelled(self) -> bool:
        return self.error() is not None

    def check(self) -> None:
        err = self.error()
        if err is not None:
            raise err
