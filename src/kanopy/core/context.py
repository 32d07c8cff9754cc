"""Cancellable execution context handed to every function.

An :class:`ExecutionContext` is the engine's answer to "how does the
caller stop a function that is blocked on external I/O".  The reconciler
creates one per ActionSet; each phase runs under a child context that
inherits cancellation and may add a deadline.  Functions are expected to
poll :attr:`ExecutionContext.cancelled`, call :meth:`check`, or block on
:meth:`wait` instead of ``time.sleep``.

ARCHITECTURE
────────────
::

    ExecutionContext()                       ─ root, per ActionSet
      ├── .cancel(reason)                    ─ cancels self + children
      ├── .cancelled / .reason               ─ poll
      ├── .check()                           ─ raise CancelledError
      ├── .wait(timeout)                     ─ interruptible sleep
      └── .child(timeout=..., **values)      ─ context manager, per phase

Deadlines use the monotonic clock.  A child's deadline never outlives
its parent's.

Example::

    def execute(self, ctx, args):
        for chunk in upload_chunks(args["path"]):
            ctx.check("upload")
            send(chunk)
        return {"uploaded": "true"}
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from types import MappingProxyType
from typing import Any

from kanopy.core.errors import CancelledError


class ExecutionContext:
    """Cancellation signal plus optional deadline and read-only values."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        parent: ExecutionContext | None = None,
        values: Mapping[str, Any] | None = None,
    ) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[ExecutionContext] = []
        self._parent = parent
        self._reason: str | None = None

        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent._deadline is not None:
            deadline = parent._deadline if deadline is None else min(deadline, parent._deadline)
        self._deadline = deadline

        merged = dict(parent.values) if parent is not None else {}
        merged.update(values or {})
        self.values: Mapping[str, Any] = MappingProxyType(merged)

        if parent is not None:
            parent._attach(self)

    # ── cancellation ─────────────────────────────────────────────

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this context and every child derived from it."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
            children = list(self._children)
        self._event.set()
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> str | None:
        """Why the context was cancelled, if it was."""
        return self._reason

    def remaining(self) -> float | None:
        """Seconds until the deadline, or ``None`` when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self, operation: str | None = None) -> None:
        """Raise ``CancelledError`` if the context has been cancelled."""
        if self.cancelled:
            what = f"'{operation}' " if operation else ""
            raise CancelledError(f"Execution {what}cancelled: {self._reason}")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses.

        Returns:
            True if the context is cancelled.
        """
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    # ── derivation ───────────────────────────────────────────────

    @contextmanager
    def child(self, timeout: float | None = None, **values: Any) -> Iterator[ExecutionContext]:
        """Derive a child context for the duration of a ``with`` block."""
        ctx = ExecutionContext(timeout=timeout, parent=self, values=values)
        try:
            yield ctx
        finally:
            self._detach(ctx)

    def _attach(self, child: ExecutionContext) -> None:
        with self._lock:
            self._children.append(child)
            cancelled, reason = self._event.is_set(), self._reason
        if cancelled:
            child.cancel(reason or "cancelled")

    def _detach(self, child: ExecutionContext) -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self._event.is_set() else "active"
        return f"ExecutionContext({state}, values={dict(self.values)!r})"
