"""Controller loop — turns store events into reconciles.

Subscribes to an :class:`ObjectStore`, queues ActionSet add/update events,
and lets a small pool of worker threads call
:meth:`ActionSetReconciler.reconcile` for each.  A delete event cancels
the ActionSet if it is being driven.  A reconcile that raises is
redelivered with backoff up to ``event_max_redeliveries`` times; after
that the event is dropped and logged.

Events for an ActionSet that is already waiting in the queue are
coalesced: reconcile always reads the latest stored copy, so one queued
entry per ActionSet is enough.

Example::

    with Controller(store, registry=registry) as controller:
        store.create(actionset.ref, actionset)
        controller.wait_idle(timeout=5)
"""

from __future__ import annotations

import queue
import threading
from typing import Any

from kanopy.core.logging import get_logger
from kanopy.core.retry import ExponentialBackoff
from kanopy.core.settings import EngineSettings, get_settings
from kanopy.cr.models import ACTIONSET_RESOURCE, API_GROUP, ObjectReference
from kanopy.engine.reconciler import ActionSetReconciler
from kanopy.functions.registry import FunctionRegistry, get_default_registry
from kanopy.store.base import EventType, ObjectStore, StoreEvent

logger = get_logger(__name__)

_STOP = object()


class Controller:
    """Event-driven reconcile loop over a store."""

    def __init__(
        self,
        store: ObjectStore,
        *,
        registry: FunctionRegistry | None = None,
        reconciler: ActionSetReconciler | None = None,
        settings: EngineSettings | None = None,
    ):
        self._store = store
        self._settings = settings or get_settings()
        self._registry = registry or get_default_registry()
        self._reconciler = reconciler or ActionSetReconciler(
            store, self._registry, settings=self._settings
        )
        self._queue: queue.Queue[Any] = queue.Queue()
        self._queued: set[tuple[str, str, str, str]] = set()
        self._queued_lock = threading.Lock()
        self._stopping = threading.Event()
        self._workers: list[threading.Thread] = []
        self._unsubscribe = None
        self._backoff = ExponentialBackoff(
            max_retries=self._settings.event_max_redeliveries, base_delay=0.05, max_delay=2.0
        )

    @property
    def reconciler(self) -> ActionSetReconciler:
        return self._reconciler

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Freeze the registry, subscribe, start workers and queue existing ActionSets."""
        if self._workers:
            return
        self._registry.freeze()
        self._stopping.clear()
        self._unsubscribe = self._store.subscribe(self._on_event)
        for i in range(self._settings.controller_workers):
            worker = threading.Thread(target=self._work, name=f"kanopy-controller-{i}", daemon=True)
            worker.start()
            self._workers.append(worker)

        existing = self._store.list(ACTIONSET_RESOURCE)
        for stored in existing:
            self._enqueue(stored.ref)
        logger.info(
            "controller.started",
            workers=self._settings.controller_workers,
            actionsets=len(existing),
            functions=len(self._registry),
        )

    def stop(self, timeout: float | None = None) -> None:
        """Unsubscribe and stop workers after their current reconcile."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stopping.set()
        for _ in self._workers:
            self._queue.put(_STOP)
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []
        logger.info("controller.stopped")

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued event has been processed.

        Returns:
            False if *timeout* elapsed first.
        """
        done = self._queue.all_tasks_done
        with done:
            while self._queue.unfinished_tasks:
                if not done.wait(timeout):
                    return False
        return True

    def __enter__(self) -> Controller:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    # ── events ───────────────────────────────────────────────────

    def _on_event(self, event: StoreEvent) -> None:
        ref = event.ref
        if ref.resource != ACTIONSET_RESOURCE or ref.group not in ("", API_GROUP):
            return
        if event.type == EventType.DELETED:
            self._reconciler.cancel(ref)
            return
        self._enqueue(ref)

    def _enqueue(self, ref: ObjectReference, attempt: int = 0) -> None:
        if attempt == 0:
            with self._queued_lock:
                if ref.key in self._queued:
                    return
                self._queued.add(ref.key)
        self._queue.put((ref, attempt))

    def _work(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                ref, attempt = item
                if attempt == 0:
                    with self._queued_lock:
                        self._queued.discard(ref.key)
                self._process(ref, attempt)
            finally:
                self._queue.task_done()

    def _process(self, ref: ObjectReference, attempt: int) -> None:
        try:
            self._reconciler.reconcile(ref)
        except Exception as e:
            if self._stopping.is_set() or not self._backoff.should_retry(attempt, e):
                logger.error(
                    "controller.event_dropped",
                    actionset=str(ref),
                    attempts=attempt + 1,
                    error=str(e),
                    exc_info=True,
                )
                return
            delay = self._backoff.next_delay(attempt)
            logger.warning(
                "controller.redeliver",
                actionset=str(ref),
                attempt=attempt + 1,
                delay=round(delay, 3),
                error=str(e),
            )
            if self._stopping.wait(delay):
                return
            self._enqueue(ref, attempt + 1)
