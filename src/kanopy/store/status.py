"""Compare-and-swap status updates.

A status write re-reads the current object, reapplies the caller's delta
and writes it back with the version it just read.  A write that loses the
race is retried with backoff; after the retry budget is spent the last
``PersistenceConflict`` is surfaced to the caller.

Example::

    def mark_running(actionset: ActionSet) -> None:
        actionset.status.state = ActionSetState.RUNNING

    update_with_retry(store, actionset.ref, mark_running, strategy=ExponentialBackoff(max_retries=4))
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from kanopy.core.errors import PersistenceConflict
from kanopy.core.logging import get_logger
from kanopy.core.retry import ExponentialBackoff, RetryStrategy
from kanopy.cr.models import ObjectReference
from kanopy.observability.metrics import get_engine_metrics
from kanopy.store.base import ObjectStore, StoredObject

logger = get_logger(__name__)


def update_with_retry(
    store: ObjectStore,
    ref: ObjectReference,
    mutate: Callable[[Any], None],
    *,
    strategy: RetryStrategy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StoredObject:
    """Apply *mutate* to the latest copy of *ref* and write it back.

    Args:
        store: Versioned store holding the object.
        ref: Object to update.
        mutate: Applies the delta in place to a fresh copy. Called once per attempt.
        strategy: Decides whether a lost race is retried and how long to wait.
            Defaults to four jittered exponential retries (five attempts).
        sleep: Injected for tests.

    Raises:
        PersistenceConflict: Every attempt lost the version race.
        ObjectNotFoundError: The object no longer exists.
    """
    strategy = strategy or ExponentialBackoff(max_retries=4)
    metrics = get_engine_metrics()

    attempt = 0
    while True:
        current = store.get(ref)
        mutate(current.obj)
        try:
            return store.update(ref, current.obj, current.version)
        except PersistenceConflict as e:
            metrics.status_conflicts.inc()
            logger.debug(
                "status.conflict",
                ref=str(ref),
                attempt=attempt + 1,
                version=current.version,
            )
            if not strategy.should_retry(attempt, e):
                logger.warning("status.retries_exhausted", ref=str(ref), attempts=attempt + 1)
                raise PersistenceConflict(
                    f"Status update of {ref} lost {attempt + 1} consecutive version races",
                    attempts=attempt + 1,
                    cause=e,
                ) from e
            sleep(strategy.next_delay(attempt))
            attempt += 1
