"""In-memory ObjectStore.

Thread-safe, process-local implementation of
:class:`~kanopy.store.base.ObjectStore`.  Objects are deep-copied on the
way in and on the way out, so a caller can never mutate what another
caller reads.  Versions come from a single store-wide counter, which makes
them monotonically increasing per object as well.

Listeners are invoked synchronously after the lock is released, in
registration order.

Example::

    store = InMemoryObjectStore()
    stored = store.create(actionset.ref, actionset)
    current = store.get(actionset.ref)
    store.update(actionset.ref, changed, expected_version=current.version)
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Callable
from typing import Any

from kanopy.core.errors import KanopyError, ObjectNotFoundError, PersistenceConflict
from kanopy.core.logging import get_logger
from kanopy.cr.models import ObjectReference
from kanopy.store.base import EventType, StoredObject, StoreEvent, StoreListener

logger = get_logger(__name__)


class InMemoryObjectStore:
    """Dict-backed versioned store."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str, str, str], StoredObject] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._listeners: list[StoreListener] = []

    def get(self, ref: ObjectReference) -> StoredObject:
        with self._lock:
            stored = self._objects.get(ref.key)
            if stored is None:
                raise ObjectNotFoundError(ref)
            return StoredObject(ref=stored.ref, obj=copy.deepcopy(stored.obj), version=stored.version)

    def create(self, ref: ObjectReference, obj: Any) -> StoredObject:
        with self._lock:
            if ref.key in self._objects:
                raise KanopyError(f"Object already exists: {ref}")
            stored = StoredObject(ref=ref, obj=copy.deepcopy(obj), version=next(self._versions))
            self._objects[ref.key] = stored
        self._notify(StoreEvent(EventType.ADDED, ref, stored.version))
        return StoredObject(ref=ref, obj=copy.deepcopy(obj), version=stored.version)

    def update(self, ref: ObjectReference, obj: Any, expected_version: int) -> StoredObject:
        with self._lock:
            current = self._objects.get(ref.key)
            if current is None:
                raise ObjectNotFoundError(ref)
            if current.version != expected_version:
                raise PersistenceConflict(
                    f"Stale write to {ref}: expected version {expected_version}, "
                    f"stored version is {current.version}"
                )
            stored = StoredObject(ref=current.ref, obj=copy.deepcopy(obj), version=next(self._versions))
            self._objects[ref.key] = stored
        self._notify(StoreEvent(EventType.UPDATED, stored.ref, stored.version))
        return StoredObject(ref=stored.ref, obj=copy.deepcopy(obj), version=stored.version)

    def apply(self, ref: ObjectReference, obj: Any) -> StoredObject:
        """Create or unconditionally replace (used when loading manifests)."""
        try:
            current = self.get(ref)
        except ObjectNotFoundError:
            return self.create(ref, obj)
        return self.update(ref, obj, current.version)

    def delete(self, ref: ObjectReference) -> None:
        with self._lock:
            stored = self._objects.pop(ref.key, None)
            if stored is None:
                raise ObjectNotFoundError(ref)
        self._notify(StoreEvent(EventType.DELETED, stored.ref, stored.version))

    def list(self, resource: str, namespace: str | None = None) -> list[StoredObject]:
        with self._lock:
            matches = [
                s
                for s in self._objects.values()
                if s.ref.resource == resource and (namespace is None or s.ref.namespace == namespace)
            ]
            return [
                StoredObject(ref=s.ref, obj=copy.deepcopy(s.obj), version=s.version)
                for s in sorted(matches, key=lambda s: s.ref.key)
            ]

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: StoreEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("store.listener_failed", event=event.type.value, ref=str(event.ref))

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)
