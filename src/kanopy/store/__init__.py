"""Versioned object store contract, in-memory implementation and CAS helper."""

from kanopy.store.base import EventType, ObjectStore, StoredObject, StoreEvent
from kanopy.store.memory import InMemoryObjectStore
from kanopy.store.status import update_with_retry

__all__ = [
    "EventType",
    "InMemoryObjectStore",
    "ObjectStore",
    "StoreEvent",
    "StoredObject",
    "update_with_retry",
]
