"""ObjectStore protocol: the minimal versioned-store contract.

The engine never talks to a particular cluster client.  It reads
Blueprints, config maps, secrets, profiles and target objects by
:class:`~kanopy.cr.models.ObjectReference`, and reads/writes ActionSets
under optimistic concurrency: every stored object carries a monotonically
increasing ``version`` and an update must present the version it last
read.

Manifesto:
    The engine depends on ``get`` / ``update(expected_version)`` and a
    change feed.  Anything that can offer those (a Kubernetes client,
    a database table, the in-memory store used by tests and the CLI)
    can host the engine.

Tags:
    kanopy, store, protocol, optimistic-concurrency

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from kanopy.cr.models import ObjectReference


class EventType(str, Enum):
    """Kind of change observed on a stored object."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class StoredObject:
    """An object together with the version token it was read at."""

    ref: ObjectReference
    obj: Any
    version: int


@dataclass(frozen=True)
class StoreEvent:
    """Change notification delivered to store subscribers."""

    type: EventType
    ref: ObjectReference
    version: int


StoreListener = Callable[[StoreEvent], None]


@runtime_checkable
class ObjectStore(Protocol):
    """Versioned object store.

    Implementors
    ------------
    * ``InMemoryObjectStore``: thread-safe, process-local
    """

    def get(self, ref: ObjectReference) -> StoredObject:
        """Return a private copy of the object.

        Raises:
            ObjectNotFoundError: If nothing is stored under *ref*.
        """
        ...

    def create(self, ref: ObjectReference, obj: Any) -> StoredObject:
        """Store a new object; fails if *ref* already exists."""
        ...

    def update(self, ref: ObjectReference, obj: Any, expected_version: int) -> StoredObject:
        """Replace the object if its current version equals *expected_version*.

        Raises:
            PersistenceConflict: If the stored version moved on.
            ObjectNotFoundError: If the object was deleted.
        """
        ...

    def delete(self, ref: ObjectReference) -> None:
        ...

    def list(self, resource: str, namespace: str | None = None) -> list[StoredObject]:
        ...

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        ...
