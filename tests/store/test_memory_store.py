"""Tests for the in-memory versioned object store."""

from __future__ import annotations

import pytest

from kanopy.core.errors import KanopyError, ObjectNotFoundError, PersistenceConflict
from kanopy.cr.models import ACTIONSET_RESOURCE, ActionSet, ActionSetState, ActionSetStatus
from kanopy.store.base import EventType, ObjectStore

from _support.builders import actionset


class TestCrud:
    def test_store_satisfies_protocol(self, store):
        assert isinstance(store, ObjectStore)

    def test_create_and_get(self, store):
        aset = actionset("nightly")
        created = store.create(aset.ref, aset)
        fetched = store.get(aset.ref)
        assert fetched.version == created.version
        assert fetched.obj == aset

    def test_create_twice_fails(self, store):
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        with pytest.raises(KanopyError, match="already exists"):
            store.create(aset.ref, aset)

    def test_get_missing(self, store):
        with pytest.raises(ObjectNotFoundError):
            store.get(actionset("ghost").ref)

    def test_reads_are_private_copies(self, store):
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        copy = store.get(aset.ref).obj
        copy.status = ActionSetStatus(state=ActionSetState.FAILED)
        assert store.get(aset.ref).obj.status is None

    def test_delete(self, store):
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        store.delete(aset.ref)
        with pytest.raises(ObjectNotFoundError):
            store.get(aset.ref)
        with pytest.raises(ObjectNotFoundError):
            store.delete(aset.ref)

    def test_list_filters_by_resource_and_namespace(self, store):
        for name, ns in (("b", "prod"), ("a", "prod"), ("c", "dev")):
            aset = actionset(name, namespace=ns)
            store.create(aset.ref, aset)
        assert [s.obj.name for s in store.list(ACTIONSET_RESOURCE, "prod")] == ["a", "b"]
        assert len(store.list(ACTIONSET_RESOURCE)) == 3
        assert store.list("blueprints") == []


class TestOptimisticConcurrency:
    def test_update_bumps_version(self, store):
        aset = actionset("nightly")
        v1 = store.create(aset.ref, aset).version
        aset.status = ActionSetStatus(state=ActionSetState.RUNNING)
        v2 = store.update(aset.ref, aset, v1).version
        assert v2 > v1
        assert store.get(aset.ref).obj.status.state == ActionSetState.RUNNING

    def test_stale_update_conflicts(self, store):
        aset = actionset("nightly")
        v1 = store.create(aset.ref, aset).version
        store.update(aset.ref, aset, v1)
        with pytest.raises(PersistenceConflict):
            store.update(aset.ref, aset, v1)

    def test_update_of_deleted_object(self, store):
        aset = actionset("nightly")
        v1 = store.create(aset.ref, aset).version
        store.delete(aset.ref)
        with pytest.raises(ObjectNotFoundError):
            store.update(aset.ref, aset, v1)

    def test_apply_creates_or_replaces(self, store):
        aset = actionset("nightly")
        store.apply(aset.ref, aset)
        replaced = ActionSet(name="nightly", namespace=aset.namespace)
        store.apply(aset.ref, replaced)
        assert store.get(aset.ref).obj.spec.actions == []


class TestSubscriptions:
    def test_events_delivered_in_order(self, store):
        events = []
        store.subscribe(events.append)
        aset = actionset("nightly")
        v = store.create(aset.ref, aset).version
        store.update(aset.ref, aset, v)
        store.delete(aset.ref)
        assert [e.type for e in events] == [EventType.ADDED, EventType.UPDATED, EventType.DELETED]
        assert all(e.ref == aset.ref for e in events)

    def test_unsubscribe(self, store):
        events = []
        unsubscribe = store.subscribe(events.append)
        unsubscribe()
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        assert events == []

    def test_failing_listener_does_not_break_writes(self, store):
        def broken(event):
            raise RuntimeError("listener bug")

        seen = []
        store.subscribe(broken)
        store.subscribe(seen.append)
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        assert len(seen) == 1
        assert len(store) == 1
