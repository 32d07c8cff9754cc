"""Tests for compare-and-swap status updates with bounded retries."""

from __future__ import annotations

import pytest

from kanopy.core.errors import ObjectNotFoundError, PersistenceConflict
from kanopy.core.retry import ExponentialBackoff
from kanopy.cr.models import ActionSetState, ActionSetStatus
from kanopy.store.memory import InMemoryObjectStore
from kanopy.store.status import update_with_retry

from _support.builders import actionset


class ConflictingStore(InMemoryObjectStore):
    """Loses the first ``conflicts`` update races to a concurrent writer."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.attempts = 0

    def update(self, ref, obj, expected_version):
        self.attempts += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            # Someone else writes first, moving the version on.
            current = self.get(ref)
            super().update(ref, current.obj, current.version)
        return super().update(ref, obj, expected_version)


def _mark_running(aset):
    aset.status = ActionSetStatus(state=ActionSetState.RUNNING)


def _immediate(retries: int = 4) -> ExponentialBackoff:
    return ExponentialBackoff(max_retries=retries, base_delay=0.0, jitter=False)


class TestUpdateWithRetry:
    def test_first_attempt_succeeds(self, store):
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        stored = update_with_retry(store, aset.ref, _mark_running, sleep=lambda _: None)
        assert stored.obj.status.state == ActionSetState.RUNNING

    def test_retries_after_conflict(self):
        store = ConflictingStore(conflicts=2)
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        delays: list[float] = []

        stored = update_with_retry(
            store, aset.ref, _mark_running, strategy=_immediate(), sleep=delays.append
        )

        assert store.attempts == 3
        assert delays == [0.0, 0.0]
        assert stored.obj.status.state == ActionSetState.RUNNING

    def test_mutate_sees_latest_copy(self):
        store = ConflictingStore(conflicts=1)
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        seen_versions = []

        def mutate(obj):
            seen_versions.append(store.get(aset.ref).version)
            _mark_running(obj)

        update_with_retry(store, aset.ref, mutate, strategy=_immediate(), sleep=lambda _: None)
        assert len(seen_versions) == 2
        assert seen_versions[1] > seen_versions[0]

    def test_exhaustion_raises_conflict(self):
        store = ConflictingStore(conflicts=10)
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        with pytest.raises(PersistenceConflict) as excinfo:
            update_with_retry(store, aset.ref, _mark_running, strategy=_immediate(2), sleep=lambda _: None)
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.cause, PersistenceConflict)
        assert store.attempts == 3

    def test_missing_object(self, store):
        with pytest.raises(ObjectNotFoundError):
            update_with_retry(store, actionset("ghost").ref, _mark_running)


class TestBackoff:
    def test_exponential_without_jitter(self):
        strategy = ExponentialBackoff(base_delay=0.01, max_delay=0.05, jitter=False)
        assert [strategy.next_delay(i) for i in range(4)] == [0.01, 0.02, 0.04, 0.05]

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=1.0, jitter_range=0.25)
        for _ in range(20):
            assert 0.75 <= strategy.next_delay(0) <= 1.25

    def test_should_retry(self):
        assert ExponentialBackoff(max_retries=2).should_retry(1)
        assert not ExponentialBackoff(max_retries=2).should_retry(2)

    def test_strategy_bounds_attempts(self):
        class Never(ExponentialBackoff):
            def should_retry(self, attempt, error=None):
                return False

        store = ConflictingStore(conflicts=1)
        aset = actionset("nightly")
        store.create(aset.ref, aset)
        with pytest.raises(PersistenceConflict) as excinfo:
            update_with_retry(store, aset.ref, _mark_running, strategy=Never(), sleep=lambda _: None)
        assert excinfo.value.attempts == 1
        assert store.attempts == 1
