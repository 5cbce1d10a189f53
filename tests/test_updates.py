"""Unit tests for updates.py - optimistic update helpers."""

from unittest.mock import AsyncMock, patch

import pytest

from errors import ConflictError, NotFoundError
from models import OPERATION_ANNOTATION
from updates import (
    DEFAULT_BACKOFF,
    Backoff,
    remove_annotation,
    retry_on_conflict,
    try_update,
    try_update_status,
)


class TestBackoff:
    """Tests for the Backoff schedule."""

    def test_default_schedule(self):
        assert DEFAULT_BACKOFF.steps == 4
        assert DEFAULT_BACKOFF.duration == 0.01
        assert DEFAULT_BACKOFF.factor == 5.0
        assert DEFAULT_BACKOFF.jitter == 0.1

    def test_delays_without_jitter(self):
        backoff = Backoff(steps=4, duration=0.01, factor=5.0, jitter=0)
        assert list(backoff.delays()) == pytest.approx([0.01, 0.05, 0.25])

    def test_delays_with_jitter_stay_in_bounds(self):
        delays = list(Backoff(steps=3, duration=1.0, factor=2.0, jitter=0.1).delays())
        assert len(delays) == 2
        assert 1.0 <= delays[0] <= 1.1
        assert 2.0 <= delays[1] <= 2.2

    def test_single_step_never_retries(self):
        assert list(Backoff(steps=1).delays()) == []


@pytest.mark.asyncio
class TestRetryOnConflict:
    """Tests for retry_on_conflict."""

    async def test_returns_first_success(self, fast_backoff):
        fn = AsyncMock(return_value="ok")
        assert await retry_on_conflict(fast_backoff, fn) == "ok"
        assert fn.await_count == 1

    async def test_retries_conflicts(self, fast_backoff):
        conflict = ConflictError("Infrastructure", "ns/n")
        fn = AsyncMock(side_effect=[conflict, conflict, "ok"])
        assert await retry_on_conflict(fast_backoff, fn) == "ok"
        assert fn.await_count == 3

    async def test_raises_after_budget(self, fast_backoff):
        fn = AsyncMock(side_effect=ConflictError("Infrastructure", "ns/n"))
        with pytest.raises(ConflictError):
            await retry_on_conflict(fast_backoff, fn)
        assert fn.await_count == 4

    async def test_other_errors_propagate_immediately(self, fast_backoff):
        fn = AsyncMock(side_effect=RuntimeError("connection refused"))
        with pytest.raises(RuntimeError):
            await retry_on_conflict(fast_backoff, fn)
        assert fn.await_count == 1

    async def test_sleeps_between_attempts(self):
        backoff = Backoff(steps=3, duration=0.01, factor=5.0, jitter=0)
        conflict = ConflictError("Infrastructure", "ns/n")
        fn = AsyncMock(side_effect=[conflict, conflict, "ok"])

        with patch("updates.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await retry_on_conflict(backoff, fn)

        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays == pytest.approx([0.01, 0.05])


@pytest.mark.asyncio
class TestTryUpdate:
    """Tests for try_update and try_update_status."""

    async def test_mutation_applies_to_fresh_copy(self, store, sample_infra, fast_backoff):
        store.add(sample_infra)
        # Caller holds a stale copy
        await store.set_annotation("garden-dev", "infra", "team", "network")

        def add_finalizer(obj):
            obj.finalizers.append("a.io/f")

        updated = await try_update(store, sample_infra, add_finalizer, fast_backoff)

        assert updated.finalizers == ["a.io/f"]
        assert updated.annotations == {"team": "network"}

    async def test_false_skips_write(self, store, sample_infra, fast_backoff):
        store.add(sample_infra)

        updated = await try_update(store, sample_infra, lambda obj: False, fast_backoff)

        assert updated.key == sample_infra.key
        assert store.writes == []

    async def test_conflict_rereads_and_reapplies(
        self, store, sample_infra, fast_backoff
    ):
        store.add(sample_infra)
        store.conflicts["update_infrastructure_status"] = 1
        calls = []

        def bump(obj):
            calls.append(obj.resource_version)
            obj.status.observed_generation = 5

        updated = await try_update_status(store, sample_infra, bump, fast_backoff)

        assert len(calls) == 2
        assert updated.status.observed_generation == 5

    async def test_missing_object(self, store, sample_infra, fast_backoff):
        with pytest.raises(NotFoundError):
            await try_update(store, sample_infra, lambda obj: None, fast_backoff)


@pytest.mark.asyncio
class TestRemoveAnnotation:
    """Tests for remove_annotation."""

    async def test_removes(self, store, sample_infra, fast_backoff):
        sample_infra.annotations = {OPERATION_ANNOTATION: "restore", "team": "x"}
        store.add(sample_infra)

        updated = await remove_annotation(
            store, sample_infra, OPERATION_ANNOTATION, fast_backoff
        )

        assert updated.annotations == {"team": "x"}
        assert store.current("garden-dev", "infra").annotations == {"team": "x"}

    async def test_absent_annotation_is_noop(self, store, sample_infra, fast_backoff):
        store.add(sample_infra)

        await remove_annotation(store, sample_infra, OPERATION_ANNOTATION, fast_backoff)

        assert store.writes == []

    async def test_missing_object_is_noop(self, store, sample_infra, fast_backoff):
        result = await remove_annotation(
            store, sample_infra, OPERATION_ANNOTATION, fast_backoff
        )
        assert result is sample_infra
