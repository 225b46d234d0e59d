"""Tests for the active-use registry, completion ledger and set allocator."""

import itertools
import random
from datetime import timedelta

import pytest

from science_quiz.kv_store import JsonFileKVStore, MemoryKVStore
from science_quiz.models import Scope
from science_quiz.set_tracker import (
    ActiveUseRegistry,
    CompletionLedger,
    SetAllocator,
    StreakCounter,
    active_key,
    completed_key,
    streak_key,
)

A = "user_a"
B = "user_b"
C = "user_c"


class CountingStore(MemoryKVStore):
    """Memory store that records every key written."""

    def __init__(self) -> None:
        super().__init__()
        self.writes: list[str] = []

    def set(self, key, value):
        self.writes.append(key)
        super().set(key, value)


@pytest.fixture
def allocator(registry, ledger):
    return SetAllocator(registry, ledger)


# --- Active-use registry ---


class TestActiveUseRegistry:
    def test_mark_and_get(self, registry, scope, clock):
        registry.mark_active(scope, A, 2)
        active = registry.get_active(scope)
        assert list(active) == [A]
        assert active[A].set_number == 2
        assert active[A].timestamp == clock.now * 1000

    def test_stored_shape(self, registry, store, scope, clock):
        registry.mark_active(scope, A, 3)
        raw = store.get(active_key(scope))
        assert raw == {A: {"setNumber": 3, "timestamp": clock.now * 1000}}

    def test_one_claim_per_session(self, registry, scope):
        registry.mark_active(scope, A, 1)
        registry.mark_active(scope, A, 3)
        active = registry.get_active(scope)
        assert len(active) == 1
        assert active[A].set_number == 3

    def test_release(self, registry, scope):
        registry.mark_active(scope, A, 1)
        registry.mark_active(scope, B, 2)
        registry.release(scope, A)
        assert list(registry.get_active(scope)) == [B]

    def test_release_absent_is_noop(self, registry, scope):
        registry.release(scope, A)
        assert registry.get_active(scope) == {}

    def test_scopes_are_independent(self, registry, scope):
        other = Scope(grade="Grade 9", subject="chemistry")
        registry.mark_active(scope, A, 1)
        assert registry.get_active(other) == {}

    def test_expired_entry_pruned_on_read(self, registry, store, scope, clock):
        registry.mark_active(scope, B, 2)
        clock.advance(30 * 60)
        assert registry.get_active(scope) == {}
        assert store.get(active_key(scope)) == {}

    def test_entry_kept_just_before_expiry(self, registry, scope, clock):
        registry.mark_active(scope, B, 2)
        clock.advance(30 * 60 - 1)
        assert B in registry.get_active(scope)

    def test_custom_ttl(self, store, scope, clock):
        short = ActiveUseRegistry(store, ttl=timedelta(minutes=1), clock=clock)
        short.mark_active(scope, B, 1)
        clock.advance(61)
        assert short.get_active(scope) == {}

    def test_malformed_entries_dropped(self, registry, store, scope, clock):
        store.set(
            active_key(scope),
            {
                B: {"setNumber": 2, "timestamp": clock.now * 1000},
                C: {"oops": True},
            },
        )
        assert list(registry.get_active(scope)) == [B]
        assert list(store.get(active_key(scope))) == [B]

    def test_read_without_pruning_does_not_write(self, scope, clock):
        store = CountingStore()
        registry = ActiveUseRegistry(store, clock=clock)
        registry.mark_active(scope, B, 2)
        store.writes.clear()
        clock.advance(60)
        assert B in registry.get_active(scope)
        assert registry.get_active(Scope(grade="Grade 9", subject="chemistry")) == {}
        assert store.writes == []

    def test_read_with_pruning_writes_once(self, scope, clock):
        store = CountingStore()
        registry = ActiveUseRegistry(store, clock=clock)
        registry.mark_active(scope, B, 2)
        store.writes.clear()
        clock.advance(30 * 60)
        registry.get_active(scope)
        registry.get_active(scope)
        assert store.writes == [active_key(scope)]

    def test_unreadable_file_keeps_claims(self, tmp_path, scope, clock):
        store = JsonFileKVStore(directory=tmp_path)
        registry = ActiveUseRegistry(store, clock=clock)
        registry.mark_active(scope, B, 2)
        path = store._path(active_key(scope))
        content = path.read_text()
        # Another process is half way through rewriting the file
        path.write_text(content[: len(content) // 2])
        assert registry.get_active(scope) == {}
        path.write_text(content)
        assert B in registry.get_active(scope)


# --- Completion ledger ---


class TestCompletionLedger:
    def test_empty_by_default(self, ledger, scope):
        assert ledger.get_completed(A, scope) == set()

    def test_mark_completed_releases_claim(self, ledger, registry, scope):
        registry.mark_active(scope, A, 2)
        ledger.mark_completed(A, scope, 2)
        assert 2 in ledger.get_completed(A, scope)
        assert A not in registry.get_active(scope)

    def test_completions_accumulate(self, ledger, store, scope):
        ledger.mark_completed(A, scope, 3)
        ledger.mark_completed(A, scope, 1)
        ledger.mark_completed(A, scope, 3)
        assert ledger.get_completed(A, scope) == {1, 3}
        assert store.get(completed_key(A, scope)) == [1, 3]

    def test_per_session(self, ledger, scope):
        ledger.mark_completed(A, scope, 1)
        assert ledger.get_completed(B, scope) == set()

    def test_out_of_range_rejected(self, ledger, scope):
        with pytest.raises(ValueError):
            ledger.mark_completed(A, scope, 4)
        with pytest.raises(ValueError):
            ledger.mark_completed(A, scope, 0)

    def test_reset(self, ledger, scope):
        ledger.mark_completed(A, scope, 1)
        ledger.reset(A, scope)
        assert ledger.get_completed(A, scope) == set()


# --- Streak ---


class TestStreakCounter:
    def test_increment_and_reset(self, streak):
        assert streak.value == 0
        assert streak.increment() == 1
        assert streak.increment() == 2
        assert streak.reset() == 0
        assert streak.value == 0

    def test_garbage_reads_as_zero(self, store):
        store.set(streak_key(A), "not a number")
        assert StreakCounter(store, A).value == 0

    def test_per_session(self, store):
        a = StreakCounter(store, A)
        b = StreakCounter(store, B)
        a.increment()
        a.increment()
        b.increment()
        b.reset()
        assert a.value == 2
        assert b.value == 0
        assert store.get(streak_key(A)) == 2


# --- Allocator ---


class TestSetAllocator:
    def test_fresh_session_gets_all(self, allocator, scope):
        assert allocator.get_available_sets(A, scope) == [1, 2, 3]

    def test_completed_and_claimed_excluded(self, allocator, ledger, registry):
        scope = Scope(grade="Grade 9", subject="physics")
        ledger.mark_completed(A, scope, 1)
        registry.mark_active(scope, B, 2)
        assert allocator.get_available_sets(A, scope) == [3]

    def test_own_claim_does_not_block(self, allocator, registry, scope):
        registry.mark_active(scope, A, 2)
        assert allocator.get_available_sets(A, scope) == [1, 2, 3]

    def test_expired_claim_does_not_block(self, allocator, registry, scope, clock):
        registry.mark_active(scope, B, 2)
        clock.advance(31 * 60)
        assert allocator.get_available_sets(A, scope) == [1, 2, 3]

    def test_all_completed_resets_cycle(self, allocator, ledger, scope):
        for n in (1, 2, 3):
            ledger.mark_completed(A, scope, n)
        assert allocator.get_available_sets(A, scope) == [1, 2, 3]
        assert ledger.get_completed(A, scope) == set()

    def test_reset_still_avoids_claims(self, allocator, ledger, registry, scope):
        for n in (1, 2, 3):
            ledger.mark_completed(A, scope, n)
        registry.mark_active(scope, B, 2)
        assert allocator.get_available_sets(A, scope) == [1, 3]

    def test_reset_with_everything_claimed_falls_back(self, allocator, ledger, registry, scope):
        for n in (1, 2, 3):
            ledger.mark_completed(A, scope, n)
        registry.mark_active(scope, B, 1)
        registry.mark_active(scope, C, 2)
        registry.mark_active(scope, "user_d", 3)
        assert allocator.get_available_sets(A, scope) == [1]

    def test_contention_only(self, allocator, ledger, registry, scope):
        ledger.mark_completed(A, scope, 1)
        registry.mark_active(scope, B, 2)
        registry.mark_active(scope, C, 3)
        # Blocked by others, not exhausted: completion record is kept
        assert allocator.get_available_sets(A, scope) == [1]
        assert ledger.get_completed(A, scope) == {1}

    def test_contention_uses_total_sets(self, allocator, ledger, registry, scope):
        ledger.mark_completed(A, scope, 4, total_sets=5)
        ledger.mark_completed(A, scope, 5, total_sets=5)
        for i, n in enumerate((1, 2, 3)):
            registry.mark_active(scope, f"other_{i}", n)
        assert allocator.get_available_sets(A, scope, total_sets=5) == [4, 5]

    def test_invalid_total_sets(self, allocator, scope):
        with pytest.raises(ValueError):
            allocator.get_available_sets(A, scope, total_sets=0)

    @pytest.mark.parametrize("total_sets", [1, 2, 3, 4])
    def test_liveness_and_exclusion(self, store, clock, total_sets):
        scope = Scope(grade="Grade 10", subject="biology")
        universe = range(1, total_sets + 1)
        subsets = [
            set(c) for r in range(total_sets + 1) for c in itertools.combinations(universe, r)
        ]
        for completed, claimed in itertools.product(subsets, subsets):
            store._data.clear()
            registry = ActiveUseRegistry(store, clock=clock)
            ledger = CompletionLedger(store, registry)
            allocator = SetAllocator(registry, ledger)
            for n in completed:
                ledger.mark_completed(A, scope, n, total_sets=total_sets)
            for n in claimed:
                registry.mark_active(scope, f"other_{n}", n)

            result = allocator.get_available_sets(A, scope, total_sets)

            assert result, (completed, claimed)
            assert all(1 <= n <= total_sets for n in result)
            for k in universe:
                if k not in completed and k not in claimed:
                    assert k in result, (completed, claimed, result)

    def test_choose_set_claims(self, allocator, ledger, registry, scope):
        ledger.mark_completed(A, scope, 1)
        chosen = allocator.choose_set(A, scope, rng=random.Random(7))
        assert chosen in (2, 3)
        assert registry.get_active(scope)[A].set_number == chosen

    def test_concurrent_sessions_get_different_sets(self, allocator, scope):
        rng = random.Random(1)
        first = allocator.choose_set(A, scope, rng=rng)
        second = allocator.choose_set(B, scope, rng=rng)
        third = allocator.choose_set(C, scope, rng=rng)
        assert {first, second, third} == {1, 2, 3}
