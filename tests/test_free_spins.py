"""Tests for the free-spin queue."""

from __future__ import annotations

import pytest

from kryten_slots.errors import MalformedStoredState
from kryten_slots.free_spins import (
    ConsumeResult,
    FreeSpinEntry,
    FreeSpinLedger,
    FreeSpinQueue,
)


def q(*pairs: tuple[int, int]) -> tuple[FreeSpinEntry, ...]:
    return tuple(FreeSpinEntry(m, c) for m, c in pairs)


class TestFreeSpinQueue:
    """Pure queue operations."""

    def test_award_merges_same_multiplier(self):
        assert FreeSpinQueue.award(q((1, 2)), 1, 3) == q((1, 5))

    def test_award_keeps_ascending_order(self):
        assert FreeSpinQueue.award(q((1, 2), (5, 1)), 3, 1) == q((1, 2), (3, 1), (5, 1))

    def test_consume_lowest_scenario(self):
        remaining, result = FreeSpinQueue.consume_lowest(q((1, 2), (3, 1)))
        assert result == ConsumeResult(True, 1)
        assert remaining == q((1, 1), (3, 1))

    def test_consume_removes_exhausted_entry(self):
        remaining, result = FreeSpinQueue.consume_lowest(q((2, 1), (3, 4)))
        assert result == ConsumeResult(True, 2)
        assert remaining == q((3, 4))

    def test_consume_empty(self):
        remaining, result = FreeSpinQueue.consume_lowest(())
        assert result == ConsumeResult(False)
        assert remaining == ()

    def test_total_never_increases_on_consume(self):
        entries = q((1, 3), (2, 2), (10, 1))
        while entries:
            before = FreeSpinQueue.total(entries)
            entries, result = FreeSpinQueue.consume_lowest(entries)
            assert result.used
            assert FreeSpinQueue.total(entries) == before - 1

    @pytest.mark.parametrize("raw", [
        {"multiplier": 1},
        [{"multiplier": 0, "count": 1}],
        [{"multiplier": 1, "count": -2}],
        [{"multiplier": "1", "count": 1}],
        ["x"],
    ])
    def test_parse_rejects_bad_shapes(self, raw):
        with pytest.raises(MalformedStoredState):
            FreeSpinQueue.parse(raw)

    def test_parse_normalizes(self):
        raw = [{"multiplier": 3, "count": 1}, {"multiplier": 1, "count": 1}, {"multiplier": 3, "count": 2}]
        assert FreeSpinQueue.parse(raw) == q((1, 1), (3, 3))


class TestFreeSpinLedger:
    """Queue stored through the ledger."""

    async def test_award_and_consume(self, free_spins: FreeSpinLedger):
        await free_spins.award("alice", 1, 2)
        await free_spins.award("alice", 3, 1)
        result = await free_spins.consume_lowest("alice")
        assert result == ConsumeResult(True, 1)
        assert await free_spins.get("alice") == q((1, 1), (3, 1))

    async def test_stored_shape(self, free_spins: FreeSpinLedger, kv):
        await free_spins.award("alice", 2, 4)
        assert await kv.get("freespins.alice") == [{"multiplier": 2, "count": 4}]

    async def test_consume_empty(self, free_spins: FreeSpinLedger):
        assert await free_spins.consume_lowest("alice") == ConsumeResult(False)

    async def test_malformed_state_is_empty(self, free_spins: FreeSpinLedger, kv):
        await kv.put("freespins.alice", {"broken": True})
        assert await free_spins.get("alice") == ()
        assert await free_spins.consume_lowest("alice") == ConsumeResult(False)

    async def test_ignores_non_positive_award(self, free_spins: FreeSpinLedger):
        assert await free_spins.award("alice", 1, 0) == ()
