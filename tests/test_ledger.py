"""Tests for the optimistic-concurrency ledger."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest

from kryten_slots.config import LedgerConfig
from kryten_slots.kv_store import MemoryKvStore
from kryten_slots.ledger import (
    ABORT,
    EconomyLedger,
    int_codec,
    verify_direction,
    verify_exact,
)

from conftest import FlakyKvStore


class TestVerifiers:
    def test_exact_needs_equal_value(self):
        assert verify_exact(1, 5, 5, None, 9)
        assert not verify_exact(1, 5, 4, None, 9)

    def test_exact_checks_tag_when_present(self):
        assert verify_exact(1, 5, 5, {"tag": 9}, 9)
        assert not verify_exact(1, 5, 5, {"tag": 8}, 9)

    def test_direction(self):
        assert verify_direction(100, 150, 160, None, 1)
        assert not verify_direction(100, 150, 100, None, 1)
        assert verify_direction(100, 40, 30, None, 1)
        assert not verify_direction(100, 40, 120, None, 1)
        assert verify_direction(100, 100, 100, None, 1)


class TestBalances:
    """Balance helpers on a healthy store."""

    async def test_lazy_account_creation(self, ledger: EconomyLedger, kv: FlakyKvStore):
        assert await ledger.get_balance("alice") == 100
        assert await kv.get("balance.alice") == 100

    async def test_adjust(self, ledger: EconomyLedger):
        result = await ledger.adjust_balance("alice", 50)
        assert result.verified
        assert result.value == 150
        assert result.previous == 100
        assert await ledger.get_balance("alice") == 150

    async def test_never_below_zero(self, ledger: EconomyLedger):
        result = await ledger.adjust_balance("alice", -500)
        assert result.value == 0

    async def test_never_above_max(self, ledger: EconomyLedger, sample_config):
        await ledger.set_balance("alice", sample_config.ledger.max_balance - 5)
        result = await ledger.adjust_balance("alice", 100)
        assert result.value == sample_config.ledger.max_balance

    @pytest.mark.parametrize("start", [0, 1, 100, 999_999_999])
    @pytest.mark.parametrize("delta", [-10**12, -101, -1, 0, 1, 10**12])
    async def test_result_always_in_range(self, ledger: EconomyLedger, start: int, delta: int):
        await ledger.set_balance("alice", start)
        result = await ledger.adjust_balance("alice", delta)
        assert 0 <= result.value <= 999_999_999

    async def test_bank_may_go_negative(self, ledger: EconomyLedger):
        await ledger.adjust_bank(-500_000)
        assert await ledger.get_bank_balance() == 444_444 - 500_000

    async def test_bank_zero_delta_does_not_write(self, ledger: EconomyLedger, kv: FlakyKvStore):
        result = await ledger.adjust_bank(0)
        assert result.value == 444_444
        assert kv.put_calls == 0

    async def test_malformed_balance_treated_as_default(self, ledger: EconomyLedger, kv: FlakyKvStore):
        await kv.put("balance.alice", {"oops": True})
        assert await ledger.get_balance("alice") == 100

    async def test_read_failure_reads_zero(self, ledger: EconomyLedger, kv: FlakyKvStore):
        kv.fail_gets = 1
        assert await ledger.get_balance("alice") == 0


class TestCompareAndRetry:
    """Retry semantics under failing and lossy writes."""

    async def test_transient_failures_then_success_match_clean_run(self, sample_config):
        clean_kv, flaky_kv = FlakyKvStore(), FlakyKvStore()
        sleep = AsyncMock()
        clean = EconomyLedger(clean_kv, sample_config.ledger, logging.getLogger("test"), sleep=sleep)
        flaky = EconomyLedger(flaky_kv, sample_config.ledger, logging.getLogger("test"), sleep=sleep)

        flaky_kv.fail_puts = sample_config.ledger.max_retries - 1
        a = await clean.adjust_balance("alice", 25)
        b = await flaky.adjust_balance("alice", 25)

        assert a.verified and b.verified
        assert b.attempts == sample_config.ledger.max_retries
        assert await clean_kv.get("balance.alice") == await flaky_kv.get("balance.alice") == 125

    async def test_lost_write_is_retried(self, ledger: EconomyLedger, kv: FlakyKvStore):
        kv.drop_puts = 1
        result = await ledger.adjust_balance("alice", 50)
        assert result.verified
        assert result.attempts == 2
        assert await kv.get("balance.alice") == 150

    async def test_failed_read_back_does_not_apply_delta_twice(self, ledger: EconomyLedger, kv: FlakyKvStore):
        kv.fail_readbacks = 1
        result = await ledger.adjust_balance("alice", 50)
        assert result.verified
        assert result.value == 150
        assert result.previous == 100
        assert result.attempts == 2
        assert await kv.get("balance.alice") == 150
        assert kv.put_calls == 1

    async def test_unknown_write_overwritten_by_someone_else_is_retried(
        self, ledger: EconomyLedger, kv: FlakyKvStore, monkeypatch,
    ):
        kv.fail_readbacks = 1
        real_get_entry = kv.get_entry
        calls = []

        async def get_entry(key):
            calls.append(key)
            if len(calls) == 3:
                # Another writer replaced our value before the retry read it.
                await MemoryKvStore.put(kv, key, 500, metadata={"tag": 1})
            return await real_get_entry(key)

        monkeypatch.setattr(kv, "get_entry", get_entry)
        result = await ledger.adjust_balance("alice", 50)
        assert result.verified
        assert await kv.get("balance.alice") == 550

    async def test_exhaustion_returns_last_safe_value(self, ledger: EconomyLedger, kv: FlakyKvStore):
        await ledger.get_balance("alice")
        kv.fail_puts = 10
        result = await ledger.adjust_balance("alice", 50)
        assert not result.verified
        assert result.value == 100
        assert ledger.exhausted_total == 1

    async def test_read_failures_exhaust_without_raising(self, ledger: EconomyLedger, kv: FlakyKvStore):
        kv.fail_gets = 10
        result = await ledger.adjust_balance("alice", 50)
        assert not result.verified
        assert result.value == 100  # codec default

    async def test_backoff_is_exponential(self, kv: FlakyKvStore):
        sleep = AsyncMock()
        config = LedgerConfig(max_retries=4, backoff_base_ms=100)
        ledger = EconomyLedger(kv, config, logging.getLogger("test"), sleep=sleep)
        kv.fail_puts = 10
        await ledger.adjust_balance("alice", 1)

        delays = [call.args[0] for call in sleep.await_args_list]
        assert len(delays) == 3
        for attempt, delay in enumerate(delays):
            base = 0.1 * 2 ** attempt
            assert base - 1e-9 <= delay <= base * 1.5 + 1e-9

    async def test_abort_skips_write(self, ledger: EconomyLedger, kv: FlakyKvStore):
        codec = int_codec(7)
        result = await ledger.compare_and_retry("counter", lambda cur: ABORT, codec)
        assert result.aborted
        assert result.value == 7
        assert kv.put_calls == 0

    async def test_ttl_passed_through(self, ledger: EconomyLedger, kv: FlakyKvStore):
        codec = int_codec(0)
        await ledger.compare_and_retry("counter", lambda cur: cur + 1, codec, ttl_seconds=60)
        assert kv._data["counter"][1] is not None
