"""Tests for weekly purchase caps."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from kryten_slots.database import SlotsDatabase
from kryten_slots.ledger import EconomyLedger
from kryten_slots.purchase_limiter import PurchaseLimiter


class MovableNow:
    def __init__(self, dt: datetime) -> None:
        self.dt = dt

    def __call__(self) -> datetime:
        return self.dt


# Wednesday
WEDNESDAY = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class TestOptimisticLimiter:
    """KV-only path through compare_and_retry."""

    async def test_counts_up_to_limit(self, ledger: EconomyLedger):
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), clock=MovableNow(WEDNESDAY))
        assert (await limiter.increment("alice", "spin_bundle", 2)).count == 1
        assert (await limiter.increment("alice", "spin_bundle", 2)).count == 2
        rejected = await limiter.increment("alice", "spin_bundle", 2)
        assert not rejected.ok
        assert rejected.limit_reached
        assert await limiter.get_count("alice", "spin_bundle") == 2

    async def test_cap_leaves_store_unchanged(self, ledger: EconomyLedger, kv):
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), clock=MovableNow(WEDNESDAY))
        await limiter.increment("alice", "dachs_boost", 1)
        before = await kv.get(limiter.key("alice", "dachs_boost"))
        await limiter.increment("alice", "dachs_boost", 1)
        assert await kv.get(limiter.key("alice", "dachs_boost")) == before

    async def test_week_boundary_resets_to_one(self, ledger: EconomyLedger):
        now = MovableNow(WEDNESDAY)
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), clock=now)
        for _ in range(3):
            await limiter.increment("alice", "spin_bundle", 3)
        now.dt += timedelta(days=7)
        assert await limiter.get_count("alice", "spin_bundle") == 0
        result = await limiter.increment("alice", "spin_bundle", 3)
        assert result.ok
        assert result.count == 1

    async def test_update_config_moves_week_boundary(self, ledger: EconomyLedger):
        # Sunday night UTC is already Monday in Berlin.
        now = MovableNow(datetime(2026, 3, 8, 23, 30, tzinfo=timezone.utc))
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), clock=now)
        assert limiter.current_week() == "2026-03-09"
        limiter.update_config("America/New_York")
        assert limiter.current_week() == "2026-03-02"

    async def test_key_layout(self, ledger: EconomyLedger):
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"))
        assert limiter.key("alice", "spin_bundle") == "purchases.spin_bundle.alice"


class TestAtomicLimiter:
    """SQLite conditional-update path."""

    async def test_atomic_increment_mirrors_to_kv(self, ledger: EconomyLedger, database: SlotsDatabase, kv):
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), database, clock=MovableNow(WEDNESDAY))
        result = await limiter.increment("alice", "spin_bundle", 3)
        assert result.ok and result.count == 1
        assert await kv.get(limiter.key("alice", "spin_bundle")) == {"count": 1, "week_start": "2026-03-02"}

    async def test_atomic_cap(self, ledger: EconomyLedger, database: SlotsDatabase):
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), database, clock=MovableNow(WEDNESDAY))
        await limiter.increment("alice", "dachs_boost", 1)
        rejected = await limiter.increment("alice", "dachs_boost", 1)
        assert not rejected.ok
        assert rejected.limit_reached
        row = await database.get_purchase("alice", "dachs_boost")
        assert row["count"] == 1

    async def test_atomic_week_boundary(self, ledger: EconomyLedger, database: SlotsDatabase):
        now = MovableNow(WEDNESDAY)
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), database, clock=now)
        await limiter.increment("alice", "dachs_boost", 1)
        now.dt += timedelta(days=7)
        result = await limiter.increment("alice", "dachs_boost", 1)
        assert result.ok and result.count == 1

    async def test_database_failure_falls_back_to_kv(self, ledger: EconomyLedger):
        db = AsyncMock()
        db.increment_purchase.side_effect = RuntimeError("disk I/O error")
        limiter = PurchaseLimiter(ledger, logging.getLogger("test"), db, clock=MovableNow(WEDNESDAY))
        result = await limiter.increment("alice", "spin_bundle", 3)
        assert result.ok
        assert result.count == 1
