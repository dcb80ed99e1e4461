"""Shared test fixtures for kryten-slots."""

from __future__ import annotations

import logging
import random
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from kryten_slots.bonus_engine import BonusEngine
from kryten_slots.chat_handler import ChatHandler
from kryten_slots.config import SlotsConfig
from kryten_slots.database import SlotsDatabase
from kryten_slots.duel_alarm import DuelAlarmRegistry
from kryten_slots.duel_engine import DuelEngine
from kryten_slots.effects import EffectStore
from kryten_slots.errors import TransientStoreError
from kryten_slots.free_spins import FreeSpinLedger
from kryten_slots.grid import GridGenerator, WeightedRng
from kryten_slots.kv_store import MemoryKvStore
from kryten_slots.ledger import EconomyLedger
from kryten_slots.multiplier_engine import MultiplierPipeline
from kryten_slots.purchase_limiter import PurchaseLimiter
from kryten_slots.shop_engine import ShopEngine
from kryten_slots.slot_engine import SlotMachine
from kryten_slots.streaks import StreakTracker


# ── Minimal config dict matching SlotsConfig schema ──────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "nats": {"servers": ["nats://localhost:4222"]},
        "channels": [{"domain": "cytu.be", "channel": "testchannel"}],
        "service": {"name": "slots"},
        "database": {"path": ":memory:"},
        "kv": {"backend": "memory"},
        "currency": {"name": "Taler", "symbol": "T", "plural": "Taler"},
        "bot": {"username": "TestBot"},
        "ignored_users": ["IgnoredBot"],
        "ledger": {"backoff_base_ms": 0},
    }
    base.update(overrides)
    return base


async def _no_sleep(_seconds: float) -> None:
    return None


class FlakyKvStore(MemoryKvStore):
    """MemoryKvStore that can fail or silently drop a number of operations."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_gets = 0
        self.fail_puts = 0
        self.drop_puts = 0
        self.fail_readbacks = 0
        self.put_calls = 0

    async def get_entry(self, key: str):
        if self.fail_gets > 0:
            self.fail_gets -= 1
            raise TransientStoreError("get", key, RuntimeError("unavailable"))
        return await super().get_entry(key)

    async def put(self, key: str, value: Any, *, ttl_seconds=None, metadata=None) -> None:
        self.put_calls += 1
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise TransientStoreError("put", key, RuntimeError("unavailable"))
        if self.drop_puts > 0:
            # Accepted but never visible to the next reader.
            self.drop_puts -= 1
            return
        await super().put(key, value, ttl_seconds=ttl_seconds, metadata=metadata)
        if self.fail_readbacks > 0:
            # The write landed but the reader after it cannot see the store.
            self.fail_readbacks -= 1
            self.fail_gets += 1


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> SlotsConfig:
    """Return a parsed SlotsConfig."""
    return SlotsConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_slots.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[SlotsDatabase, None]:
    """Provide an initialized database with temp file."""
    db = SlotsDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def kv() -> FlakyKvStore:
    """In-memory KV store; every failure knob starts disabled."""
    return FlakyKvStore()


@pytest.fixture
def ledger(kv: FlakyKvStore, sample_config: SlotsConfig) -> EconomyLedger:
    return EconomyLedger(kv, sample_config.ledger, logging.getLogger("test"), sleep=_no_sleep)


@pytest.fixture
def effects(ledger: EconomyLedger, sample_config: SlotsConfig) -> EffectStore:
    return EffectStore(ledger, sample_config.buffs, logging.getLogger("test"))


@pytest.fixture
def free_spins(ledger: EconomyLedger) -> FreeSpinLedger:
    return FreeSpinLedger(ledger, logging.getLogger("test"))


@pytest.fixture
def streaks(ledger: EconomyLedger, sample_config: SlotsConfig) -> StreakTracker:
    return StreakTracker(ledger, sample_config.streaks, logging.getLogger("test"))


@pytest.fixture
def pipeline(effects: EffectStore, sample_config: SlotsConfig) -> MultiplierPipeline:
    return MultiplierPipeline(sample_config.buffs, effects, logging.getLogger("test"))


@pytest.fixture
def grid_generator(sample_config: SlotsConfig) -> GridGenerator:
    """Generator on a seeded source so runs are repeatable."""
    rng = WeightedRng(sample_config.symbols.weights, random.Random(1234))
    return GridGenerator(sample_config.symbols, sample_config.buffs, rng)


@pytest.fixture
def slot_machine(
    sample_config: SlotsConfig,
    ledger: EconomyLedger,
    effects: EffectStore,
    free_spins: FreeSpinLedger,
    streaks: StreakTracker,
    pipeline: MultiplierPipeline,
    grid_generator: GridGenerator,
) -> SlotMachine:
    return SlotMachine(
        config=sample_config,
        ledger=ledger,
        effects=effects,
        free_spins=free_spins,
        streaks=streaks,
        pipeline=pipeline,
        grid=grid_generator,
        logger=logging.getLogger("test"),
    )


class BerlinClock:
    """Settable epoch clock. Starts on 2026-03-02 11:00:00 Berlin, whose lucky second is 1."""

    def __init__(self) -> None:
        self.now = berlin_ts(2026, 3, 2, 11, 0, 0)

    def __call__(self) -> float:
        return self.now


def berlin_ts(year: int, month: int, day: int, hour: int, minute: int, second: int) -> float:
    return datetime(year, month, day, hour, minute, second, tzinfo=ZoneInfo("Europe/Berlin")).timestamp()


@pytest.fixture
def clock() -> BerlinClock:
    return BerlinClock()


@pytest.fixture
def bonuses(sample_config: SlotsConfig, ledger: EconomyLedger, clock: BerlinClock) -> BonusEngine:
    return BonusEngine(sample_config, ledger, logging.getLogger("test"), clock=clock)


@pytest.fixture
def bonus_machine(
    sample_config: SlotsConfig,
    ledger: EconomyLedger,
    effects: EffectStore,
    free_spins: FreeSpinLedger,
    streaks: StreakTracker,
    pipeline: MultiplierPipeline,
    grid_generator: GridGenerator,
    bonuses: BonusEngine,
) -> SlotMachine:
    """SlotMachine with insurance and the hourly jackpot wired in."""
    return SlotMachine(
        config=sample_config,
        ledger=ledger,
        effects=effects,
        free_spins=free_spins,
        streaks=streaks,
        pipeline=pipeline,
        grid=grid_generator,
        logger=logging.getLogger("test"),
        bonuses=bonuses,
    )


@pytest.fixture
def limiter(ledger: EconomyLedger) -> PurchaseLimiter:
    """KV-only purchase limiter (no SQLite)."""
    return PurchaseLimiter(ledger, logging.getLogger("test"))


@pytest.fixture
def shop(
    sample_config: SlotsConfig,
    ledger: EconomyLedger,
    effects: EffectStore,
    free_spins: FreeSpinLedger,
    limiter: PurchaseLimiter,
    bonuses: BonusEngine,
) -> ShopEngine:
    return ShopEngine(
        sample_config, ledger, effects, free_spins, limiter, logging.getLogger("test"), bonuses=bonuses,
    )


@pytest.fixture
def notify() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def duels(
    sample_config: SlotsConfig,
    ledger: EconomyLedger,
    grid_generator: GridGenerator,
    notify: AsyncMock,
) -> AsyncGenerator[DuelEngine, None]:
    """DuelEngine with its alarm registry bound."""
    engine = DuelEngine(sample_config, ledger, grid_generator, notify, logging.getLogger("test"))
    registry = DuelAlarmRegistry(ledger, engine.on_timeout, logging.getLogger("test"))
    engine.bind_alarms(registry)
    yield engine
    await registry.stop()


@pytest.fixture
def mock_client() -> MagicMock:
    """Return a mock KrytenClient with async methods."""
    client = MagicMock()
    client.send_chat = AsyncMock(return_value="corr-id-456")
    client.connect = AsyncMock()
    client.run = AsyncMock()
    client.stop = AsyncMock()
    client.subscribe_request_reply = AsyncMock()
    client.kv_get = AsyncMock(return_value=None)
    client.kv_put = AsyncMock()
    return client


@pytest.fixture
def chat_handler(
    sample_config: SlotsConfig,
    mock_client: MagicMock,
    ledger: EconomyLedger,
    slot_machine: SlotMachine,
    effects: EffectStore,
    free_spins: FreeSpinLedger,
    shop: ShopEngine,
    duels: DuelEngine,
    bonuses: BonusEngine,
) -> ChatHandler:
    return ChatHandler(
        config=sample_config,
        client=mock_client,
        ledger=ledger,
        slot_machine=slot_machine,
        effects=effects,
        free_spins=free_spins,
        shop=shop,
        duels=duels,
        logger=logging.getLogger("test"),
        bonuses=bonuses,
    )


# ── Integration fixtures ─────────────────────────────────────

class MockKrytenClient:
    """Mock kryten-py client for integration testing.

    Records sent chat lines and keeps KV buckets in memory.
    """

    def __init__(self) -> None:
        self.sent_chats: list[tuple[str, str]] = []
        self._handlers: dict[str, list] = {}
        self._request_reply_handlers: dict[str, Any] = {}
        self._kv_store: dict[str, dict[str, Any]] = {}

    async def send_chat(
        self, channel: str, message: str, *, domain: str | None = None,
    ) -> str:
        self.sent_chats.append((channel, message))
        return "mock-corr-id"

    async def kv_get(
        self, bucket_name: str, key: str, default: Any = None, parse_json: bool = False,
    ) -> Any:
        return self._kv_store.get(bucket_name, {}).get(key, default)

    async def kv_put(
        self, bucket_name: str, key: str, value: Any, *, as_json: bool = False,
    ) -> None:
        self._kv_store.setdefault(bucket_name, {})[key] = value

    async def connect(self) -> None:
        pass

    async def run(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def subscribe_request_reply(self, subject: str, handler: Any) -> None:
        self._request_reply_handlers[subject] = handler

    async def get_or_create_kv_store(self, bucket_name: str, description: str = "") -> Any:
        bucket = self._kv_store.setdefault(bucket_name, {})
        handle = MagicMock()

        async def _delete(key: str) -> None:
            bucket.pop(key, None)

        async def _keys() -> list[str]:
            return list(bucket)

        handle.delete = _delete
        handle.keys = _keys
        return handle

    def on(self, event_name: str, channel: str | None = None, domain: str | None = None):
        """Match kryten-py's ``on()`` decorator signature."""
        def decorator(func):
            self._handlers.setdefault(event_name, []).append(func)
            return func
        return decorator

    async def fire_event(self, event_name: str, event: Any) -> None:
        """Test helper: simulate an incoming event."""
        for handler in self._handlers.get(event_name, []):
            await handler(event)


@pytest.fixture
def mock_kryten_client() -> MockKrytenClient:
    """Return a MockKrytenClient for integration tests."""
    return MockKrytenClient()
