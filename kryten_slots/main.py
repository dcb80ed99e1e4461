"""Service orchestrator — SlotsApp.

Follows the canonical kryten-py microservice pattern:
config → DB init → build engines → register handlers → connect → KV
→ metrics → command handler → run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from kryten import KrytenClient

from . import __version__
from .bonus_engine import BonusEngine
from .chat_handler import ChatHandler
from .command_handler import CommandHandler
from .config import SlotsConfig, load_config
from .database import SlotsDatabase
from .duel_alarm import DuelAlarmRegistry
from .duel_engine import DuelEngine
from .effects import EffectStore
from .free_spins import FreeSpinLedger
from .grid import GridGenerator, WeightedRng
from .kv_store import KeyValueStore, MemoryKvStore, NatsKvStore
from .ledger import EconomyLedger
from .metrics_server import SlotsMetricsServer
from .multiplier_engine import MultiplierPipeline
from .purchase_limiter import PurchaseLimiter
from .shop_engine import ShopEngine
from .slot_engine import SlotMachine
from .streaks import StreakTracker


class SlotsApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("slots")

        # Components (initialized in start())
        self.config: SlotsConfig | None = None
        self.client: KrytenClient | None = None
        self.db: SlotsDatabase | None = None
        self.kv: KeyValueStore | None = None
        self.ledger: EconomyLedger | None = None
        self.effects: EffectStore | None = None
        self.free_spins: FreeSpinLedger | None = None
        self.streaks: StreakTracker | None = None
        self.grid: GridGenerator | None = None
        self.pipeline: MultiplierPipeline | None = None
        self.limiter: PurchaseLimiter | None = None
        self.bonuses: BonusEngine | None = None
        self.slot_machine: SlotMachine | None = None
        self.shop: ShopEngine | None = None
        self.duels: DuelEngine | None = None
        self.duel_alarms: DuelAlarmRegistry | None = None
        self.chat_handler: ChatHandler | None = None
        self.command_handler: CommandHandler | None = None
        self.metrics_server: SlotsMetricsServer | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._counter_persistence_task: asyncio.Task | None = None

        # Counters (for metrics)
        self.events_processed: int = 0
        self.commands_processed: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ------------------------------------------------------------------
    # Metrics counter persistence (NATS KV)
    # ------------------------------------------------------------------
    _COUNTERS_KV_BUCKET = "kryten_slots_state"
    _COUNTERS_KV_KEY = "counters"
    _COUNTERS_SAVE_INTERVAL = 300  # seconds (5 minutes)
    _COUNTER_NAMES = {
        "spins_total": "slot_machine",
        "wins_total": "slot_machine",
        "jackpots_total": "slot_machine",
        "points_paid_total": "slot_machine",
        "points_wagered_total": "slot_machine",
        "duels_played": "duels",
        "purchases_total": "shop",
        "dailies_claimed": "bonuses",
        "transfers_total": "bonuses",
        "hourly_jackpots_total": "bonuses",
        "insurance_used_total": "bonuses",
    }

    async def _save_counters(self) -> None:
        """Persist volatile metrics counters to NATS KV."""
        data = {
            name: getattr(getattr(self, owner), name, 0)
            for name, owner in self._COUNTER_NAMES.items()
        }
        data["events_processed"] = self.events_processed
        try:
            await self.client.kv_put(
                self._COUNTERS_KV_BUCKET, self._COUNTERS_KV_KEY, data, as_json=True,
            )
            self.logger.debug("Persisted metrics counters to KV")
        except Exception:
            self.logger.exception("Failed to persist metrics counters")

    async def _restore_counters(self) -> None:
        """Restore volatile metrics counters from NATS KV on startup."""
        try:
            data = await self.client.kv_get(
                self._COUNTERS_KV_BUCKET, self._COUNTERS_KV_KEY, default={}, parse_json=True,
            )
            if not data:
                self.logger.info("No persisted counters found, starting fresh")
                return
            for name, owner in self._COUNTER_NAMES.items():
                if name in data:
                    setattr(getattr(self, owner), name, int(data[name]))
            self.events_processed = int(data.get("events_processed", 0))
            self.logger.info("Restored metrics counters from KV: %s", data)
        except Exception:
            self.logger.exception("Failed to restore metrics counters from KV")

    async def _counter_persistence_loop(self) -> None:
        """Periodically save counters to KV."""
        try:
            while True:
                await asyncio.sleep(self._COUNTERS_SAVE_INTERVAL)
                await self._save_counters()
                if self.chat_handler:
                    self.chat_handler.cleanup()
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def build_components(self, kv: KeyValueStore) -> None:
        """Create every engine on top of ``kv``. Needs self.config and self.client."""
        cfg = self.config
        self.kv = kv
        self.ledger = EconomyLedger(kv, cfg.ledger, logging.getLogger("slots.ledger"))
        self.effects = EffectStore(self.ledger, cfg.buffs, self.logger)
        self.free_spins = FreeSpinLedger(self.ledger, self.logger)
        self.streaks = StreakTracker(self.ledger, cfg.streaks, self.logger)
        self.limiter = PurchaseLimiter(self.ledger, self.logger, self.db, cfg.shop.timezone)
        self.grid = GridGenerator(cfg.symbols, cfg.buffs, WeightedRng(cfg.symbols.weights))
        self.pipeline = MultiplierPipeline(cfg.buffs, self.effects, self.logger)
        self.bonuses = BonusEngine(cfg, self.ledger, logging.getLogger("slots.bonus"))
        self.slot_machine = SlotMachine(
            config=cfg,
            ledger=self.ledger,
            effects=self.effects,
            free_spins=self.free_spins,
            streaks=self.streaks,
            pipeline=self.pipeline,
            grid=self.grid,
            logger=self.logger,
            database=self.db,
            bonuses=self.bonuses,
        )
        self.shop = ShopEngine(
            cfg, self.ledger, self.effects, self.free_spins, self.limiter, self.logger, bonuses=self.bonuses,
        )
        self.duels = DuelEngine(
            cfg, self.ledger, self.grid, self._send_chat, logging.getLogger("slots.duel"), self.db,
        )
        self.duel_alarms = DuelAlarmRegistry(
            self.ledger, self.duels.on_timeout, logging.getLogger("slots.duel"),
        )
        self.duels.bind_alarms(self.duel_alarms)
        self.chat_handler = ChatHandler(
            config=cfg,
            client=self.client,
            ledger=self.ledger,
            slot_machine=self.slot_machine,
            effects=self.effects,
            free_spins=self.free_spins,
            shop=self.shop,
            duels=self.duels,
            logger=logging.getLogger("slots.chat"),
            bonuses=self.bonuses,
        )

    def reload_config(self) -> SlotsConfig:
        """Re-read the config file and hand the new tables to every engine.

        Validation errors propagate and leave the running config untouched.
        The KV backend, database and NATS settings need a restart.
        """
        new_config = load_config(str(self.config_path))
        old_config = self.config
        self.config = new_config

        self.ledger.update_config(new_config.ledger)
        self.effects.update_config(new_config.buffs)
        self.streaks.update_config(new_config.streaks)
        self.pipeline.update_config(new_config.buffs)
        self.grid.update_config(new_config.symbols, new_config.buffs)
        self.limiter.update_config(new_config.shop.timezone)
        self.bonuses.update_config(new_config)
        self.slot_machine.update_config(new_config)
        self.shop.update_config(new_config)
        self.duels.update_config(new_config)
        self.chat_handler.update_config(new_config)

        if old_config and new_config.symbols.weights != old_config.symbols.weights:
            self.logger.info(
                "Symbol weights changed: %s → %s",
                old_config.symbols.weights, new_config.symbols.weights,
            )
        self.logger.info("Config reloaded from %s", self.config_path)
        return new_config

    async def _send_chat(self, channel: str, message: str) -> None:
        if self.client is not None:
            await self.client.send_chat(channel, message)

    async def start(self) -> None:
        """Start the slots service — canonical kryten-py sequence."""
        self.logger.info("Starting kryten-slots...")
        self._start_time = time.time()

        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d channel(s)", len(self.config.channels))

        # 2. Initialize database
        if self.config.database.enabled:
            self.db = SlotsDatabase(self.config.database.path, self.logger)
            await self.db.initialize()
            self.logger.info("Database initialized: %s", self.config.database.path)

        # 3. Create KrytenClient and engines
        self.client = KrytenClient(self.config)
        if self.config.kv.backend == "memory":
            kv: KeyValueStore = MemoryKvStore()
            self.logger.warning("Using in-memory KV store; state is lost on restart")
        else:
            kv = NatsKvStore(self.client, self.config.kv.bucket, logging.getLogger("slots.kv"))
        self.build_components(kv)

        # 4. Register event handlers BEFORE connect
        @self.client.on("chatmsg")
        async def handle_chatmsg(event):
            try:
                self.events_processed += 1
                await self.chat_handler.handle_chat(event)
            except Exception:
                self.logger.exception("chatmsg handler error for %s", getattr(event, "username", "?"))

        # 5. Connect to NATS
        await self.client.connect()
        self.logger.info("Connected to NATS")

        # 5b. Open KV buckets and restore state
        if isinstance(kv, NatsKvStore):
            await kv.open()
        await self.client.get_or_create_kv_store(
            self._COUNTERS_KV_BUCKET,
            description="kryten-slots volatile metrics counters",
        )
        await self._restore_counters()
        await self.duel_alarms.restore()

        self._counter_persistence_task = asyncio.create_task(
            self._counter_persistence_loop(),
        )

        # 6. Start metrics server
        metrics_port = self.config.metrics.port if self.config.metrics else 28290
        self.metrics_server = SlotsMetricsServer(self, port=metrics_port)
        await self.metrics_server.start()
        self.logger.info("Metrics server started on port %d", metrics_port)

        # 7. Start command handler
        self.command_handler = CommandHandler(self, self.client, logging.getLogger("slots.command"))
        await self.command_handler.connect()
        self.logger.info("Command handler ready on kryten.slots.command")

        # 8. Mark running
        self._running = True
        self.logger.info("kryten-slots started successfully (v%s)", __version__)

        # 9. Block on client event loop
        await self.client.run()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            return
        self.logger.info("Shutting down kryten-slots...")
        self._running = False

        if self._counter_persistence_task:
            self._counter_persistence_task.cancel()
            try:
                await self._counter_persistence_task
            except asyncio.CancelledError:
                pass
        try:
            await self._save_counters()
            self.logger.info("Metrics counters saved on shutdown")
        except Exception:
            self.logger.exception("Failed to save counters on shutdown")

        if self.duel_alarms:
            await self.duel_alarms.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.client:
            await self.client.stop()

        self.logger.info("kryten-slots stopped.")
