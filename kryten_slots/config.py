"""Configuration system for kryten-slots.

All Pydantic models are defined here with sensible defaults. The game tables
(symbols, payouts, stakes, streaks, buffs) are frozen: they are loaded once at
startup and injected into the engines as immutable data.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from kryten import KrytenConfig
from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Table(BaseModel):
    """Base for immutable game tables."""

    model_config = ConfigDict(frozen=True)


# ═══════════════════════════════════════════════════════════════
#  Service plumbing
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    enabled: bool = True
    path: str = "slots.db"


class KvConfig(BaseModel):
    backend: str = Field(default="nats", description="'nats' or 'memory'")
    bucket: str = "kryten_slots"


class CurrencyConfig(BaseModel):
    name: str = "Taler"
    symbol: str = "T"
    plural: str = "Taler"


class BotConfig(BaseModel):
    username: str = "SlotsBot"


class CommandsConfig(BaseModel):
    prefix: str = "!"
    rate_limit_per_minute: int = 20


# ═══════════════════════════════════════════════════════════════
#  Game tables
# ═══════════════════════════════════════════════════════════════

class SymbolsConfig(_Table):
    weights: dict[str, int] = Field(default_factory=lambda: {
        "🍒": 24, "🍋": 20, "🍊": 19, "💎": 21, "🍇": 15, "🍉": 11, "⭐": 10,
    })
    special: str = "🦡"
    rare: str = "💎"
    wild: str = "🃏"
    best_wild_symbol: str = "⭐"
    special_base_chance: float = 1 / 150
    special_chance_cap: float = 0.25
    guaranteed_pair_pool: list[str] = Field(
        default_factory=lambda: ["🍒", "🍋", "🍊", "🍇", "🍉", "⭐"],
    )

    @model_validator(mode="after")
    def _check_weights(self) -> SymbolsConfig:
        if not self.weights or any(w <= 0 for w in self.weights.values()):
            raise ValueError("symbols.weights must be a non-empty map of positive weights")
        if not 0 < self.special_chance_cap <= 1:
            raise ValueError("symbols.special_chance_cap must be in (0, 1]")
        return self


class PayoutsConfig(_Table):
    special_triple: int = 15000
    special_pair: int = 2500
    special_single: int = 100
    rare_triple_free_spins: int = 5
    rare_pair_free_spins: int = 1
    triples: dict[str, int] = Field(default_factory=lambda: {
        "⭐": 500, "🍉": 250, "🍇": 150, "🍊": 100, "🍋": 75, "🍒": 50,
    })
    pairs: dict[str, int] = Field(default_factory=lambda: {
        "⭐": 50, "🍉": 25, "🍇": 15, "🍊": 10, "🍋": 8, "🍒": 5,
    })
    default_triple: int = 50
    default_pair: int = 5
    loss_messages: list[str] = Field(default_factory=lambda: [
        "Nothing this time.",
        "So close! Try again.",
        "The reels are not on your side.",
        "No match, the badger is sleeping.",
    ])


class StakesConfig(_Table):
    base_cost: int = 10
    tiers: dict[int, int] = Field(default_factory=lambda: {
        10: 1, 20: 2, 30: 3, 50: 5, 100: 10,
    })
    unlocks: dict[int, str] = Field(default_factory=lambda: {
        20: "slots_20", 30: "slots_30", 50: "slots_50", 100: "slots_100",
    })
    all_in_token: str = "all"
    all_in_unlock: str = "slots_all"
    cooldown_seconds: int = 30
    happy_hour_max_cost: int = 1000


class StreaksConfig(_Table):
    threshold: int = 5
    hot_streak_bonus: int = 500
    comeback_bonus: int = 150
    combo_bonuses: dict[int, int] = Field(default_factory=lambda: {2: 10, 3: 30, 4: 100})
    ttl_days: int = 7
    multiplier_step: float = 0.1
    multiplier_max: float = 3.0
    loss_warning_from: int = 10
    loss_messages: dict[int, str] = Field(default_factory=lambda: {
        10: "10 losses in a row. Maybe take a short break?",
        11: "11 losses. The machine will still be here later.",
        12: "12 losses. Luck tends to come back, but not on command.",
        13: "13 losses. Remember this is just for fun.",
        14: "14 losses. A pause could help.",
        15: "15 losses in a row! Time for a snack?",
        16: "16 losses. Even the badger is worried.",
        17: "17 losses. Statistics are cruel today.",
        18: "18 losses. Consider a breather.",
        19: "19 losses. One more and it is twenty.",
        20: "20 losses in a row. Please take a break.",
    })
    rotating_loss_messages: list[str] = Field(default_factory=lambda: [
        "The losing streak continues. Take a break?",
        "Still no luck. Step away for a bit?",
        "Long streak. The reels don't remember you, fresh start later?",
        "Losses keep piling up. Time out?",
        "That's a lot of spins. Stretch your legs?",
    ])


class BuffsConfig(_Table):
    golden_hour_percent: int = 30
    profit_doubler_floor: int = 50
    lucky_charm_factor: float = 2.0
    locator_factor: float = 3.0
    rage_stack_per_loss: int = 5
    rage_stack_max: int = 100
    affinity_reroll_chance: float = 0.66
    affinity_boost_chance: float = 0.33
    affinity_targets: dict[str, str] = Field(default_factory=lambda: {
        "star_magnet": "⭐", "diamond_rush": "💎",
    })
    ttl_buffer_seconds: int = 60


class LedgerConfig(_Table):
    max_retries: int = 3
    backoff_base_ms: float = 10.0
    starting_balance: int = 100
    max_balance: int = 999_999_999
    bank_account: str = "bank"
    bank_start_balance: int = 444_444


# ═══════════════════════════════════════════════════════════════
#  Shop & duels
# ═══════════════════════════════════════════════════════════════

class ShopItemConfig(_Table):
    id: str
    name: str
    price: int
    kind: str = Field(description="timed | uses | stack | token | free_spins | unlock | insurance")
    grants: str | None = Field(default=None, description="Effect or unlock id; defaults to item id")
    duration_seconds: int = 0
    uses: int = 0
    free_spins: int = 0
    free_spin_multiplier: int = 1
    weekly_limit: int | None = None
    description: str = ""


def _default_shop_items() -> list[ShopItemConfig]:
    timed = [
        ("happy_hour", "Happy Hour", 250, 3600, "Half-price spins"),
        ("lucky_charm", "Lucky Charm", 400, 3600, "Double badger chance"),
        ("golden_hour", "Golden Hour", 500, 3600, "+30% on wins"),
        ("star_magnet", "Star Magnet", 300, 3600, "More stars on the reels"),
        ("diamond_rush", "Diamond Rush", 350, 3600, "More diamonds on the reels"),
        ("profit_doubler", "Profit Doubler", 600, 86400, "Double wins above 50"),
    ]
    items = [
        ShopItemConfig(id=i, name=n, price=p, kind="timed", duration_seconds=d, description=desc)
        for i, n, p, d, desc in timed
    ]
    items += [
        ShopItemConfig(id="rage_mode", name="Rage Mode", price=300, kind="stack",
                       duration_seconds=1800, description="Each loss raises badger chance"),
        ShopItemConfig(id="dachs_locator", name="Badger Locator", price=700, kind="uses",
                       duration_seconds=600, uses=10, description="Triple badger chance for 10 spins"),
        ShopItemConfig(id="guaranteed_pair", name="Guaranteed Pair", price=150, kind="token",
                       description="Next spin has at least a pair"),
        ShopItemConfig(id="wild_card", name="Wild Card", price=250, kind="token",
                       description="Next spin gets a wild"),
        ShopItemConfig(id="win_multiplier", name="Win Multiplier", price=300, kind="token",
                       description="Doubles your next win"),
        ShopItemConfig(id="spin_bundle", name="Spin Bundle", price=400, kind="free_spins",
                       free_spins=10, free_spin_multiplier=1, weekly_limit=3,
                       description="10 free spins"),
        ShopItemConfig(id="dachs_boost", name="Badger Boost", price=500, kind="token",
                       grants="boost:🦡", weekly_limit=1,
                       description="Doubles your next badger win"),
        ShopItemConfig(id="insurance_pack", name="Insurance Pack", price=250, kind="insurance",
                       uses=5, description="Half your stake back on the next 5 losses"),
    ]
    for item_id, name, symbol in (
        ("cherry_boost", "Cherry Boost", "🍒"),
        ("lemon_boost", "Lemon Boost", "🍋"),
        ("orange_boost", "Orange Boost", "🍊"),
        ("grape_boost", "Grape Boost", "🍇"),
        ("melon_boost", "Melon Boost", "🍉"),
        ("star_boost", "Star Boost", "⭐"),
    ):
        items.append(ShopItemConfig(
            id=item_id, name=name, price=50, kind="token", grants=f"boost:{symbol}",
            description=f"Doubles your next {symbol} win",
        ))
    for tier, price in ((20, 500), (30, 1000), (50, 2500), (100, 5000)):
        items.append(ShopItemConfig(
            id=f"slots_{tier}", name=f"Stake {tier}", price=price, kind="unlock",
            description=f"Unlocks !slots {tier}",
        ))
    items.append(ShopItemConfig(
        id="slots_all", name="All-in", price=20000, kind="unlock",
        description="Unlocks free stakes and !slots all",
    ))
    items.append(ShopItemConfig(
        id="daily_boost", name="Daily Boost", price=10000, kind="unlock",
        description="Raises the daily bonus",
    ))
    return items


class ShopConfig(BaseModel):
    enabled: bool = True
    timezone: str = "Europe/Berlin"
    items: list[ShopItemConfig] = Field(default_factory=_default_shop_items)

    def get_item(self, item_id: str) -> ShopItemConfig | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class DuelConfig(BaseModel):
    enabled: bool = True
    min_amount: int = 100
    timeout_seconds: int = 60
    alarm_grace_seconds: int = 2
    symbol_values: dict[str, int] = Field(default_factory=lambda: {
        "🦡": 500, "💎": 100, "⭐": 25, "🍉": 13, "🍇": 8, "🍊": 5, "🍋": 4, "🍒": 3,
    })


class BonusConfig(BaseModel):
    daily_amount: int = 50
    daily_boost_amount: int = 250
    daily_boost_unlock: str = "daily_boost"
    daily_ttl_seconds: int = 25 * 3600
    timezone: str = "Europe/Berlin"
    hourly_jackpot_enabled: bool = True
    hourly_jackpot_amount: int = 100
    insurance_refund_rate: float = Field(default=0.5, ge=0, le=1)
    transfers_enabled: bool = True
    min_transfer: int = 1
    max_transfer: int = 100_000


# ═══════════════════════════════════════════════════════════════
#  Top-level
# ═══════════════════════════════════════════════════════════════

class SlotsConfig(KrytenConfig):
    """Top-level configuration. Extends KrytenConfig (nats, channels, service)."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    kv: KvConfig = Field(default_factory=KvConfig)
    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    bot: BotConfig = Field(default_factory=BotConfig)
    ignored_users: list[str] = Field(default_factory=list)
    symbols: SymbolsConfig = Field(default_factory=SymbolsConfig)
    payouts: PayoutsConfig = Field(default_factory=PayoutsConfig)
    stakes: StakesConfig = Field(default_factory=StakesConfig)
    streaks: StreaksConfig = Field(default_factory=StreaksConfig)
    buffs: BuffsConfig = Field(default_factory=BuffsConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    shop: ShopConfig = Field(default_factory=ShopConfig)
    duel: DuelConfig = Field(default_factory=DuelConfig)
    bonus: BonusConfig = Field(default_factory=BonusConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    # metrics is inherited from KrytenConfig (port, health_path, metrics_path)


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> SlotsConfig:
    """Load and validate YAML config file into SlotsConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return SlotsConfig(**raw)
