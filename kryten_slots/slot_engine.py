"""Slot engine — resolves one !slots request into a settlement.

Flow per spin:

1. Fan out the independent reads: balance, effects, free-spin queue, streak,
   streak multiplier, cooldown and the stake unlock.
2. Pick the stake. A queued free spin always wins over the stake token.
3. Claim grid tokens, generate the grid and evaluate the payout. A spin on
   the hour's lucky second adds the hourly jackpot.
4. Run the multiplier pipeline and settle the streak.
   A losing paid spin spends an insurance charge for a partial refund.
5. Write the balance and verify it, then issue the remaining independent
   writes concurrently.
6. Build the chat line and return a SpinSettlement.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from .effects import (
    DACHS_LOCATOR,
    DIAMOND_RUSH,
    GOLDEN_HOUR,
    GUARANTEED_PAIR,
    HAPPY_HOUR,
    LUCKY_CHARM,
    PROFIT_DOUBLER,
    RAGE_MODE,
    STAR_MAGNET,
    WILD_CARD,
    WIN_MULTIPLIER,
    ActiveEffect,
    LimitedUses,
    OneShotToken,
    StackingPercent,
    TimedDuration,
    boost_id,
)
from .errors import MalformedStoredState
from .grid import GridModifiers, special_chance
from .ledger import Codec
from .payout import PayoutKind, evaluate
from .utils import kv_key

if TYPE_CHECKING:
    from .bonus_engine import BonusEngine
    from .config import SlotsConfig
    from .database import SlotsDatabase
    from .effects import EffectStore
    from .free_spins import FreeSpinLedger
    from .grid import GridGenerator, GridResult
    from .ledger import EconomyLedger
    from .multiplier_engine import MultiplierPipeline, PipelineResult
    from .payout import Payout
    from .streaks import StreakOutcome, StreakTracker


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


class SpinOutcome(Enum):
    WIN = "win"
    LOSS = "loss"
    JACKPOT = "jackpot"
    FREE_SPINS = "free_spins"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class StakeSelection:
    cost: int
    multiplier: int
    free_spin: bool = False


@dataclass
class SpinSettlement:
    """Result of one spin request."""

    points_delta: int
    new_balance: int | None
    message: str
    outcome: SpinOutcome
    grid: list[str] = field(default_factory=list)
    payout: Payout | None = None
    pipeline: PipelineResult | None = None
    cost: int = 0
    bonus: int = 0
    refund: int = 0
    verified: bool = True


STAT_FIELDS = ("spins", "wins", "losses", "total_won", "total_lost", "biggest_win")

GENERIC_ERROR = "❌ Spin failed, please try again."


def _parse_stats(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        raise MalformedStoredState("stats is not an object")
    stats = {}
    for name in STAT_FIELDS:
        value = raw.get(name, 0)
        if not isinstance(value, int) or value < 0:
            raise MalformedStoredState(f"stats field {name} is invalid")
        stats[name] = value
    return stats


STATS_CODEC: Codec[dict[str, int]] = Codec(
    decode=_parse_stats,
    encode=dict,
    default=lambda: dict.fromkeys(STAT_FIELDS, 0),
)


def unlock_key(account: str, name: str) -> str:
    return kv_key("unlock", account, name)


def stats_key(account: str) -> str:
    return kv_key("stats", account)


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class SlotMachine:
    """Composes grid, payout, pipeline, streaks and ledger for each spin."""

    def __init__(
        self,
        config: SlotsConfig,
        ledger: EconomyLedger,
        effects: EffectStore,
        free_spins: FreeSpinLedger,
        streaks: StreakTracker,
        pipeline: MultiplierPipeline,
        grid: GridGenerator,
        logger: logging.Logger,
        database: SlotsDatabase | None = None,
        clock=time.time,
        bonuses: BonusEngine | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._effects = effects
        self._free_spins = free_spins
        self._streaks = streaks
        self._pipeline = pipeline
        self._grid = grid
        self._logger = logger
        self._db = database
        self._bonuses = bonuses
        self._clock = clock
        self._symbol = config.currency.symbol

        # Counters for metrics
        self.spins_total = 0
        self.wins_total = 0
        self.jackpots_total = 0
        self.points_paid_total = 0
        self.points_wagered_total = 0

    def update_config(self, new_config: SlotsConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config
        self._symbol = new_config.currency.symbol

    @property
    def tracked_effects(self) -> list[str]:
        """Every effect id a spin may read."""
        ids = [
            HAPPY_HOUR, LUCKY_CHARM, GOLDEN_HOUR, PROFIT_DOUBLER, STAR_MAGNET,
            DIAMOND_RUSH, RAGE_MODE, DACHS_LOCATOR, GUARANTEED_PAIR, WILD_CARD,
            WIN_MULTIPLIER, boost_id(self._config.symbols.special),
        ]
        ids += [boost_id(s) for s in self._config.symbols.weights]
        return ids

    # ══════════════════════════════════════════════════════════
    #  Stake handling
    # ══════════════════════════════════════════════════════════

    def required_unlock(self, token: str | None) -> str | None:
        stakes = self._config.stakes
        if token is None:
            return None
        if token == stakes.all_in_token:
            return stakes.all_in_unlock
        if not token.isdigit():
            return None
        amount = int(token)
        if amount in stakes.tiers:
            return stakes.unlocks.get(amount)
        return stakes.all_in_unlock

    def parse_stake(
        self,
        token: str | None,
        balance: int,
        unlocked: bool,
        active: dict[str, ActiveEffect],
    ) -> StakeSelection | str:
        """Return the stake for ``token`` or an error message."""
        stakes = self._config.stakes
        base = stakes.base_cost
        usage = f"Usage: !slots [{'|'.join(str(t) for t in stakes.tiers)}|{stakes.all_in_token}]"

        if token is None:
            stake = StakeSelection(base, stakes.tiers.get(base, 1))
        elif token == stakes.all_in_token:
            if not unlocked:
                return f"🔒 '!slots {token}' needs the {stakes.all_in_unlock} unlock."
            if balance < base:
                return f"Insufficient funds. Balance: {balance} {self._symbol}."
            stake = StakeSelection(balance, max(1, balance // base))
        elif token.isdigit():
            amount = int(token)
            if amount < base:
                return f"Minimum stake: {base} {self._symbol}."
            if amount in stakes.tiers:
                if not unlocked and stakes.unlocks.get(amount):
                    return f"🔒 Stake {amount} needs the {stakes.unlocks[amount]} unlock."
                stake = StakeSelection(amount, stakes.tiers[amount])
            else:
                if not unlocked:
                    return f"🔒 Free stakes need the {stakes.all_in_unlock} unlock. {usage}"
                stake = StakeSelection(amount, max(1, amount // base))
        else:
            return usage

        if isinstance(active.get(HAPPY_HOUR), TimedDuration) and stake.cost < stakes.happy_hour_max_cost:
            stake.cost = stake.cost // 2

        if stake.cost > balance:
            return f"Insufficient funds. Balance: {balance} {self._symbol}."
        return stake

    # ══════════════════════════════════════════════════════════
    #  Spin
    # ══════════════════════════════════════════════════════════

    async def spin(self, account: str, stake_token: str | None = None, channel: str | None = None) -> SpinSettlement:
        """Play one spin. Never raises; failures become a generic message."""
        try:
            return await self._spin(account, stake_token, channel)
        except Exception:
            self._logger.exception("Spin failed for %s (stake=%r)", account, stake_token)
            return SpinSettlement(0, None, f"@{account} {GENERIC_ERROR}", SpinOutcome.ERROR)

    def _reject(self, account: str, balance: int | None, message: str) -> SpinSettlement:
        return SpinSettlement(0, balance, f"@{account} {message}", SpinOutcome.REJECTED)

    async def _spin(self, account: str, stake_token: str | None, channel: str | None) -> SpinSettlement:
        cfg = self._config
        token = stake_token.strip().lower() if stake_token and stake_token.strip() else None
        needed_unlock = self.required_unlock(token)
        now = self._clock()

        # 1. Independent reads
        balance, active, queue, streak, streak_mult, last_spin, unlocked = await asyncio.gather(
            self._ledger.get_balance(account),
            self._effects.load(account, self.tracked_effects),
            self._free_spins.get(account),
            self._streaks.get_streak(account),
            self._streaks.get_multiplier(account),
            self._ledger.get_raw(kv_key("cooldown", account)),
            self._ledger.get_raw(unlock_key(account, needed_unlock)) if needed_unlock else _none(),
        )

        cooldown = cfg.stakes.cooldown_seconds
        if isinstance(last_spin, (int, float)) and now - last_spin < cooldown:
            remaining = int(cooldown - (now - last_spin)) + 1
            return self._reject(account, balance, f"⏳ Cooldown: {remaining}s remaining.")

        # 2. Stake
        stake: StakeSelection | str | None = None
        if queue:
            consumed = await self._free_spins.consume_lowest(account)
            if consumed.used:
                stake = StakeSelection(0, consumed.multiplier or 1, free_spin=True)
        if stake is None:
            stake = self.parse_stake(token, balance, unlocked is not None, active)
        if isinstance(stake, str):
            return self._reject(account, balance, stake)

        # 3. Grid & payout
        claim_id = uuid.uuid4().hex
        claimed = await self._claim_grid_tokens(account, active, claim_id)
        modifiers = GridModifiers(
            special_chance=special_chance(cfg.symbols, cfg.buffs, active),
            guaranteed_pair=GUARANTEED_PAIR in claimed,
            wild=WILD_CARD in claimed,
            affinity_targets=tuple(
                target for effect_id, target in cfg.buffs.affinity_targets.items()
                if isinstance(active.get(effect_id), TimedDuration)
            ),
        )
        grid = self._grid.generate(modifiers)
        unused = [t for t in claimed if t not in grid.applied]
        if unused:
            await asyncio.gather(*(self._effects.restore_token(account, t) for t in unused))
        payout = evaluate(grid.cells, cfg.symbols, cfg.payouts)
        extra_notes: list[str] = []
        hourly = await self._bonuses.claim_hourly_jackpot() if self._bonuses else 0
        if hourly:
            payout = replace(payout, points=payout.points + hourly)
            extra_notes.append(f"💰 Hourly jackpot +{hourly}")

        # 4. Pipeline & streak
        result = await self._pipeline.apply(
            account, payout, stake.multiplier, active, streak_mult, claim_id,
        )
        is_win = result.points > 0 or result.free_spins > 0
        streak_outcome = self._streaks.settle(streak, is_win)

        refund = 0
        insured = None
        if self._bonuses and not stake.free_spin and stake.cost > 0 and not is_win:
            insured = await self._bonuses.use_insurance(account)
            if insured is not None:
                refund = self._bonuses.insurance_refund(stake.cost)
                extra_notes.append(f"🛡️ Insurance +{refund} ({insured} left)")

        # 5. Balance first, verified
        net = result.points + streak_outcome.bonus + refund - stake.cost
        adjusted = await self._ledger.adjust_balance(account, net)
        if not adjusted.verified:
            consumed_tokens = [*result.consumed_tokens, *grid.applied]
            self._logger.warning(
                "Balance write for %s not verified; restoring tokens %s", account, consumed_tokens,
            )
            if consumed_tokens:
                await asyncio.gather(*(self._effects.restore_token(account, t) for t in consumed_tokens))
            if stake.free_spin:
                await self._free_spins.award(account, stake.multiplier, 1)
            if insured is not None:
                await self._bonuses.add_insurance(account, 1)

        await asyncio.gather(*self._post_writes(
            account, channel, stake, grid, payout, result, streak_outcome, is_win, active, now, refund,
        ))

        outcome = self._classify(payout, result, is_win)
        self.spins_total += 1
        self.points_wagered_total += stake.cost
        self.points_paid_total += result.points + streak_outcome.bonus
        if is_win:
            self.wins_total += 1
        if outcome == SpinOutcome.JACKPOT:
            self.jackpots_total += 1
            self._logger.info("Jackpot for %s: %d points", account, result.points)

        message = self._format(
            account, grid, payout, result, streak_outcome, stake, net, adjusted.value, active, extra_notes,
        )
        return SpinSettlement(
            points_delta=net,
            new_balance=adjusted.value,
            message=message,
            outcome=outcome,
            grid=list(grid.cells),
            payout=payout,
            pipeline=result,
            cost=stake.cost,
            bonus=streak_outcome.bonus,
            refund=refund,
            verified=adjusted.verified,
        )

    async def _claim_grid_tokens(
        self, account: str, active: dict[str, ActiveEffect], claim_id: str,
    ) -> list[str]:
        wanted = [t for t in (GUARANTEED_PAIR, WILD_CARD) if isinstance(active.get(t), OneShotToken)]
        if not wanted:
            return []
        results = await asyncio.gather(
            *(self._effects.claim_token(account, t, claim_id) for t in wanted),
        )
        return [t for t, ok in zip(wanted, results) if ok]

    def _post_writes(
        self,
        account: str,
        channel: str | None,
        stake: StakeSelection,
        grid: GridResult,
        payout: Payout,
        result: PipelineResult,
        streak_outcome: StreakOutcome,
        is_win: bool,
        active: dict[str, ActiveEffect],
        now: float,
        refund: int = 0,
    ) -> list:
        cfg = self._config
        won = result.points + streak_outcome.bonus
        writes = [
            self._streaks.save_streak(account, streak_outcome.streak),
            self._streaks.update_multiplier(account, is_win),
            self._ledger.adjust_bank(stake.cost - won - refund),
            self._ledger.put_raw(kv_key("cooldown", account), now, ttl_seconds=cfg.stakes.cooldown_seconds),
            self._update_stats(account, stake.cost, won, is_win),
        ]
        if result.free_spins > 0:
            writes.append(self._free_spins.award(account, stake.multiplier, result.free_spins))
        if isinstance(active.get(DACHS_LOCATOR), LimitedUses):
            writes.append(self._effects.decrement_uses(account, DACHS_LOCATOR))
        if isinstance(active.get(RAGE_MODE), StackingPercent):
            if is_win:
                writes.append(self._effects.reset_stack(account, RAGE_MODE))
            else:
                writes.append(self._effects.add_stack(
                    account, RAGE_MODE, cfg.buffs.rage_stack_per_loss, cfg.buffs.rage_stack_max,
                ))
        if self._db is not None:
            writes.append(self._log_spin(
                account, channel, stake, result.points, won + refund - stake.cost, grid, payout,
            ))
        return writes

    async def _update_stats(self, account: str, cost: int, won: int, is_win: bool) -> None:
        def transform(stats: dict[str, int]) -> dict[str, int]:
            stats = dict(stats)
            stats["spins"] += 1
            stats["wins" if is_win else "losses"] += 1
            stats["total_won"] += won
            stats["total_lost"] += cost
            stats["biggest_win"] = max(stats["biggest_win"], won)
            return stats

        await self._ledger.compare_and_retry(stats_key(account), transform, STATS_CODEC)

    async def _log_spin(
        self, account: str, channel: str | None, stake: StakeSelection, points: int,
        net: int, grid: GridResult, payout: Payout,
    ) -> None:
        try:
            await self._db.log_spin(
                account, channel, stake.cost, points, net, grid.cells, payout.kind.value, stake.free_spin,
            )
        except Exception:
            self._logger.exception("Failed to log spin for %s", account)

    async def get_stats(self, account: str) -> dict[str, int]:
        return await self._ledger.read(stats_key(account), STATS_CODEC)

    # ══════════════════════════════════════════════════════════
    #  Output
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _classify(payout: Payout, result: PipelineResult, is_win: bool) -> SpinOutcome:
        if payout.kind == PayoutKind.JACKPOT:
            return SpinOutcome.JACKPOT
        if result.free_spins > 0 and result.points == 0:
            return SpinOutcome.FREE_SPINS
        return SpinOutcome.WIN if is_win else SpinOutcome.LOSS

    def _format(
        self,
        account: str,
        grid: GridResult,
        payout: Payout,
        result: PipelineResult,
        streak_outcome: StreakOutcome,
        stake: StakeSelection,
        net: int,
        balance: int,
        active: dict[str, ActiveEffect],
        extra_notes: list[str] | None = None,
    ) -> str:
        row = " ".join(grid.middle_row)
        head = f"@{account} "
        if stake.free_spin:
            head += f"🎁 Free spin (x{stake.multiplier}) "
        parts = [f"{head}[ {row} ] {payout.message} {net:+d} {self._symbol}"]

        bonus_notes = result.notes() + list(streak_outcome.notes or []) + list(extra_notes or [])
        if result.free_spins:
            bonus_notes.append(f"🎁 +{result.free_spins} free spins (x{stake.multiplier})")
        if bonus_notes:
            parts.append(", ".join(bonus_notes))

        buffs = [
            eid for eid, eff in active.items()
            if isinstance(eff, (TimedDuration, LimitedUses, StackingPercent))
        ]
        if buffs:
            parts.append("🛒 " + ", ".join(sorted(buffs)))

        if streak_outcome.warning:
            parts.append(f"⚠️ {streak_outcome.warning}")

        parts.append(f"Balance: {balance} {self._symbol}")
        return " ║ ".join(parts)


async def _none() -> None:
    return None
