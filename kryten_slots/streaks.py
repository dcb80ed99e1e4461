"""Win/loss streaks, combo bonuses, loss warnings and the streak multiplier."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import MalformedStoredState
from .ledger import Codec, verify_exact
from .utils import kv_key

if TYPE_CHECKING:
    from .config import StreaksConfig
    from .ledger import CasResult, EconomyLedger


@dataclass(frozen=True)
class Streak:
    wins: int = 0
    losses: int = 0


@dataclass
class StreakOutcome:
    streak: Streak
    bonus: int = 0
    notes: list[str] | None = None
    warning: str | None = None


def _parse_streak(raw: Any) -> Streak:
    if not isinstance(raw, dict):
        raise MalformedStoredState("streak is not an object")
    wins, losses = raw.get("wins", 0), raw.get("losses", 0)
    if not isinstance(wins, int) or not isinstance(losses, int) or wins < 0 or losses < 0:
        raise MalformedStoredState("streak counters must be non-negative integers")
    return Streak(wins, losses)


def _parse_multiplier(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise MalformedStoredState(f"streak multiplier {raw!r}") from e
    if value < 1.0:
        raise MalformedStoredState(f"streak multiplier {value} below 1.0")
    return value


class StreakTracker:
    """Pure streak bookkeeping plus its ledger-backed storage."""

    def __init__(self, ledger: EconomyLedger, config: StreaksConfig, logger: logging.Logger) -> None:
        self._ledger = ledger
        self._config = config
        self._logger = logger
        self._streak_codec: Codec[Streak] = Codec(
            decode=_parse_streak,
            encode=lambda s: {"wins": s.wins, "losses": s.losses},
            default=Streak,
        )
        self._mult_codec: Codec[float] = Codec(
            decode=_parse_multiplier,
            encode=lambda v: f"{v:.1f}",
            default=lambda: 1.0,
        )

    def update_config(self, config: StreaksConfig) -> None:
        self._config = config

    # ══════════════════════════════════════════════════════════
    #  Pure rules
    # ══════════════════════════════════════════════════════════

    def settle(self, previous: Streak, is_win: bool) -> StreakOutcome:
        """Apply one spin result to ``previous``.

        Hot streak and comeback both reset the streak; combos do not.
        """
        cfg = self._config
        if is_win:
            if previous.wins + 1 == cfg.threshold:
                return StreakOutcome(
                    Streak(), cfg.hot_streak_bonus,
                    [f"🔥 Hot streak! {cfg.threshold} wins in a row +{cfg.hot_streak_bonus}"],
                )
            if previous.losses >= cfg.threshold:
                return StreakOutcome(
                    Streak(), cfg.comeback_bonus,
                    [f"💪 Comeback after {previous.losses} losses +{cfg.comeback_bonus}"],
                )
            streak = Streak(previous.wins + 1, 0)
            combo = cfg.combo_bonuses.get(streak.wins, 0) if 2 <= streak.wins < cfg.threshold else 0
            notes = [f"Combo x{streak.wins} +{combo}"] if combo else []
            return StreakOutcome(streak, combo, notes)

        streak = Streak(0, previous.losses + 1)
        return StreakOutcome(streak, 0, [], self.loss_warning(streak.losses))

    def loss_warning(self, losses: int) -> str | None:
        """Cautionary text for a loss streak; depends on the length only."""
        cfg = self._config
        if losses < cfg.loss_warning_from:
            return None
        if losses in cfg.loss_messages:
            return cfg.loss_messages[losses]
        last = max(cfg.loss_messages) if cfg.loss_messages else cfg.loss_warning_from - 1
        if losses > last and cfg.rotating_loss_messages:
            rotating = cfg.rotating_loss_messages
            return rotating[(losses - last - 1) % len(rotating)]
        return None

    def next_multiplier(self, current: float, is_win: bool) -> float:
        if not is_win:
            return 1.0
        return min(self._config.multiplier_max, round(current + self._config.multiplier_step, 1))

    # ══════════════════════════════════════════════════════════
    #  Storage
    # ══════════════════════════════════════════════════════════

    def streak_key(self, account: str) -> str:
        return kv_key("streak", account)

    def multiplier_key(self, account: str) -> str:
        return kv_key("streakmult", account)

    async def get_streak(self, account: str) -> Streak:
        return await self._ledger.read(self.streak_key(account), self._streak_codec)

    async def save_streak(self, account: str, streak: Streak) -> CasResult[Streak]:
        return await self._ledger.compare_and_retry(
            self.streak_key(account),
            lambda _cur: streak,
            self._streak_codec,
            verify=verify_exact,
            ttl_seconds=self._config.ttl_days * 86400,
        )

    async def get_multiplier(self, account: str) -> float:
        return await self._ledger.read(self.multiplier_key(account), self._mult_codec)

    async def update_multiplier(self, account: str, is_win: bool) -> float:
        """Step the multiplier on a win; remove it entirely on a loss."""
        key = self.multiplier_key(account)
        if not is_win:
            await self._ledger.delete(key)
            return 1.0
        result = await self._ledger.compare_and_retry(
            key,
            lambda cur: self.next_multiplier(cur, True),
            self._mult_codec,
            ttl_seconds=self._config.ttl_days * 86400,
        )
        return result.value
