"""Multiplier pipeline — ordered buff stacking over the evaluator's points.

Stages, in order, each applied only while the running total is positive:

    stake multiplier → win-multiplier token (×2) → symbol-boost token (×2)
    → golden hour (+30%) → profit doubler (×2 above the floor)
    → streak multiplier

Free spins awarded by the evaluator bypass every stage; they are queued at
the spin's stake multiplier by the orchestrator.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, NamedTuple

from .effects import (
    GOLDEN_HOUR,
    PROFIT_DOUBLER,
    WIN_MULTIPLIER,
    ActiveEffect,
    OneShotToken,
    TimedDuration,
    boost_id,
)

if TYPE_CHECKING:
    from .config import BuffsConfig
    from .effects import EffectStore
    from .payout import Payout


class AppliedStage(NamedTuple):
    source: str  # e.g. "stake", "win_multiplier", "boost:⭐", "golden_hour", "streak"
    before: int
    after: int


@dataclass
class PipelineResult:
    points: int
    free_spins: int = 0
    stages: list[AppliedStage] = field(default_factory=list)
    consumed_tokens: list[str] = field(default_factory=list)

    def notes(self) -> list[str]:
        labels = {
            WIN_MULTIPLIER: "🎯 Win x2",
            GOLDEN_HOUR: "✨ Golden Hour",
            PROFIT_DOUBLER: "💰 Profit x2",
        }
        out = []
        for stage in self.stages:
            if stage.source == "stake":
                continue
            if stage.source.startswith("boost:"):
                out.append(f"{stage.source[6:]} Boost x2")
            elif stage.source == "streak":
                out.append(f"📈 Streak x{stage.after / max(stage.before, 1):.1f}")
            else:
                out.append(labels.get(stage.source, stage.source))
        return out


class MultiplierPipeline:
    """Applies active buffs to a payout, consuming one-shot tokens."""

    def __init__(self, config: BuffsConfig, effects: EffectStore, logger: logging.Logger) -> None:
        self._config = config
        self._effects = effects
        self._logger = logger

    def update_config(self, config: BuffsConfig) -> None:
        self._config = config

    async def _consume(
        self,
        account: str,
        effect_id: str,
        active: Mapping[str, ActiveEffect],
        claim_id: str,
        result: PipelineResult,
    ) -> bool:
        if not isinstance(active.get(effect_id), OneShotToken):
            return False
        if not await self._effects.claim_token(account, effect_id, claim_id):
            self._logger.info("Token %s for %s was already used", effect_id, account)
            return False
        result.consumed_tokens.append(effect_id)
        return True

    def _stage(self, result: PipelineResult, source: str, after: int) -> None:
        result.stages.append(AppliedStage(source, result.points, after))
        result.points = after

    async def apply(
        self,
        account: str,
        payout: Payout,
        stake_multiplier: int,
        active: Mapping[str, ActiveEffect],
        streak_multiplier: float,
        claim_id: str,
    ) -> PipelineResult:
        result = PipelineResult(points=payout.points, free_spins=payout.free_spins)
        if result.points <= 0:
            return result

        self._stage(result, "stake", result.points * stake_multiplier)

        if await self._consume(account, WIN_MULTIPLIER, active, claim_id, result):
            self._stage(result, WIN_MULTIPLIER, result.points * 2)

        for symbol in sorted(payout.winning_symbols):
            effect_id = boost_id(symbol)
            if await self._consume(account, effect_id, active, claim_id, result):
                self._stage(result, effect_id, result.points * 2)

        if isinstance(active.get(GOLDEN_HOUR), TimedDuration):
            pct = self._config.golden_hour_percent
            self._stage(result, GOLDEN_HOUR, result.points * (100 + pct) // 100)

        if (
            isinstance(active.get(PROFIT_DOUBLER), TimedDuration)
            and result.points > self._config.profit_doubler_floor
        ):
            self._stage(result, PROFIT_DOUBLER, result.points * 2)

        if streak_multiplier > 1.0:
            self._stage(result, "streak", math.floor(result.points * streak_multiplier))

        return result
