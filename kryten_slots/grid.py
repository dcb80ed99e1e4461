"""Weighted RNG and 3×3 grid generation.

Randomness comes from ``secrets.SystemRandom`` (os.urandom). If the OS source
is unavailable the error propagates to the caller.
"""

from __future__ import annotations

import random
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, Sequence

from .effects import (
    DACHS_LOCATOR,
    GUARANTEED_PAIR,
    LUCKY_CHARM,
    WILD_CARD,
    ActiveEffect,
    LimitedUses,
    StackingPercent,
    TimedDuration,
)

if TYPE_CHECKING:
    from .config import BuffsConfig, SymbolsConfig

GRID_CELLS = 9
MIDDLE_ROW = slice(3, 6)


class WeightedRng:
    """Draws symbols from a fixed discrete distribution."""

    def __init__(self, weights: Mapping[str, int], source: random.Random | None = None) -> None:
        self._source = source or secrets.SystemRandom()
        self._table: list[tuple[str, int]] = []
        cumulative = 0
        for symbol, weight in weights.items():
            cumulative += weight
            self._table.append((symbol, cumulative))
        self._total = cumulative

    def random(self) -> float:
        return self._source.random()

    def chance(self, probability: float) -> bool:
        return self._source.random() < probability

    def choice(self, seq: Sequence[str]) -> str:
        return seq[self._source.randrange(len(seq))]

    def randrange(self, n: int) -> int:
        return self._source.randrange(n)

    def draw(self) -> str:
        roll = self._source.random() * self._total
        for symbol, cumulative in self._table:
            if roll < cumulative:
                return symbol
        return self._table[-1][0]


@dataclass
class GridModifiers:
    """Per-spin inputs to the generator, derived from active effects."""

    special_chance: float
    guaranteed_pair: bool = False
    wild: bool = False
    affinity_targets: tuple[str, ...] = ()


@dataclass
class GridResult:
    cells: list[str]
    applied: set[str] = field(default_factory=set)

    @property
    def middle_row(self) -> list[str]:
        return self.cells[MIDDLE_ROW]

    def rows(self) -> list[list[str]]:
        return [self.cells[0:3], self.cells[3:6], self.cells[6:9]]


def has_pair(row: Sequence[str]) -> bool:
    return row[0] == row[1] or row[1] == row[2] or row[0] == row[2]


def special_chance(
    symbols: SymbolsConfig,
    buffs: BuffsConfig,
    effects: Mapping[str, ActiveEffect],
) -> float:
    """Combine the base special-symbol chance with active boosts, capped."""
    chance = symbols.special_base_chance
    for effect in effects.values():
        if isinstance(effect, StackingPercent):
            chance *= 1 + effect.stack / 100
        elif isinstance(effect, LimitedUses) and effect.effect_id == DACHS_LOCATOR:
            chance *= buffs.locator_factor
        elif isinstance(effect, TimedDuration) and effect.effect_id == LUCKY_CHARM:
            chance *= buffs.lucky_charm_factor
    return min(chance, symbols.special_chance_cap)


class GridGenerator:
    """Builds the 3×3 symbol grid for one spin. Pure apart from the RNG."""

    def __init__(self, symbols: SymbolsConfig, buffs: BuffsConfig, rng: WeightedRng) -> None:
        self._symbols = symbols
        self._buffs = buffs
        self._rng = rng

    def update_config(self, symbols: SymbolsConfig, buffs: BuffsConfig) -> None:
        self._symbols = symbols
        self._buffs = buffs
        self._rng = WeightedRng(symbols.weights, self._rng._source)

    def _cell(self, chance: float) -> str:
        if self._rng.chance(chance):
            return self._symbols.special
        return self._rng.draw()

    def generate(self, modifiers: GridModifiers) -> GridResult:
        cells = [self._cell(modifiers.special_chance) for _ in range(GRID_CELLS)]
        result = GridResult(cells)

        if modifiers.guaranteed_pair and not has_pair(result.middle_row):
            symbol = self._rng.choice(self._symbols.guaranteed_pair_pool)
            cells[3] = cells[4] = symbol
            result.applied.add(GUARANTEED_PAIR)

        if modifiers.wild:
            cells[3 + self._rng.randrange(3)] = self._symbols.wild
            result.applied.add(WILD_CARD)

        for target in modifiers.affinity_targets:
            for i, cell in enumerate(cells):
                if cell in (self._symbols.special, self._symbols.wild, target):
                    continue
                if (
                    self._rng.random() < self._buffs.affinity_reroll_chance
                    and self._rng.random() < self._buffs.affinity_boost_chance
                ):
                    cells[i] = target

        return result

    def fair_row(self) -> list[str]:
        """Three cells at base odds with no effects, used for duels."""
        return [self._cell(self._symbols.special_base_chance) for _ in range(3)]
