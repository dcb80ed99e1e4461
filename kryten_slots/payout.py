"""Payout evaluator — maps a grid to points, free spins and a message.

Only the middle row pays, with one exception: three or more special symbols
anywhere on the grid also hit the jackpot. Wild markers are resolved into a
concrete row before any matching happens.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Sequence

from .grid import MIDDLE_ROW

if TYPE_CHECKING:
    from .config import PayoutsConfig, SymbolsConfig


class PayoutKind(Enum):
    JACKPOT = "jackpot"
    SPECIAL_PAIR = "special_pair"
    SPECIAL_SINGLE = "special_single"
    RARE_TRIPLE = "rare_triple"
    RARE_PAIR = "rare_pair"
    TRIPLE = "triple"
    PAIR = "pair"
    NONE = "none"


@dataclass
class Payout:
    """Evaluator output. ``winning_symbols`` feeds the symbol-boost stage."""

    points: int
    message: str
    free_spins: int
    kind: PayoutKind
    row: list[str]
    winning_symbols: frozenset[str] = field(default_factory=frozenset)
    wild_used: bool = False


def _pair_value(symbol: str, symbols: SymbolsConfig, payouts: PayoutsConfig) -> int:
    if symbol == symbols.special:
        return payouts.special_pair
    if symbol == symbols.rare:
        return 0
    return payouts.pairs.get(symbol, payouts.default_pair)


def resolve_wilds(
    row: Sequence[str],
    symbols: SymbolsConfig,
    payouts: PayoutsConfig,
) -> tuple[list[str], bool]:
    """Replace wild markers with concrete symbols.

    Returns the resolved row and whether any wild was present. The result
    never contains a wild marker.
    """
    wild = symbols.wild
    others = [s for s in row if s != wild]
    wilds = len(row) - len(others)

    if wilds == 0:
        return list(row), False
    if wilds == 3:
        best = symbols.best_wild_symbol
        return [best, best, best], True
    if wilds == 2:
        return [others[0]] * 3, True

    first, second = others
    if first == second:
        return [first] * 3, True
    if _pair_value(first, symbols, payouts) >= _pair_value(second, symbols, payouts):
        return [first, first, second], True
    return [second, second, first], True


def _adjacent_pair(row: Sequence[str]) -> str | None:
    if row[0] == row[1]:
        return row[0]
    if row[1] == row[2]:
        return row[1]
    return None


def evaluate(
    cells: Sequence[str],
    symbols: SymbolsConfig,
    payouts: PayoutsConfig,
    pick: Callable[[Sequence[str]], str] = random.choice,
) -> Payout:
    """Evaluate a 9-cell grid. First matching rule wins.

    ``pick`` chooses the flavor message on a miss; everything else is
    deterministic in the grid.
    """
    row, wild_used = resolve_wilds(cells[MIDDLE_ROW], symbols, payouts)
    suffix = " (🃏 Wild!)" if wild_used else ""
    special = symbols.special
    rare = symbols.rare

    def result(kind: PayoutKind, points: int, message: str, free_spins: int = 0,
               winners: frozenset[str] = frozenset()) -> Payout:
        return Payout(points, message + suffix, free_spins, kind, row, winners, wild_used)

    row_specials = row.count(special)
    grid_specials = row_specials + list(cells[:3]).count(special) + list(cells[6:]).count(special)

    if row_specials == 3 or grid_specials >= 3:
        return result(PayoutKind.JACKPOT, payouts.special_triple,
                      f"{special * 3} JACKPOT!", winners=frozenset({special}))
    if row_specials == 2:
        return result(PayoutKind.SPECIAL_PAIR, payouts.special_pair,
                      f"Double {special}!", winners=frozenset({special}))
    if row_specials == 1:
        return result(PayoutKind.SPECIAL_SINGLE, payouts.special_single,
                      f"A wild {special} appears!", winners=frozenset({special}))

    if row == [rare, rare, rare]:
        n = payouts.rare_triple_free_spins
        return result(PayoutKind.RARE_TRIPLE, 0, f"{rare * 3} {n} free spins!", n,
                      frozenset({rare}))

    pair_symbol = _adjacent_pair(row)
    if pair_symbol == rare:
        n = payouts.rare_pair_free_spins
        return result(PayoutKind.RARE_PAIR, 0, f"{rare * 2} {n} free spin!", n,
                      frozenset({rare}))

    if row[0] == row[1] == row[2]:
        symbol = row[0]
        points = payouts.triples.get(symbol, payouts.default_triple)
        return result(PayoutKind.TRIPLE, points, f"Triple {symbol}!", winners=frozenset({symbol}))

    if pair_symbol is not None:
        points = payouts.pairs.get(pair_symbol, payouts.default_pair)
        return result(PayoutKind.PAIR, points, f"Pair {pair_symbol * 2}!",
                      winners=frozenset({pair_symbol}))

    return result(PayoutKind.NONE, 0, pick(payouts.loss_messages))
