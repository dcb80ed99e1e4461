"""Free-spin queue — ascending-multiplier credits stored per account.

Stored shape under ``freespins.<account>``::

    [{"multiplier": 1, "count": 2}, {"multiplier": 3, "count": 1}]

Entries are strictly ascending by multiplier and always have count > 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import MalformedStoredState
from .ledger import ABORT, Codec
from .utils import kv_key

if TYPE_CHECKING:
    from .ledger import EconomyLedger


@dataclass(frozen=True)
class FreeSpinEntry:
    multiplier: int
    count: int


@dataclass(frozen=True)
class ConsumeResult:
    used: bool
    multiplier: int | None = None


class FreeSpinQueue:
    """Pure operations over an immutable tuple of entries."""

    @staticmethod
    def parse(raw: Any) -> tuple[FreeSpinEntry, ...]:
        if not isinstance(raw, list):
            raise MalformedStoredState(f"free-spin queue is {type(raw).__name__}, not a list")
        entries = []
        for item in raw:
            if not isinstance(item, dict):
                raise MalformedStoredState("free-spin entry is not an object")
            multiplier, count = item.get("multiplier"), item.get("count")
            if not isinstance(multiplier, int) or not isinstance(count, int):
                raise MalformedStoredState("free-spin entry fields must be integers")
            if multiplier <= 0 or count <= 0:
                raise MalformedStoredState("free-spin entry fields must be positive")
            entries.append(FreeSpinEntry(multiplier, count))
        return FreeSpinQueue.normalize(entries)

    @staticmethod
    def dump(entries: tuple[FreeSpinEntry, ...]) -> list[dict[str, int]]:
        return [{"multiplier": e.multiplier, "count": e.count} for e in entries]

    @staticmethod
    def normalize(entries: list[FreeSpinEntry]) -> tuple[FreeSpinEntry, ...]:
        merged: dict[int, int] = {}
        for e in entries:
            merged[e.multiplier] = merged.get(e.multiplier, 0) + e.count
        return tuple(FreeSpinEntry(m, c) for m, c in sorted(merged.items()) if c > 0)

    @staticmethod
    def award(entries: tuple[FreeSpinEntry, ...], multiplier: int, count: int) -> tuple[FreeSpinEntry, ...]:
        return FreeSpinQueue.normalize([*entries, FreeSpinEntry(multiplier, count)])

    @staticmethod
    def consume_lowest(entries: tuple[FreeSpinEntry, ...]) -> tuple[tuple[FreeSpinEntry, ...], ConsumeResult]:
        if not entries:
            return entries, ConsumeResult(False)
        first, rest = entries[0], entries[1:]
        if first.count > 1:
            return (FreeSpinEntry(first.multiplier, first.count - 1), *rest), ConsumeResult(True, first.multiplier)
        return rest, ConsumeResult(True, first.multiplier)

    @staticmethod
    def total(entries: tuple[FreeSpinEntry, ...]) -> int:
        return sum(e.count for e in entries)


class FreeSpinLedger:
    """Ledger-backed free-spin queue for each account."""

    def __init__(self, ledger: EconomyLedger, logger: logging.Logger) -> None:
        self._ledger = ledger
        self._logger = logger
        self._codec: Codec[tuple[FreeSpinEntry, ...]] = Codec(
            decode=FreeSpinQueue.parse,
            encode=FreeSpinQueue.dump,
            default=tuple,
        )

    def key(self, account: str) -> str:
        return kv_key("freespins", account)

    async def get(self, account: str) -> tuple[FreeSpinEntry, ...]:
        return await self._ledger.read(self.key(account), self._codec)

    async def award(self, account: str, multiplier: int, count: int) -> tuple[FreeSpinEntry, ...]:
        if count <= 0 or multiplier <= 0:
            return await self.get(account)
        result = await self._ledger.compare_and_retry(
            self.key(account),
            lambda entries: FreeSpinQueue.award(entries, multiplier, count),
            self._codec,
        )
        if not result.verified:
            self._logger.warning(
                "Free-spin award %dx%d for %s not verified", count, multiplier, account,
            )
        return result.value

    async def consume_lowest(self, account: str) -> ConsumeResult:
        """Use one spin from the lowest-multiplier entry."""
        outcome: list[ConsumeResult] = []

        def transform(entries: tuple[FreeSpinEntry, ...]) -> tuple[FreeSpinEntry, ...]:
            outcome.clear()
            remaining, consumed = FreeSpinQueue.consume_lowest(entries)
            outcome.append(consumed)
            if not consumed.used:
                return ABORT
            return remaining

        result = await self._ledger.compare_and_retry(self.key(account), transform, self._codec)
        if result.aborted or not result.verified or not outcome:
            return ConsumeResult(False)
        return outcome[0]
