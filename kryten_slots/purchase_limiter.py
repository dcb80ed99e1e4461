"""Weekly purchase caps.

Counters live in KV as ``{"count": n, "week_start": "YYYY-MM-DD"}``. A counter
from an earlier week reads as zero. When the SQLite secondary store is
enabled, increments run as one conditional upsert and the result is mirrored
to KV; otherwise they go through the ledger's optimistic primitive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from .errors import ConditionalUpdateRejected, MalformedStoredState
from .ledger import ABORT, Codec
from .utils import kv_key, now_utc, week_start

if TYPE_CHECKING:
    from .database import SlotsDatabase
    from .ledger import EconomyLedger


@dataclass(frozen=True)
class PurchaseCounter:
    count: int
    week_start: str


@dataclass(frozen=True)
class IncrementResult:
    ok: bool
    count: int
    limit_reached: bool = False


def _parse_counter(raw: Any) -> PurchaseCounter:
    if not isinstance(raw, dict):
        raise MalformedStoredState("purchase counter is not an object")
    count, week = raw.get("count"), raw.get("week_start")
    if not isinstance(count, int) or count < 0 or not isinstance(week, str):
        raise MalformedStoredState("purchase counter has invalid fields")
    return PurchaseCounter(count, week)


class PurchaseLimiter:
    """Tracks how many times an account bought an item this week."""

    def __init__(
        self,
        ledger: EconomyLedger,
        logger: logging.Logger,
        database: SlotsDatabase | None = None,
        timezone: str = "Europe/Berlin",
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._ledger = ledger
        self._logger = logger
        self._db = database
        self._tz = timezone
        self._clock = clock
        self._codec: Codec[PurchaseCounter] = Codec(
            decode=_parse_counter,
            encode=lambda c: {"count": c.count, "week_start": c.week_start},
            default=lambda: PurchaseCounter(0, ""),
        )

    def update_config(self, timezone: str) -> None:
        """Switch the week boundary timezone; takes effect on the next read."""
        self._tz = timezone

    def key(self, account: str, item: str) -> str:
        return kv_key("purchases", item, account)

    def current_week(self) -> str:
        return week_start(self._clock(), self._tz)

    async def get_count(self, account: str, item: str) -> int:
        counter = await self._ledger.read(self.key(account, item), self._codec)
        if counter.week_start != self.current_week():
            return 0
        return counter.count

    async def increment(self, account: str, item: str, limit: int) -> IncrementResult:
        """Count one purchase, unless the weekly ``limit`` is already used up."""
        week = self.current_week()
        if self._db is not None:
            try:
                return await self._increment_atomic(account, item, limit, week)
            except ConditionalUpdateRejected:
                count = await self.get_count(account, item)
                return IncrementResult(False, max(count, limit), limit_reached=True)
            except Exception:
                self._logger.exception(
                    "Atomic purchase increment failed for %s/%s, falling back to KV", account, item,
                )
        return await self._increment_optimistic(account, item, limit, week)

    async def _increment_atomic(self, account: str, item: str, limit: int, week: str) -> IncrementResult:
        count = await self._db.increment_purchase(account, item, week, limit)
        if count is None:
            raise ConditionalUpdateRejected(f"{item} weekly limit {limit} reached for {account}")
        mirrored = await self._ledger.put_raw(
            self.key(account, item), {"count": count, "week_start": week},
        )
        if not mirrored:
            self._logger.warning("Purchase count for %s/%s not mirrored to KV", account, item)
        return IncrementResult(True, count)

    async def _increment_optimistic(self, account: str, item: str, limit: int, week: str) -> IncrementResult:
        def transform(counter: PurchaseCounter) -> PurchaseCounter:
            count = counter.count if counter.week_start == week else 0
            if count >= limit:
                return ABORT
            return PurchaseCounter(count + 1, week)

        result = await self._ledger.compare_and_retry(self.key(account, item), transform, self._codec)
        if result.aborted:
            current = result.value.count if result.value.week_start == week else 0
            return IncrementResult(False, current, limit_reached=True)
        if not result.verified:
            return IncrementResult(False, result.value.count if result.value.week_start == week else 0)
        return IncrementResult(True, result.value.count)
