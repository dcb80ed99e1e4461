"""Duels — two players each spin a fair row, the better row takes the pot.

Open challenges are stored as ``duel.<challenger>`` with a TTL and backed by
a DuelAlarm that announces the expiry. Accepting or declining cancels the
alarm.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .errors import MalformedStoredState
from .ledger import ABORT, Codec
from .utils import kv_key

if TYPE_CHECKING:
    from .config import SlotsConfig
    from .database import SlotsDatabase
    from .duel_alarm import DuelAlarmRegistry
    from .grid import GridGenerator
    from .ledger import EconomyLedger

Notifier = Callable[[str, str], Awaitable[Any]]


@dataclass
class DuelResult:
    challenger_row: list[str]
    target_row: list[str]
    winner: str | None
    loser: str | None


def _parse_duel(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict) or not {"challenger", "target", "amount"} <= raw.keys():
        raise MalformedStoredState("duel payload is missing fields")
    return raw


_DUEL_CODEC: Codec[dict[str, Any] | None] = Codec(
    decode=_parse_duel,
    encode=lambda d: d,
    default=lambda: None,
)


class DuelEngine:
    """Creates, resolves and expires duel challenges."""

    def __init__(
        self,
        config: SlotsConfig,
        ledger: EconomyLedger,
        grid: GridGenerator,
        notify: Notifier,
        logger: logging.Logger,
        database: SlotsDatabase | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._grid = grid
        self._notify = notify
        self._logger = logger
        self._db = database
        self._symbol = config.currency.symbol
        self._alarms: DuelAlarmRegistry | None = None
        self.duels_played = 0

    def bind_alarms(self, alarms: DuelAlarmRegistry) -> None:
        self._alarms = alarms

    def update_config(self, new_config: SlotsConfig) -> None:
        self._config = new_config
        self._symbol = new_config.currency.symbol

    def key(self, challenger: str) -> str:
        return kv_key("duel", challenger)

    # ══════════════════════════════════════════════════════════
    #  Scoring
    # ══════════════════════════════════════════════════════════

    def score(self, row: list[str]) -> tuple[int, int]:
        """(rank, value): triple beats pair beats high symbol sum."""
        values = self._config.duel.symbol_values
        total = sum(values.get(s, 0) for s in row)
        if row[0] == row[1] == row[2]:
            return 2, total
        if row[0] == row[1] or row[1] == row[2] or row[0] == row[2]:
            return 1, total
        return 0, total

    def play(self, challenger: str, target: str) -> DuelResult:
        c_row, t_row = self._grid.fair_row(), self._grid.fair_row()
        c_score, t_score = self.score(c_row), self.score(t_row)
        if c_score > t_score:
            return DuelResult(c_row, t_row, challenger, target)
        if t_score > c_score:
            return DuelResult(c_row, t_row, target, challenger)
        return DuelResult(c_row, t_row, None, None)

    # ══════════════════════════════════════════════════════════
    #  Commands
    # ══════════════════════════════════════════════════════════

    async def find_for_target(self, target: str) -> dict[str, Any] | None:
        for key in await self._ledger.list_keys(kv_key("duel") + "."):
            duel = await self._ledger.get_raw(key)
            if isinstance(duel, dict) and duel.get("target") == target and not duel.get("claimed_by"):
                return duel
        return None

    async def create(self, challenger: str, target: str, amount_token: str, channel: str | None) -> str:
        cfg = self._config.duel
        if not cfg.enabled:
            return "Duels are currently disabled."
        target = target.strip().lstrip("@").lower()
        if not target or not amount_token.isdigit():
            return f"Usage: !duel <user> <amount> (min {cfg.min_amount} {self._symbol})"
        amount = int(amount_token)
        if amount < cfg.min_amount:
            return f"Minimum duel stake: {cfg.min_amount} {self._symbol}."
        if target == challenger:
            return "You can't duel yourself."

        existing, c_balance, t_balance = await asyncio.gather(
            self._ledger.get_raw(self.key(challenger)),
            self._ledger.get_balance(challenger),
            self._ledger.get_balance(target),
        )
        if existing:
            return "You already have an open duel."
        if c_balance < amount:
            return f"Insufficient funds. Balance: {c_balance} {self._symbol}."
        if t_balance < amount:
            return f"{target} can't cover {amount} {self._symbol}."

        payload = {
            "challenger": challenger,
            "target": target,
            "amount": amount,
            "channel": channel,
            "created_at": time.time(),
        }
        if not await self._ledger.put_raw(self.key(challenger), payload, ttl_seconds=cfg.timeout_seconds):
            return "❌ Could not create the duel, please try again."
        if self._alarms is not None:
            await self._alarms.get(challenger).schedule_timeout(
                payload, (cfg.timeout_seconds + cfg.alarm_grace_seconds) * 1000,
            )
        self._logger.info("Duel %s → %s for %d", challenger, target, amount)
        return (
            f"⚔️ {challenger} challenges {target} to a duel for {amount} {self._symbol}! "
            f"{target}: !accept or !decline within {cfg.timeout_seconds}s."
        )

    async def _claim(self, duel: dict[str, Any]) -> bool:
        claim_id = uuid.uuid4().hex

        def transform(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None or current.get("claimed_by"):
                return ABORT
            return {**current, "claimed_by": claim_id}

        key = self.key(duel["challenger"])
        result = await self._ledger.compare_and_retry(key, transform, _DUEL_CODEC)
        if result.aborted or not result.verified or not result.value:
            return False
        if result.value.get("claimed_by") != claim_id:
            return False
        await self._ledger.delete(key)
        if self._alarms is not None:
            await self._alarms.get(duel["challenger"]).cancel_timeout()
        return True

    async def accept(self, target: str, channel: str | None) -> str:
        duel = await self.find_for_target(target)
        if duel is None or not await self._claim(duel):
            return "You have no open duel."

        challenger, amount = duel["challenger"], int(duel["amount"])
        c_balance, t_balance = await asyncio.gather(
            self._ledger.get_balance(challenger), self._ledger.get_balance(target),
        )
        if c_balance < amount or t_balance < amount:
            return f"Duel cancelled: someone can no longer cover {amount} {self._symbol}."

        result = self.play(challenger, target)
        self.duels_played += 1
        c_text, t_text = "".join(result.challenger_row), "".join(result.target_row)

        won = 0
        if result.winner is not None:
            # The winner only gets what actually left the loser's balance.
            debit = await self._ledger.adjust_balance(result.loser, -amount)
            if debit.verified and debit.previous is not None:
                won = debit.previous - debit.value
            if won > 0:
                await self._ledger.adjust_balance(result.winner, won)
            else:
                self._logger.warning("Duel debit of %s not applied; no payout", result.loser)
        if self._db is not None:
            try:
                await self._db.log_duel(
                    channel, challenger, target, amount, result.winner,
                    result.challenger_row, result.target_row,
                )
            except Exception:
                self._logger.exception("Failed to log duel %s vs %s", challenger, target)

        head = f"⚔️ {challenger} [ {c_text} ] vs {target} [ {t_text} ]"
        if result.winner is None:
            return f"{head} → Draw! Nobody loses anything."
        if won == 0:
            return f"{head} → {result.winner} wins, but the payout failed."
        return f"{head} → {result.winner} wins {won} {self._symbol}!"

    async def decline(self, target: str) -> str:
        duel = await self.find_for_target(target)
        if duel is None or not await self._claim(duel):
            return "You have no open duel."
        return f"🏳️ {target} declined the duel from {duel['challenger']}."

    async def on_timeout(self, payload: dict[str, Any]) -> None:
        """Alarm callback: drop the expired challenge and announce it."""
        challenger = payload.get("challenger", "?")
        await self._ledger.delete(self.key(challenger))
        channel = payload.get("channel")
        if channel:
            await self._notify(
                channel,
                f"⏰ The duel {challenger} vs {payload.get('target', '?')} expired.",
            )
