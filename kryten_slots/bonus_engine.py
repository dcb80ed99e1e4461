"""Bonus engine — daily bonus, player transfers, insurance and the hourly jackpot.

All state lives in the KV store behind the economy ledger:

- ``daily.<account>``: local date of the last daily claim (expires after a day)
- ``insurance.<account>``: remaining insurance charges
- ``jackpot.<day>-<month>-<hour>``: claim marker for that hour's jackpot
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from .errors import MalformedStoredState
from .ledger import ABORT, Codec, int_codec, verify_direction
from .slot_engine import unlock_key
from .utils import kv_key, normalize_username

if TYPE_CHECKING:
    from .config import SlotsConfig
    from .ledger import EconomyLedger


def _parse_marker(raw: Any) -> str:
    if not isinstance(raw, str):
        raise MalformedStoredState(f"expected string marker, got {type(raw).__name__}")
    return raw


MARKER_CODEC: Codec[str] = Codec(decode=_parse_marker, encode=str, default=lambda: "")
INSURANCE_CODEC = int_codec(0, 0)


def daily_key(account: str) -> str:
    return kv_key("daily", account)


def insurance_key(account: str) -> str:
    return kv_key("insurance", account)


def lucky_second(local: datetime) -> int:
    """Second of ``local``'s hour that pays the hourly jackpot."""
    seed = local.day * 100 + local.month * 10 + local.hour
    return seed % 60


class BonusEngine:
    """Economy extras that sit next to the slot machine."""

    def __init__(
        self,
        config: SlotsConfig,
        ledger: EconomyLedger,
        logger: logging.Logger,
        clock=time.time,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._logger = logger
        self._clock = clock
        self._symbol = config.currency.symbol

        # Counters for metrics
        self.dailies_claimed = 0
        self.transfers_total = 0
        self.hourly_jackpots_total = 0
        self.insurance_used_total = 0

    def update_config(self, new_config: SlotsConfig) -> None:
        self._config = new_config
        self._symbol = new_config.currency.symbol

    def _local_now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), ZoneInfo(self._config.bonus.timezone))

    # ══════════════════════════════════════════════════════════
    #  Daily bonus
    # ══════════════════════════════════════════════════════════

    async def claim_daily(self, account: str) -> str:
        cfg = self._config.bonus
        today = self._local_now().date().isoformat()

        claim = await self._ledger.compare_and_retry(
            daily_key(account),
            lambda last: ABORT if last == today else today,
            MARKER_CODEC,
            ttl_seconds=cfg.daily_ttl_seconds,
        )
        if claim.aborted:
            return f"@{account} You already claimed your daily bonus today. Come back tomorrow!"
        if not claim.verified:
            self._logger.warning("Daily claim for %s not verified", account)
            return f"@{account} ❌ Daily bonus failed, please try again."

        boosted = await self._ledger.get_raw(unlock_key(account, cfg.daily_boost_unlock)) is not None
        amount = cfg.daily_boost_amount if boosted else cfg.daily_amount
        credit = await self._ledger.adjust_balance(account, amount)
        if not credit.verified:
            # Free the day again so the player can retry.
            self._logger.warning("Daily credit for %s not verified; releasing claim", account)
            await self._ledger.delete(daily_key(account))
            return f"@{account} ❌ Daily bonus failed, please try again."

        self.dailies_claimed += 1
        self._logger.info("%s claimed daily bonus of %d", account, amount)
        return f"@{account} 🎁 Daily bonus: +{amount} {self._symbol}. Balance: {credit.value} {self._symbol}."

    # ══════════════════════════════════════════════════════════
    #  Transfers
    # ══════════════════════════════════════════════════════════

    async def transfer(self, sender: str, target_token: str, amount_token: str) -> str:
        cfg = self._config.bonus
        if not cfg.transfers_enabled:
            return "Transfers are not enabled."

        target = normalize_username(target_token)
        try:
            amount = int(amount_token)
        except ValueError:
            return "Amount must be a whole number."
        if amount < cfg.min_transfer or amount > cfg.max_transfer:
            return f"Transfers must be between {cfg.min_transfer} and {cfg.max_transfer} {self._symbol}."
        if not target or target == sender:
            return "You can't transfer to yourself."
        ignored = {normalize_username(u) for u in self._config.ignored_users}
        if target in ignored or target == self._config.ledger.bank_account:
            return "That user is not part of the economy."
        if await self._ledger.get_raw(self._ledger.balance_key(target)) is None:
            return f"User '{target}' doesn't have an account yet."

        debit = await self._ledger.compare_and_retry(
            self._ledger.balance_key(sender),
            lambda cur: ABORT if cur < amount else cur - amount,
            int_codec(self._config.ledger.starting_balance, 0, self._config.ledger.max_balance),
            verify=verify_direction,
        )
        if debit.aborted:
            return f"Insufficient funds. Balance: {debit.value} {self._symbol}."
        if not debit.verified:
            self._logger.warning("Transfer debit %s -> %s not verified", sender, target)
            return "❌ Transfer failed, please try again."

        credit = await self._ledger.adjust_balance(target, amount)
        received = credit.value - credit.previous if credit.previous is not None else 0
        if not credit.verified:
            received = 0
        if received < amount:
            # Receiver capped or write failed; return what did not arrive.
            self._logger.warning(
                "Transfer %s -> %s delivered %d of %d; refunding rest", sender, target, received, amount,
            )
            await self._ledger.adjust_balance(sender, amount - received)
            if received == 0:
                return "❌ Transfer failed, please try again."

        self.transfers_total += 1
        self._logger.info("%s transferred %d to %s", sender, received, target)
        return f"💸 Sent {received} {self._symbol} to @{target}."

    # ══════════════════════════════════════════════════════════
    #  Insurance
    # ══════════════════════════════════════════════════════════

    async def get_insurance(self, account: str) -> int:
        return await self._ledger.read(insurance_key(account), INSURANCE_CODEC)

    async def add_insurance(self, account: str, count: int) -> bool:
        result = await self._ledger.compare_and_retry(
            insurance_key(account), lambda cur: cur + count, INSURANCE_CODEC, verify=verify_direction,
        )
        return result.verified

    async def use_insurance(self, account: str) -> int | None:
        """Spend one charge. Returns the charges left, or None when nothing was spent."""
        result = await self._ledger.compare_and_retry(
            insurance_key(account),
            lambda cur: ABORT if cur <= 0 else cur - 1,
            INSURANCE_CODEC,
            verify=verify_direction,
        )
        if result.aborted or not result.verified:
            return None
        self.insurance_used_total += 1
        return result.value

    def insurance_refund(self, cost: int) -> int:
        return int(cost * self._config.bonus.insurance_refund_rate)

    # ══════════════════════════════════════════════════════════
    #  Hourly jackpot
    # ══════════════════════════════════════════════════════════

    async def claim_hourly_jackpot(self) -> int:
        """Return the jackpot amount when this spin lands on the hour's lucky second."""
        cfg = self._config.bonus
        if not cfg.hourly_jackpot_enabled:
            return 0
        local = self._local_now()
        if local.second != lucky_second(local):
            return 0

        marker = f"{local.day}-{local.month}-{local.hour}"
        claim = await self._ledger.compare_and_retry(
            kv_key("jackpot", marker),
            lambda claimed: ABORT if claimed else "claimed",
            MARKER_CODEC,
            ttl_seconds=3600,
        )
        if claim.aborted or not claim.verified:
            return 0
        self.hourly_jackpots_total += 1
        self._logger.info("Hourly jackpot %s claimed", marker)
        return cfg.hourly_jackpot_amount
