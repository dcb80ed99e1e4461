"""Shop engine — sells buffs, tokens, free-spin bundles, insurance and stake unlocks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .effects import OneShotToken
from .slot_engine import unlock_key

if TYPE_CHECKING:
    from .bonus_engine import BonusEngine
    from .config import ShopItemConfig, SlotsConfig
    from .effects import EffectStore
    from .free_spins import FreeSpinLedger
    from .ledger import EconomyLedger
    from .purchase_limiter import PurchaseLimiter


class ShopEngine:
    """Validates and executes purchases."""

    def __init__(
        self,
        config: SlotsConfig,
        ledger: EconomyLedger,
        effects: EffectStore,
        free_spins: FreeSpinLedger,
        limiter: PurchaseLimiter,
        logger: logging.Logger,
        bonuses: BonusEngine | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._effects = effects
        self._bonuses = bonuses
        self._free_spins = free_spins
        self._limiter = limiter
        self._logger = logger
        self._symbol = config.currency.symbol
        self.purchases_total = 0

    def update_config(self, new_config: SlotsConfig) -> None:
        self._config = new_config
        self._symbol = new_config.currency.symbol

    def catalog(self) -> str:
        items = ", ".join(f"{i.id} ({i.price})" for i in self._config.shop.items)
        return f"🛒 Shop: {items}. Buy with !buy <item>."

    async def _grant(self, account: str, item: ShopItemConfig) -> bool:
        target = item.grants or item.id
        if item.kind == "timed":
            return await self._effects.grant_timed(account, target, item.duration_seconds)
        if item.kind == "uses":
            return await self._effects.grant_uses(account, target, item.uses, item.duration_seconds)
        if item.kind == "stack":
            return await self._effects.grant_stack(account, target, item.duration_seconds)
        if item.kind == "token":
            return await self._effects.grant_token(account, target)
        if item.kind == "free_spins":
            await self._free_spins.award(account, item.free_spin_multiplier, item.free_spins)
            return True
        if item.kind == "unlock":
            return await self._ledger.put_raw(unlock_key(account, target), "1")
        if item.kind == "insurance" and self._bonuses is not None:
            return await self._bonuses.add_insurance(account, item.uses)
        self._logger.error("Shop item %s has unknown kind %r", item.id, item.kind)
        return False

    async def _refund(self, account: str, price: int, reason: str) -> None:
        self._logger.warning("Refunding %d to %s: %s", price, account, reason)
        await self._ledger.adjust_balance(account, price)

    async def buy(self, account: str, item_id: str) -> str:
        if not self._config.shop.enabled:
            return "The shop is currently closed."
        item = self._config.shop.get_item(item_id.strip().lower())
        if item is None:
            return "Unknown item. Try !shop."

        target = item.grants or item.id
        if item.kind == "unlock" and await self._ledger.get_raw(unlock_key(account, target)):
            return f"You already unlocked {item.name}."
        if item.kind == "token" and isinstance(await self._effects.get(account, target), OneShotToken):
            return f"You already have an unused {item.name}."
        if item.weekly_limit is not None:
            if await self._limiter.get_count(account, item.id) >= item.weekly_limit:
                return f"Weekly limit reached for {item.name} ({item.weekly_limit}/week)."

        balance = await self._ledger.get_balance(account)
        if balance < item.price:
            return f"Insufficient funds. {item.name} costs {item.price} {self._symbol}, you have {balance}."

        debit = await self._ledger.adjust_balance(account, -item.price)
        if not debit.verified:
            self._logger.warning("Debit for %s buying %s not verified", account, item.id)
            return "❌ Purchase failed, please try again."

        if item.weekly_limit is not None:
            counted = await self._limiter.increment(account, item.id, item.weekly_limit)
            if not counted.ok:
                await self._refund(account, item.price, f"{item.id} weekly counter rejected")
                if counted.limit_reached:
                    return f"Weekly limit reached for {item.name} ({item.weekly_limit}/week)."
                return "❌ Purchase failed, please try again."

        if not await self._grant(account, item):
            await self._refund(account, item.price, f"grant of {item.id} failed")
            return "❌ Purchase failed, please try again."

        await self._ledger.adjust_bank(item.price)
        self.purchases_total += 1
        self._logger.info("%s bought %s for %d", account, item.id, item.price)
        return f"✅ {item.name} bought for {item.price} {self._symbol}. Balance: {debit.value} {self._symbol}."
