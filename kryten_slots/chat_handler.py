"""Chat command handler — routes '!' commands from channel chat.

Subscribes to 'chatmsg' events via @client.on("chatmsg"). Parses commands
like ``!slots 20``, dispatches to the engines and answers in chat via
client.send_chat().
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

from .effects import LimitedUses, OneShotToken, StackingPercent, TimedDuration
from .free_spins import FreeSpinQueue
from .utils import normalize_username

if TYPE_CHECKING:
    from kryten import ChatMessageEvent, KrytenClient

    from .bonus_engine import BonusEngine
    from .config import SlotsConfig
    from .duel_engine import DuelEngine
    from .effects import EffectStore
    from .free_spins import FreeSpinLedger
    from .ledger import EconomyLedger
    from .shop_engine import ShopEngine
    from .slot_engine import SlotMachine


class CommandRateLimiter:
    """Sliding-window rate limiter for chat commands per user."""

    def __init__(self, max_per_minute: int = 20) -> None:
        self._max = max_per_minute
        self._counters: dict[str, list[float]] = {}

    def check(self, username: str) -> bool:
        """Return True if the command should be allowed."""
        now = datetime.now(timezone.utc).timestamp()
        window = [t for t in self._counters.get(username, []) if t > now - 60]

        if len(window) >= self._max:
            self._counters[username] = window
            return False

        window.append(now)
        self._counters[username] = window
        return True

    def cleanup(self) -> None:
        """Remove stale entries (call periodically)."""
        cutoff = datetime.now(timezone.utc).timestamp() - 120
        stale = [k for k, v in self._counters.items() if all(t < cutoff for t in v)]
        for k in stale:
            del self._counters[k]


class ChatHandler:
    """Handles slot-machine commands typed in channel chat."""

    def __init__(
        self,
        config: SlotsConfig,
        client: KrytenClient | None,
        ledger: EconomyLedger,
        slot_machine: SlotMachine,
        effects: EffectStore,
        free_spins: FreeSpinLedger,
        shop: ShopEngine,
        duels: DuelEngine,
        logger: logging.Logger | None = None,
        bonuses: BonusEngine | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._ledger = ledger
        self._slots = slot_machine
        self._effects = effects
        self._free_spins = free_spins
        self._shop = shop
        self._duels = duels
        self._bonuses = bonuses
        self._logger = logger or logging.getLogger("slots.chat")

        self._ignored_users: set[str] = {u.lower() for u in config.ignored_users}
        self._bot_username_lower = config.bot.username.lower()
        self._symbol = config.currency.symbol
        self._prefix = config.commands.prefix
        self._rate_limiter = CommandRateLimiter(config.commands.rate_limit_per_minute)
        self.commands_processed = 0

        self._command_map: dict[str, Callable[[str, str, list[str]], Awaitable[str]]] = {
            "slots": self._cmd_slots,
            "slot": self._cmd_slots,
            "balance": self._cmd_balance,
            "bal": self._cmd_balance,
            "freespins": self._cmd_freespins,
            "buffs": self._cmd_buffs,
            "shop": self._cmd_shop,
            "buy": self._cmd_buy,
            "duel": self._cmd_duel,
            "accept": self._cmd_accept,
            "decline": self._cmd_decline,
            "slotstats": self._cmd_stats,
            "daily": self._cmd_daily,
            "transfer": self._cmd_transfer,
            "insurance": self._cmd_insurance,
        }

    def update_config(self, new_config: SlotsConfig) -> None:
        self._config = new_config
        self._ignored_users = {u.lower() for u in new_config.ignored_users}
        self._bot_username_lower = new_config.bot.username.lower()
        self._symbol = new_config.currency.symbol
        self._prefix = new_config.commands.prefix

    def cleanup(self) -> None:
        self._rate_limiter.cleanup()

    async def _send(self, channel: str, message: str) -> None:
        if self._client is None:
            return
        await self._client.send_chat(channel, message)

    async def handle_chat(self, event: ChatMessageEvent) -> None:
        """Process an incoming chat message."""
        username = normalize_username(event.username)
        channel = event.channel

        if username in self._ignored_users or username == self._bot_username_lower:
            return

        text = (event.message or "").strip()
        if not text.startswith(self._prefix):
            return

        parts = text[len(self._prefix):].split()
        if not parts:
            return
        command, args = parts[0].lower(), parts[1:]
        handler = self._command_map.get(command)
        if handler is None:
            return

        if not self._rate_limiter.check(username):
            await self._send(channel, f"@{username} ⏳ Slow down! Try again in a moment.")
            return

        try:
            response = await handler(username, channel, args)
            self.commands_processed += 1
        except Exception:
            self._logger.exception("Command handler error for %s/%s", username, command)
            response = f"@{username} ❌ Something went wrong, please try again."
        if response:
            await self._send(channel, response)

    # ══════════════════════════════════════════════════════════
    #  Commands
    # ══════════════════════════════════════════════════════════

    async def _cmd_slots(self, username: str, channel: str, args: list[str]) -> str:
        if args and args[0].lower() == "daily":
            return await self._cmd_daily(username, channel, args[1:])
        settlement = await self._slots.spin(username, args[0] if args else None, channel)
        return settlement.message

    async def _cmd_balance(self, username: str, channel: str, args: list[str]) -> str:
        target = normalize_username(args[0]) if args else username
        balance = await self._ledger.get_balance(target)
        who = "Your" if target == username else f"{target}'s"
        return f"@{username} 💰 {who} balance: {balance} {self._symbol}"

    async def _cmd_freespins(self, username: str, channel: str, args: list[str]) -> str:
        entries = await self._free_spins.get(username)
        if not entries:
            return f"@{username} You have no free spins."
        detail = ", ".join(f"{e.count}× x{e.multiplier}" for e in entries)
        return f"@{username} 🎁 {FreeSpinQueue.total(entries)} free spins ({detail})"

    async def _cmd_buffs(self, username: str, channel: str, args: list[str]) -> str:
        active = await self._effects.load(username, self._slots.tracked_effects)
        if not active:
            return f"@{username} No active buffs."
        now = datetime.now(timezone.utc).timestamp()
        parts = []
        for effect_id, effect in sorted(active.items()):
            if isinstance(effect, OneShotToken):
                parts.append(effect_id)
            elif isinstance(effect, LimitedUses):
                parts.append(f"{effect_id} ({effect.uses} uses)")
            elif isinstance(effect, StackingPercent):
                parts.append(f"{effect_id} (+{effect.stack}%)")
            elif isinstance(effect, TimedDuration):
                parts.append(f"{effect_id} ({max(0, int(effect.expires_at - now)) // 60}m)")
        return f"@{username} 🛒 {', '.join(parts)}"

    async def _cmd_shop(self, username: str, channel: str, args: list[str]) -> str:
        return f"@{username} {self._shop.catalog()}"

    async def _cmd_buy(self, username: str, channel: str, args: list[str]) -> str:
        if not args:
            return f"@{username} Usage: {self._prefix}buy <item>"
        return f"@{username} {await self._shop.buy(username, args[0])}"

    async def _cmd_duel(self, username: str, channel: str, args: list[str]) -> str:
        if len(args) < 2:
            return f"@{username} Usage: {self._prefix}duel <user> <amount>"
        return await self._duels.create(username, args[0], args[1], channel)

    async def _cmd_accept(self, username: str, channel: str, args: list[str]) -> str:
        return await self._duels.accept(username, channel)

    async def _cmd_decline(self, username: str, channel: str, args: list[str]) -> str:
        return await self._duels.decline(username)

    async def _cmd_stats(self, username: str, channel: str, args: list[str]) -> str:
        stats = await self._slots.get_stats(username)
        if not stats["spins"]:
            return f"@{username} No spins yet."
        rate = stats["wins"] / stats["spins"] * 100
        return (
            f"@{username} 🎰 {stats['spins']} spins, {stats['wins']} wins ({rate:.0f}%), "
            f"won {stats['total_won']} / staked {stats['total_lost']} {self._symbol}, "
            f"best {stats['biggest_win']}"
        )

    async def _cmd_daily(self, username: str, channel: str, args: list[str]) -> str:
        if self._bonuses is None:
            return f"@{username} The daily bonus is not enabled."
        return await self._bonuses.claim_daily(username)

    async def _cmd_transfer(self, username: str, channel: str, args: list[str]) -> str:
        if len(args) < 2:
            return f"@{username} Usage: {self._prefix}transfer <user> <amount>"
        if self._bonuses is None:
            return f"@{username} Transfers are not enabled."
        return f"@{username} {await self._bonuses.transfer(username, args[0], args[1])}"

    async def _cmd_insurance(self, username: str, channel: str, args: list[str]) -> str:
        if self._bonuses is None:
            return f"@{username} Insurance is not available."
        left = await self._bonuses.get_insurance(username)
        return f"@{username} 🛡️ Insurance charges left: {left}"
