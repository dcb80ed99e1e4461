"""Duel timeout alarms — one scheduling actor per challenger.

Each ``DuelAlarm`` owns at most one pending wake-up and its payload. The
payload is persisted in KV under ``alarm.<key>`` so pending alarms can be
re-armed after a restart. ``alarm()`` is safe to call zero or more times: it
does nothing once its payload is gone, and it always clears its state on
exit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .utils import kv_key

if TYPE_CHECKING:
    from .ledger import EconomyLedger

TimeoutHandler = Callable[[dict[str, Any]], Awaitable[None]]


class DuelAlarm:
    """Single-instance-per-key scheduling actor."""

    def __init__(
        self,
        key: str,
        ledger: EconomyLedger,
        on_timeout: TimeoutHandler,
        logger: logging.Logger,
    ) -> None:
        self._key = key
        self._ledger = ledger
        self._on_timeout = on_timeout
        self._logger = logger
        self._payload: dict[str, Any] | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def storage_key(self) -> str:
        return kv_key("alarm", self._key)

    @property
    def pending(self) -> bool:
        return self._payload is not None

    async def schedule_timeout(self, payload: dict[str, Any], delay_ms: int) -> None:
        """Arm the alarm, replacing any earlier schedule."""
        self._cancel_handle()
        self._payload = dict(payload)
        fire_at = time.time() + delay_ms / 1000
        await self._ledger.put_raw(
            self.storage_key,
            {"payload": self._payload, "fire_at": fire_at},
            ttl_seconds=int(delay_ms / 1000) + 60,
        )
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_ms / 1000, self._fire)
        self._logger.debug("Alarm %s armed for %.1fs", self._key, delay_ms / 1000)

    async def cancel_timeout(self) -> None:
        """Disarm the alarm and drop all stored state."""
        self._cancel_handle()
        self._payload = None
        await self._ledger.delete(self.storage_key)

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(self.alarm())

    async def alarm(self) -> None:
        """Wake-up entry point."""
        payload = self._payload
        if payload is None:
            return
        try:
            # Another instance already handled or cancelled this alarm.
            if await self._ledger.get_raw(self.storage_key) is None:
                self._logger.debug("Alarm %s has no stored state; skipping", self._key)
                return
            await self._on_timeout(payload)
        except Exception:
            self._logger.exception("Duel alarm %s handler failed", self._key)
        finally:
            self._cancel_handle()
            self._payload = None
            await self._ledger.delete(self.storage_key)

    async def stop(self) -> None:
        self._cancel_handle()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


class DuelAlarmRegistry:
    """Hands out exactly one DuelAlarm per key."""

    def __init__(
        self,
        ledger: EconomyLedger,
        on_timeout: TimeoutHandler,
        logger: logging.Logger | None = None,
    ) -> None:
        self._ledger = ledger
        self._on_timeout = on_timeout
        self._logger = logger or logging.getLogger("slots.duel")
        self._alarms: dict[str, DuelAlarm] = {}

    def get(self, key: str) -> DuelAlarm:
        alarm = self._alarms.get(key)
        if alarm is None:
            alarm = DuelAlarm(key, self._ledger, self._on_timeout, self._logger)
            self._alarms[key] = alarm
        return alarm

    def pending_count(self) -> int:
        return sum(1 for a in self._alarms.values() if a.pending)

    async def restore(self) -> int:
        """Re-arm alarms persisted before a restart. Returns how many."""
        restored = 0
        prefix = kv_key("alarm") + "."
        for storage_key in await self._ledger.list_keys(prefix):
            stored = await self._ledger.get_raw(storage_key)
            if not isinstance(stored, dict) or not isinstance(stored.get("payload"), dict):
                await self._ledger.delete(storage_key)
                continue
            key = stored["payload"].get("challenger") or storage_key[len(prefix):]
            delay_ms = max(0, int((float(stored.get("fire_at", 0)) - time.time()) * 1000))
            await self.get(key).schedule_timeout(stored["payload"], delay_ms)
            restored += 1
        if restored:
            self._logger.info("Restored %d pending duel alarms", restored)
        return restored

    async def stop(self) -> None:
        await asyncio.gather(*(a.stop() for a in self._alarms.values()), return_exceptions=True)
