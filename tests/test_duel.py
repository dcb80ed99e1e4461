"""Tests for duels and their timeout alarms."""

from __future__ import annotations

import asyncio
import logging
import time
from unittest.mock import AsyncMock

from kryten_slots.duel_alarm import DuelAlarm, DuelAlarmRegistry
from kryten_slots.duel_engine import DuelEngine, DuelResult
from kryten_slots.ledger import CasResult

CH = "testchannel"


class TestScoring:
    def test_triple_beats_pair_beats_high_card(self, duels: DuelEngine):
        triple = duels.score(["🍒", "🍒", "🍒"])
        pair = duels.score(["🦡", "🦡", "🍒"])
        high = duels.score(["🦡", "💎", "⭐"])
        assert triple > pair > high

    def test_value_breaks_ties(self, duels: DuelEngine):
        assert duels.score(["⭐", "⭐", "⭐"]) > duels.score(["🍒", "🍒", "🍒"])


class TestDuelCommands:
    """Create, accept, decline."""

    async def test_create(self, duels: DuelEngine, ledger):
        message = await duels.create("alice", "Bob", "100", CH)
        assert "alice challenges bob" in message
        stored = await ledger.get_raw(duels.key("alice"))
        assert stored["target"] == "bob"
        assert duels._alarms.get("alice").pending

    async def test_create_rejections(self, duels: DuelEngine, ledger):
        assert "Minimum" in await duels.create("alice", "bob", "50", CH)
        assert "yourself" in await duels.create("alice", "alice", "100", CH)
        assert "Usage" in await duels.create("alice", "bob", "lots", CH)
        await ledger.set_balance("bob", 20)
        assert "can't cover" in await duels.create("alice", "bob", "100", CH)

    async def test_one_open_duel_per_challenger(self, duels: DuelEngine):
        await duels.create("alice", "bob", "100", CH)
        assert "already" in await duels.create("alice", "carol", "100", CH)

    async def test_accept_pays_winner(self, duels: DuelEngine, ledger, monkeypatch):
        await duels.create("alice", "bob", "100", CH)
        monkeypatch.setattr(
            duels, "play", lambda c, t: DuelResult(["⭐"] * 3, ["🍒", "🍋", "🍊"], c, t),
        )
        message = await duels.accept("bob", CH)
        assert "alice wins 100 T" in message
        assert await ledger.get_balance("alice") == 200
        assert await ledger.get_balance("bob") == 0
        assert await ledger.get_raw(duels.key("alice")) is None
        assert not duels._alarms.get("alice").pending
        assert duels.duels_played == 1

    async def test_winner_gets_only_what_loser_lost(self, duels: DuelEngine, ledger, monkeypatch):
        await duels.create("alice", "bob", "100", CH)
        monkeypatch.setattr(
            duels, "play", lambda c, t: DuelResult(["⭐"] * 3, ["🍒", "🍋", "🍊"], c, t),
        )
        real_adjust = ledger.adjust_balance

        async def adjust(account: str, delta: int):
            if account == "bob":
                # bob spent most of his balance after accepting
                await ledger.set_balance("bob", 30)
            return await real_adjust(account, delta)

        monkeypatch.setattr(ledger, "adjust_balance", adjust)
        message = await duels.accept("bob", CH)
        assert "alice wins 30 T" in message
        assert await ledger.get_balance("bob") == 0
        assert await ledger.get_balance("alice") == 130

    async def test_failed_debit_pays_nothing(self, duels: DuelEngine, ledger, monkeypatch):
        await duels.create("alice", "bob", "100", CH)
        monkeypatch.setattr(
            duels, "play", lambda c, t: DuelResult(["⭐"] * 3, ["🍒", "🍋", "🍊"], c, t),
        )
        monkeypatch.setattr(ledger, "adjust_balance", AsyncMock(return_value=CasResult(100, False, 3, 100)))
        message = await duels.accept("bob", CH)
        assert "payout failed" in message
        ledger.adjust_balance.assert_awaited_once_with("bob", -100)

    async def test_draw_moves_nothing(self, duels: DuelEngine, ledger, monkeypatch):
        await duels.create("alice", "bob", "100", CH)
        monkeypatch.setattr(duels, "play", lambda c, t: DuelResult(["⭐"] * 3, ["⭐"] * 3, None, None))
        assert "Draw" in await duels.accept("bob", CH)
        assert await ledger.get_balance("alice") == 100
        assert await ledger.get_balance("bob") == 100

    async def test_accept_only_once(self, duels: DuelEngine):
        await duels.create("alice", "bob", "100", CH)
        await duels.accept("bob", CH)
        assert "no open duel" in await duels.accept("bob", CH)

    async def test_decline(self, duels: DuelEngine, ledger):
        await duels.create("alice", "bob", "100", CH)
        message = await duels.decline("bob")
        assert "declined" in message
        assert await ledger.get_raw(duels.key("alice")) is None
        assert not duels._alarms.get("alice").pending

    async def test_nothing_to_accept(self, duels: DuelEngine):
        assert "no open duel" in await duels.accept("bob", CH)

    async def test_timeout_announces_and_clears(self, duels: DuelEngine, ledger, notify: AsyncMock):
        await duels.create("alice", "bob", "100", CH)
        alarm = duels._alarms.get("alice")
        await alarm.alarm()
        notify.assert_awaited_once()
        assert notify.await_args.args[0] == CH
        assert "expired" in notify.await_args.args[1]
        assert await ledger.get_raw(duels.key("alice")) is None
        # A second wake-up is a no-op
        await alarm.alarm()
        notify.assert_awaited_once()


class TestDuelAlarm:
    """Single-instance scheduling actor."""

    async def test_fires_after_delay(self, ledger):
        handler = AsyncMock()
        alarm = DuelAlarm("alice", ledger, handler, logging.getLogger("test"))
        await alarm.schedule_timeout({"challenger": "alice"}, 10)
        await asyncio.sleep(0.1)
        handler.assert_awaited_once_with({"challenger": "alice"})
        assert not alarm.pending
        assert await ledger.get_raw(alarm.storage_key) is None

    async def test_cancel_prevents_fire(self, ledger):
        handler = AsyncMock()
        alarm = DuelAlarm("alice", ledger, handler, logging.getLogger("test"))
        await alarm.schedule_timeout({"challenger": "alice"}, 10)
        await alarm.cancel_timeout()
        await asyncio.sleep(0.05)
        handler.assert_not_awaited()

    async def test_reschedule_replaces(self, ledger):
        handler = AsyncMock()
        alarm = DuelAlarm("alice", ledger, handler, logging.getLogger("test"))
        await alarm.schedule_timeout({"n": 1}, 10)
        await alarm.schedule_timeout({"n": 2}, 20)
        await asyncio.sleep(0.1)
        handler.assert_awaited_once_with({"n": 2})

    async def test_handler_failure_still_clears(self, ledger):
        handler = AsyncMock(side_effect=RuntimeError("chat down"))
        alarm = DuelAlarm("alice", ledger, handler, logging.getLogger("test"))
        await alarm.schedule_timeout({"challenger": "alice"}, 60_000)
        await alarm.alarm()
        assert not alarm.pending
        assert await ledger.get_raw(alarm.storage_key) is None
        await alarm.stop()

    async def test_alarm_with_deleted_state_is_noop(self, ledger):
        handler = AsyncMock()
        alarm = DuelAlarm("alice", ledger, handler, logging.getLogger("test"))
        await alarm.schedule_timeout({"challenger": "alice"}, 60_000)
        await ledger.delete(alarm.storage_key)
        await alarm.alarm()
        handler.assert_not_awaited()
        assert not alarm.pending

    async def test_alarm_without_payload_is_noop(self, ledger):
        handler = AsyncMock()
        alarm = DuelAlarm("alice", ledger, handler, logging.getLogger("test"))
        await alarm.alarm()
        handler.assert_not_awaited()

    async def test_registry_single_instance(self, ledger):
        registry = DuelAlarmRegistry(ledger, AsyncMock())
        assert registry.get("alice") is registry.get("alice")

    async def test_registry_restore(self, ledger, kv):
        await kv.put("alarm.alice", {"payload": {"challenger": "alice"}, "fire_at": time.time() + 60})
        await kv.put("alarm.broken", "nonsense")
        registry = DuelAlarmRegistry(ledger, AsyncMock())
        assert await registry.restore() == 1
        assert registry.pending_count() == 1
        assert await kv.get("alarm.broken") is None
        await registry.stop()
