"""Tests for kryten_slots.metrics_server module."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest

from kryten_slots.config import SlotsConfig
from kryten_slots.metrics_server import SlotsMetricsServer


@pytest.fixture
def mock_app(
    sample_config: SlotsConfig, mock_client: MagicMock, kv, ledger, slot_machine, shop, duels, chat_handler, bonuses,
) -> MagicMock:
    """Mock SlotsApp backed by real in-memory engines."""
    app = MagicMock()
    app.config = sample_config
    app.db = None
    app.kv = kv
    app.client = mock_client
    app.logger = logging.getLogger("test.app")
    app.events_processed = 42
    app.commands_processed = 0
    app.ledger = ledger
    app.slot_machine = slot_machine
    app.shop = shop
    app.duels = duels
    app.duel_alarms = duels._alarms
    app.chat_handler = chat_handler
    app.bonuses = bonuses
    return app


@pytest.fixture
def metrics_server(mock_app: MagicMock) -> SlotsMetricsServer:
    return SlotsMetricsServer(mock_app, port=28290)


class TestMetricsServer:
    """Metrics collection tests."""

    async def test_collect_custom_metrics(self, metrics_server: SlotsMetricsServer, slot_machine):
        slot_machine.spins_total = 5
        lines = await metrics_server._collect_custom_metrics()
        assert "slots_events_processed_total 42" in lines
        assert "slots_commands_processed_total 0" in lines
        assert "slots_spins_total 5" in lines
        assert "slots_pending_duels 0" in lines
        assert "slots_bank_balance 444444" in lines

    async def test_commands_counted_from_chat_and_nats(
        self, metrics_server: SlotsMetricsServer, mock_app: MagicMock, chat_handler,
    ):
        mock_app.commands_processed = 3
        chat_handler.commands_processed = 4
        lines = await metrics_server._collect_custom_metrics()
        assert "slots_commands_processed_total 7" in lines

    async def test_bonus_counters(self, metrics_server: SlotsMetricsServer, bonuses):
        await bonuses.claim_daily("alice")
        lines = await metrics_server._collect_custom_metrics()
        assert "slots_dailies_claimed_total 1" in lines
        assert "slots_transfers_total 0" in lines

    async def test_pending_duels_gauge(self, metrics_server: SlotsMetricsServer, duels):
        await duels.create("alice", "bob", "100", "testchannel")
        lines = await metrics_server._collect_custom_metrics()
        assert "slots_pending_duels 1" in lines

    async def test_get_health_details(self, metrics_server: SlotsMetricsServer):
        details = await metrics_server._get_health_details()
        assert details == {
            "database": "disabled",
            "kv_backend": "memory",
            "channels_configured": 1,
            "pending_duels": 0,
        }
