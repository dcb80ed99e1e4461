"""Prometheus metrics server for kryten-slots.

Subclasses BaseMetricsServer from kryten-py to expose slot-specific
metrics and health details.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from kryten import BaseMetricsServer

from .kv_store import MemoryKvStore

if TYPE_CHECKING:
    from .main import SlotsApp


class SlotsMetricsServer(BaseMetricsServer):
    """Slots-specific Prometheus metrics endpoint."""

    def __init__(self, app: SlotsApp, port: int = 28290) -> None:
        super().__init__(
            service_name="slots",
            port=port,
            client=app.client,
            logger=app.logger,
        )
        self._app = app

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect slot-specific Prometheus metrics."""
        app = self._app
        machine = app.slot_machine
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"slots_events_processed_total {app.events_processed}")
        chat_commands = app.chat_handler.commands_processed if app.chat_handler else 0
        lines.append(f"slots_commands_processed_total {app.commands_processed + chat_commands}")
        if machine:
            lines.append(f"slots_spins_total {machine.spins_total}")
            lines.append(f"slots_wins_total {machine.wins_total}")
            lines.append(f"slots_jackpots_total {machine.jackpots_total}")
            lines.append(f"slots_points_paid_total {machine.points_paid_total}")
            lines.append(f"slots_points_wagered_total {machine.points_wagered_total}")
        if app.ledger:
            lines.append(f"slots_ledger_retries_exhausted_total {app.ledger.exhausted_total}")
        if app.duels:
            lines.append(f"slots_duels_played_total {app.duels.duels_played}")
        if app.shop:
            lines.append(f"slots_purchases_total {app.shop.purchases_total}")
        if app.bonuses:
            lines.append(f"slots_dailies_claimed_total {app.bonuses.dailies_claimed}")
            lines.append(f"slots_transfers_total {app.bonuses.transfers_total}")
            lines.append(f"slots_hourly_jackpots_total {app.bonuses.hourly_jackpots_total}")
            lines.append(f"slots_insurance_used_total {app.bonuses.insurance_used_total}")

        # ── Gauges ───────────────────────────────────────────
        if app.duel_alarms:
            lines.append(f"slots_pending_duels {app.duel_alarms.pending_count()}")
        if app.ledger:
            lines.append(f"slots_bank_balance {await app.ledger.get_bank_balance()}")

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        return {
            "database": "connected" if self._app.db else "disabled",
            "kv_backend": "memory" if isinstance(self._app.kv, MemoryKvStore) else "nats",
            "channels_configured": len(self._app.config.channels),
            "pending_duels": self._app.duel_alarms.pending_count() if self._app.duel_alarms else 0,
        }
