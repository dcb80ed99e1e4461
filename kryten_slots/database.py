"""SQLite secondary store for kryten-slots.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

The KV bucket stays the primary store. SQLite provides the strictly atomic
increment-if-under-cap used by the purchase limiter, plus append-only spin
and duel history.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from typing import Any, Sequence


class SlotsDatabase:
    """SQLite-backed persistence for the slots microservice."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS purchase_limits (
                    account TEXT NOT NULL,
                    item TEXT NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    week_start TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (account, item)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS spin_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account TEXT NOT NULL,
                    channel TEXT,
                    cost INTEGER NOT NULL,
                    points INTEGER NOT NULL,
                    net INTEGER NOT NULL,
                    grid TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    free_spin BOOLEAN DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS duel_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel TEXT,
                    challenger TEXT NOT NULL,
                    target TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    winner TEXT,
                    challenger_row TEXT,
                    target_row TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_spin_history_account "
                "ON spin_history(account)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_duel_history_players "
                "ON duel_history(challenger, target)"
            )
            conn.commit()
            self._logger.info("Database tables initialized at %s", self._db_path)
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Generic statements
    # ══════════════════════════════════════════════════════════

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run one parameterized statement; returns any rows produced."""

        def _sync() -> list[dict[str, Any]]:
            conn = self._get_connection()
            try:
                rows = [dict(r) for r in conn.execute(sql, params).fetchall()]
                conn.commit()
                return rows
            finally:
                conn.close()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _sync)

    async def execute_batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        """Run several statements in one transaction."""

        def _sync() -> None:
            conn = self._get_connection()
            try:
                with conn:
                    for sql, params in statements:
                        conn.execute(sql, params)
            finally:
                conn.close()

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Purchase limits
    # ══════════════════════════════════════════════════════════

    async def increment_purchase(
        self, account: str, item: str, week_start: str, limit: int,
    ) -> int | None:
        """Atomically increment a weekly counter if it is under ``limit``.

        A stored row from an older week restarts at 1. Returns the new count,
        or None when the cap was already reached (nothing is changed).
        """
        if limit <= 0:
            return None

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    """
                    INSERT INTO purchase_limits (account, item, count, week_start, updated_at)
                    VALUES (?, ?, 1, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(account, item) DO UPDATE SET
                        count = CASE
                            WHEN purchase_limits.week_start != excluded.week_start THEN 1
                            ELSE purchase_limits.count + 1
                        END,
                        week_start = excluded.week_start,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE purchase_limits.week_start != excluded.week_start
                       OR purchase_limits.count < ?
                    RETURNING count
                    """,
                    (account, item, week_start, limit),
                ).fetchall()
                conn.commit()
                return rows[0]["count"] if rows else None
            finally:
                conn.close()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _sync)

    async def get_purchase(self, account: str, item: str) -> dict[str, Any] | None:
        rows = await self.execute(
            "SELECT count, week_start FROM purchase_limits WHERE account = ? AND item = ?",
            (account, item),
        )
        return rows[0] if rows else None

    # ══════════════════════════════════════════════════════════
    #  History
    # ══════════════════════════════════════════════════════════

    async def log_spin(
        self,
        account: str,
        channel: str | None,
        cost: int,
        points: int,
        net: int,
        grid: list[str],
        outcome: str,
        free_spin: bool,
    ) -> None:
        await self.execute(
            "INSERT INTO spin_history (account, channel, cost, points, net, grid, outcome, free_spin) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (account, channel, cost, points, net, json.dumps(grid, ensure_ascii=False), outcome, int(free_spin)),
        )

    async def log_duel(
        self,
        channel: str | None,
        challenger: str,
        target: str,
        amount: int,
        winner: str | None,
        challenger_row: list[str],
        target_row: list[str],
    ) -> None:
        await self.execute_batch([
            (
                "INSERT INTO duel_history (channel, challenger, target, amount, winner, "
                "challenger_row, target_row) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    channel, challenger, target, amount, winner,
                    "".join(challenger_row), "".join(target_row),
                ),
            ),
        ])

    async def get_spin_totals(self) -> dict[str, int]:
        """Aggregate spin counts for metrics."""
        rows = await self.execute(
            "SELECT COUNT(*) AS spins, COALESCE(SUM(cost), 0) AS wagered, "
            "COALESCE(SUM(points), 0) AS paid FROM spin_history"
        )
        row = rows[0] if rows else {}
        return {
            "spins": row.get("spins", 0),
            "wagered": row.get("wagered", 0),
            "paid": row.get("paid", 0),
        }

    async def get_duel_count(self) -> int:
        rows = await self.execute("SELECT COUNT(*) AS n FROM duel_history")
        return rows[0]["n"] if rows else 0
