"""Execution history persisted in SQLite."""

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from loguru import logger


class ExecutionHistory:
    """Bounded saga history. Only the most recent `max_entries` rows are kept."""

    def __init__(self, db_path: str, max_entries: int = 100):
        self.db_path = Path(db_path)
        self.max_entries = max_entries
        self.connection: Optional[sqlite3.Connection] = None

    async def connect(self):
        """Connect to database."""
        try:
            self.connection = sqlite3.connect(self.db_path)
            self.connection.row_factory = sqlite3.Row
            await self._create_tables()
            logger.info(f"Connected to database: {self.db_path}")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self):
        """Disconnect from database."""
        if self.connection:
            self.connection.close()
            self.connection = None
            logger.info("Disconnected from database")

    async def _create_tables(self):
        cursor = self.connection.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                path_id TEXT NOT NULL,
                source_venue TEXT NOT NULL,
                dest_venue TEXT NOT NULL,
                asset TEXT NOT NULL,
                bridge_asset TEXT NOT NULL,
                amount REAL NOT NULL,
                state TEXT NOT NULL,
                estimated_profit REAL,
                actual_profit REAL,
                slippage REAL,
                error TEXT,
                error_code TEXT,
                fund_loss_risk INTEGER NOT NULL DEFAULT 0,
                failed_step TEXT,
                withdrawal_id TEXT,
                started_at REAL NOT NULL,
                ended_at REAL,
                leg_log TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_started ON executions (started_at)
        """)
        self.connection.commit()

    async def append(self, saga) -> None:
        """Store a finished saga and drop rows beyond the retention limit."""
        if not self.connection:
            return

        cursor = self.connection.cursor()
        cursor.execute("""
            INSERT OR REPLACE INTO executions (
                id, path_id, source_venue, dest_venue, asset, bridge_asset, amount, state,
                estimated_profit, actual_profit, slippage, error, error_code, fund_loss_risk,
                failed_step, withdrawal_id, started_at, ended_at, leg_log
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            saga.id,
            saga.path.id,
            saga.path.source_venue,
            saga.path.dest_venue,
            saga.path.source_asset,
            saga.path.bridge_asset,
            saga.amount,
            saga.state.value,
            saga.estimated_profit,
            saga.actual_profit,
            saga.slippage,
            saga.error,
            saga.error_code,
            int(saga.fund_loss_risk),
            saga.failed_step.value if saga.failed_step else None,
            saga.withdrawal_id,
            saga.started_at,
            saga.ended_at,
            json.dumps([entry.to_dict() for entry in saga.leg_log]),
        ))
        cursor.execute("""
            DELETE FROM executions WHERE id NOT IN (
                SELECT id FROM executions ORDER BY started_at DESC LIMIT ?
            )
        """, (self.max_entries,))
        self.connection.commit()

    async def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent executions first."""
        if not self.connection:
            return []

        cursor = self.connection.cursor()
        cursor.execute("""
            SELECT * FROM executions ORDER BY started_at DESC LIMIT ?
        """, (limit,))

        rows = []
        for row in cursor.fetchall():
            entry = dict(row)
            entry["fund_loss_risk"] = bool(entry["fund_loss_risk"])
            entry["leg_log"] = json.loads(entry["leg_log"])
            rows.append(entry)
        return rows

    async def count(self) -> int:
        if not self.connection:
            return 0
        cursor = self.connection.cursor()
        cursor.execute("SELECT COUNT(*) FROM executions")
        return cursor.fetchone()[0]

    async def get_summary(self, days: int = 1) -> Dict[str, Any]:
        """Counts and profit for executions started in the last N days."""
        if not self.connection:
            return {}

        cutoff = time.time() - days * 24 * 60 * 60
        cursor = self.connection.cursor()
        cursor.execute("""
            SELECT state, COUNT(*), SUM(COALESCE(actual_profit, 0))
            FROM executions
            WHERE started_at > ?
            GROUP BY state
        """, (cutoff,))

        by_state = {}
        total_profit = 0.0
        for state, count, profit in cursor.fetchall():
            by_state[state] = count
            total_profit += profit or 0.0

        cursor.execute("""
            SELECT AVG(slippage) FROM executions WHERE started_at > ? AND slippage IS NOT NULL
        """, (cutoff,))
        avg_slippage = cursor.fetchone()[0]

        total = sum(by_state.values())
        completed = by_state.get("completed", 0)
        return {
            "total": total,
            "completed": completed,
            "success_rate": completed / total if total else 0.0,
            "by_state": by_state,
            "total_profit": total_profit,
            "avg_slippage": avg_slippage or 0.0,
        }
