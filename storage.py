# storage.py
import json
import sqlite3
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from models import (
    ExecutionRecord,
    FeeQuote,
    JobStatus,
    ScheduledJob,
    from_iso,
    to_iso,
    utcnow,
)

# Fields a patch may touch. schedule_id and created_at are immutable.
PATCHABLE_COLUMNS = frozenset({
    "status",
    "next_execution",
    "execution_count",
    "processing_by",
    "processing_started",
    "last_error",
    "failed_at",
    "last_execution_at",
    "last_tx_hash",
    "estimated_fee",
    "description",
})


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, FeeQuote):
        return json.dumps(value.to_dict())
    if isinstance(value, bool):
        return 1 if value else 0
    return value


class Storage:
    """SQLite-backed job store. One connection per instance; give each executor its own."""

    def __init__(self, db_path="schedules.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Better concurrency for multiple executors
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        with self._lock:
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                schedule_id TEXT PRIMARY KEY,
                owner_address TEXT NOT NULL,
                recipient_address TEXT NOT NULL,
                asset_symbol TEXT NOT NULL,
                asset_decimals INTEGER NOT NULL,
                asset_is_native INTEGER NOT NULL,
                asset_contract TEXT,
                amount TEXT NOT NULL,
                frequency TEXT NOT NULL,
                scheduled_for TEXT NOT NULL,
                next_execution TEXT,
                execution_count INTEGER NOT NULL DEFAULT 0,
                max_executions INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL,
                processing_by TEXT,
                processing_started TEXT,
                last_error TEXT,
                failed_at TEXT,
                last_execution_at TEXT,
                last_tx_hash TEXT,
                description TEXT,
                estimated_fee TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_status_next ON jobs (status, next_execution)"
            )

            # Execution history, one row per attempt that reached the ledger executor
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id TEXT NOT NULL,
                executor_id TEXT NOT NULL,
                ok INTEGER NOT NULL,
                tx_hash TEXT,
                block_number INTEGER,
                gas_used INTEGER,
                effective_fee_per_unit TEXT,
                cost_in_asset TEXT,
                cost_in_fiat TEXT,
                error TEXT,
                executed_at TEXT NOT NULL
            )
            """)
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_schedule ON executions (schedule_id)"
            )

            # Config table
            self.conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

            self.conn.commit()

    def close(self):
        self.conn.close()

    # ---------------- Jobs ----------------
    def insert(self, job: ScheduledJob) -> None:
        row = job.to_row()
        cols = ", ".join(row.keys())
        marks = ", ".join("?" for _ in row)
        with self._lock:
            self.conn.execute(f"INSERT INTO jobs ({cols}) VALUES ({marks})", tuple(row.values()))
            self.conn.commit()

    def get(self, schedule_id: str) -> Optional[ScheduledJob]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM jobs WHERE schedule_id=?", (schedule_id,))
            row = cur.fetchone()
        return ScheduledJob.from_row(row) if row else None

    def find_due(self, now: datetime, tolerance: timedelta, limit: Optional[int] = None) -> List[ScheduledJob]:
        """Active jobs due at or before now + tolerance, oldest first."""
        horizon = to_iso(now + tolerance)
        sql = """
            SELECT * FROM jobs
            WHERE status=? AND COALESCE(next_execution, scheduled_for) <= ?
            ORDER BY COALESCE(next_execution, scheduled_for) ASC, created_at ASC
        """
        params: List[Any] = [JobStatus.ACTIVE.value, horizon]
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [ScheduledJob.from_row(r) for r in rows]

    def conditional_update(self, schedule_id: str, expected_status, patch: Dict[str, Any],
                           due_by: Optional[datetime] = None) -> bool:
        """
        Apply patch only if the row is still in expected_status (and, when
        due_by is given, due at or before it). A single UPDATE, so the check
        and the write are atomic against every other connection.
        """
        sets, params = self._patch_sql(patch)
        where = "schedule_id=? AND status=?"
        params.extend([schedule_id, _encode(expected_status)])
        if due_by is not None:
            where += " AND COALESCE(next_execution, scheduled_for) <= ?"
            params.append(to_iso(due_by))
        with self._lock:
            updated = self.conn.execute(f"UPDATE jobs SET {sets} WHERE {where}", params).rowcount
            self.conn.commit()
        return updated == 1

    def force_update(self, schedule_id: str, patch: Dict[str, Any]) -> bool:
        """Apply patch regardless of current status."""
        sets, params = self._patch_sql(patch)
        params.append(schedule_id)
        with self._lock:
            updated = self.conn.execute(f"UPDATE jobs SET {sets} WHERE schedule_id=?", params).rowcount
            self.conn.commit()
        return updated == 1

    def _patch_sql(self, patch: Dict[str, Any]):
        unknown = set(patch) - PATCHABLE_COLUMNS
        if unknown:
            raise KeyError(f"Cannot patch columns: {', '.join(sorted(unknown))}")
        patch = dict(patch)
        patch["updated_at"] = utcnow()
        sets = ", ".join(f"{col}=?" for col in patch)
        return sets, [_encode(v) for v in patch.values()]

    def list_jobs(self, status=None, limit: Optional[int] = None) -> List[ScheduledJob]:
        sql = "SELECT * FROM jobs"
        params: List[Any] = []
        if status:
            sql += " WHERE status=?"
            params.append(_encode(status))
        sql += " ORDER BY created_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [ScheduledJob.from_row(r) for r in rows]

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
            rows = cur.fetchall()
        return {r["status"]: r["count"] for r in rows}

    def find_stuck(self, older_than: datetime) -> List[ScheduledJob]:
        """Jobs left in processing since before older_than."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("""
                SELECT * FROM jobs
                WHERE status=? AND processing_started IS NOT NULL AND processing_started <= ?
                ORDER BY processing_started ASC
            """, (JobStatus.PROCESSING.value, to_iso(older_than)))
            rows = cur.fetchall()
        return [ScheduledJob.from_row(r) for r in rows]

    # ---------------- Execution history ----------------
    def record_execution(self, record: ExecutionRecord) -> int:
        with self._lock:
            cur = self.conn.execute("""
                INSERT INTO executions (schedule_id, executor_id, ok, tx_hash, block_number, gas_used,
                                        effective_fee_per_unit, cost_in_asset, cost_in_fiat, error, executed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.schedule_id,
                record.executor_id,
                1 if record.ok else 0,
                record.tx_hash,
                record.block_number,
                record.gas_used,
                str(record.effective_fee_per_unit) if record.effective_fee_per_unit is not None else None,
                _encode(record.cost_in_asset),
                _encode(record.cost_in_fiat),
                record.error,
                to_iso(record.executed_at),
            ))
            self.conn.commit()
            return cur.lastrowid

    def list_executions(self, schedule_id: Optional[str] = None, limit: int = 50) -> List[ExecutionRecord]:
        sql = "SELECT * FROM executions"
        params: List[Any] = []
        if schedule_id:
            sql += " WHERE schedule_id=?"
            params.append(schedule_id)
        sql += " ORDER BY executed_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [
            ExecutionRecord(
                id=r["id"],
                schedule_id=r["schedule_id"],
                executor_id=r["executor_id"],
                ok=bool(r["ok"]),
                tx_hash=r["tx_hash"],
                block_number=r["block_number"],
                gas_used=r["gas_used"],
                effective_fee_per_unit=int(r["effective_fee_per_unit"]) if r["effective_fee_per_unit"] else None,
                cost_in_asset=Decimal(r["cost_in_asset"]) if r["cost_in_asset"] else None,
                cost_in_fiat=Decimal(r["cost_in_fiat"]) if r["cost_in_fiat"] else None,
                error=r["error"],
                executed_at=from_iso(r["executed_at"]),
            )
            for r in rows
        ]

    def execution_stats(self) -> Dict[str, Any]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("""
                SELECT
                    SUM(CASE WHEN ok=1 THEN 1 ELSE 0 END) AS confirmed_executions,
                    SUM(CASE WHEN ok=0 THEN 1 ELSE 0 END) AS failed_executions,
                    AVG(CASE WHEN ok=1 THEN gas_used END) AS avg_gas_used,
                    SUM(CASE WHEN ok=1 THEN CAST(cost_in_asset AS REAL) ELSE 0 END) AS total_cost_in_asset,
                    SUM(CASE WHEN ok=1 THEN CAST(cost_in_fiat AS REAL) END) AS total_cost_in_fiat
                FROM executions
            """)
            row = cur.fetchone()
        return {
            "confirmed_executions": row["confirmed_executions"] or 0,
            "failed_executions": row["failed_executions"] or 0,
            "avg_gas_used": row["avg_gas_used"],
            "total_cost_in_asset": row["total_cost_in_asset"] or 0.0,
            "total_cost_in_fiat": row["total_cost_in_fiat"],
        }

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT value FROM config WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = to_iso(utcnow())
        with self._lock:
            self.conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))
            self.conn.commit()

    def list_config(self) -> List[Dict[str, str]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT key, value, updated_at FROM config ORDER BY key")
            rows = cur.fetchall()
        return [dict(r) for r in rows]
