"""
Database Manager - SQLite with WAL mode.

Durable store for candidates, positions, transaction attempts, the day-bucketed
risk ledger, governance rules, dedupe claims, the paper ledger and the AI
policy's entries, outcomes, weights and PnL event log.

Every write runs under one asyncio lock and commits as a single transaction.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite

from src.core.logger import get_logger

logger = get_logger("db")


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_date(ms: Optional[int] = None) -> str:
    """UTC calendar date (YYYY-MM-DD) used to bucket the risk ledger."""
    if ms is None:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


class DatabaseManager:
    """
    Async SQLite database manager with WAL mode for production use.

    The uniqueness constraint on ``action_dedupe.key`` is what makes
    :meth:`claim` safe against concurrent writers.
    """

    # Timeout for acquiring the DB lock to prevent deadlocks.
    _LOCK_TIMEOUT: float = 30.0

    def __init__(self, db_path: str = "data/trading.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @asynccontextmanager
    async def _timed_lock(self) -> AsyncIterator[None]:
        """Acquire the DB lock with a timeout to prevent deadlocks."""
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._LOCK_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(
                "Database lock acquisition timed out - possible deadlock",
                timeout=self._LOCK_TIMEOUT,
            )
            raise RuntimeError(
                f"Database lock timeout after {self._LOCK_TIMEOUT}s"
            )
        try:
            yield
        finally:
            self._lock.release()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one commit, rolling back on error."""
        self._ensure_ready()
        async with self._timed_lock():
            try:
                yield self._db
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise

    async def initialize(self) -> None:
        """Initialize database connection and create schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, timeout=15)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await self._db.execute("PRAGMA temp_store=MEMORY")

        await self._create_schema()
        self._initialized = True

    async def _create_schema(self) -> None:
        """Create all required database tables."""
        schema_sql = """
        -- Discovered token mints awaiting evaluation (discovery order = id order)
        CREATE TABLE IF NOT EXISTS candidates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            mint TEXT UNIQUE NOT NULL,
            source TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'DISCOVERED',
            first_seen_at INTEGER NOT NULL,
            last_seen_at INTEGER NOT NULL,
            first_seen_slot INTEGER,
            last_seen_slot INTEGER,
            score_json TEXT
        );

        CREATE TABLE IF NOT EXISTS positions (
            id TEXT PRIMARY KEY,
            mint TEXT NOT NULL,
            opened_at TEXT NOT NULL,
            closed_at TEXT,
            size_sol REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'OPEN'
                CHECK(status IN ('OPEN', 'CLOSED', 'FAILED')),
            entry_signature TEXT,
            exit_signature TEXT,
            entry_cost_sol REAL,
            entry_token_amount_raw TEXT,  -- integer as decimal text
            token_decimals INTEGER,
            entry_price_sol REAL,
            strategy_json TEXT,
            state_json TEXT,
            pnl_sol REAL,
            notes TEXT
        );

        -- At most one OPEN position per mint
        CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_open_mint
            ON positions(mint) WHERE status = 'OPEN';

        CREATE TABLE IF NOT EXISTS tx_attempts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL CHECK(kind IN ('ENTRY', 'EXIT')),
            mint TEXT NOT NULL,
            position_id TEXT,
            venue TEXT NOT NULL,
            amount_sol REAL,
            status TEXT NOT NULL
                CHECK(status IN ('STARTED', 'SUBMITTED', 'CONFIRMED', 'FAILED')),
            signature TEXT,
            error TEXT,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS risk_ledger (
            date TEXT PRIMARY KEY,
            realized_pnl_sol REAL NOT NULL DEFAULT 0,
            circuit_breaker_trips INTEGER NOT NULL DEFAULT 0,
            updated_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS mint_governance (
            mint TEXT PRIMARY KEY,
            mode TEXT NOT NULL CHECK(mode IN ('ALLOW', 'BLOCK')),
            reason TEXT,
            updated_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS action_dedupe (
            key TEXT PRIMARY KEY,
            expires_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS paper_ledger (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts INTEGER NOT NULL,
            kind TEXT NOT NULL,
            mint TEXT,
            sol_delta REAL NOT NULL,
            note TEXT
        );

        CREATE TABLE IF NOT EXISTS paper_balances (
            mint TEXT PRIMARY KEY,
            amount_raw TEXT NOT NULL,
            decimals INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS ai_entries (
            entry_id TEXT PRIMARY KEY,
            features_json TEXT NOT NULL,
            action TEXT NOT NULL,
            controller TEXT NOT NULL CHECK(controller IN ('system', 'ai')),
            opened_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS ai_outcomes (
            entry_id TEXT PRIMARY KEY,
            reward REAL NOT NULL,
            closed_at INTEGER NOT NULL
        );

        -- Linear policy weights, one row per action
        CREATE TABLE IF NOT EXISTS ai_model_weights (
            action TEXT PRIMARY KEY,
            weights_json TEXT NOT NULL,
            bias REAL NOT NULL,
            visit_count INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS ai_model_meta (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            version INTEGER NOT NULL,
            feature_keys_json TEXT NOT NULL,
            trained_samples INTEGER NOT NULL,
            updated_at_ms INTEGER NOT NULL
        );

        -- Append-only log of AI-controlled realized PnL
        CREATE TABLE IF NOT EXISTS ai_pnl_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts INTEGER NOT NULL,
            pnl_sol REAL NOT NULL,
            entry_id TEXT
        );

        CREATE TABLE IF NOT EXISTS thought_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            category TEXT NOT NULL,
            message TEXT NOT NULL,
            severity TEXT DEFAULT 'info',
            metadata TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
        CREATE INDEX IF NOT EXISTS idx_tx_attempts_mint ON tx_attempts(mint);
        CREATE INDEX IF NOT EXISTS idx_ai_outcomes_closed ON ai_outcomes(closed_at);
        CREATE INDEX IF NOT EXISTS idx_ai_pnl_events_ts ON ai_pnl_events(ts);
        """
        await self._db.executescript(schema_sql)
        await self._db.commit()

    def _ensure_ready(self) -> None:
        if not self._initialized or self._db is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")

    @staticmethod
    def _ts() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def parse_dt(value: Any) -> Optional[datetime]:
        """Parse ISO timestamps into an aware UTC datetime."""
        if not value:
            return None
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except (ValueError, TypeError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    async def _fetchall(self, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(sql, params)
            columns = [d[0] for d in cursor.description]
            rows = await cursor.fetchall()
        return [dict(zip(columns, row)) for row in rows]

    async def _fetchone(self, sql: str, params: Tuple = ()) -> Optional[Dict[str, Any]]:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Thought Log (audit feed)
    # ------------------------------------------------------------------

    async def log_thought(
        self,
        category: str,
        message: str,
        severity: str = "info",
        metadata: Optional[Dict] = None,
    ) -> None:
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO thought_log (timestamp, category, message, severity, metadata)
                VALUES (?, ?, ?, ?, ?)""",
                (self._ts(), category, message, severity, json.dumps(metadata or {}, default=str)),
            )

    async def get_thoughts(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """SELECT timestamp, category, message, severity, metadata
            FROM thought_log ORDER BY id DESC LIMIT ?""",
            (limit,),
        )
        for d in rows:
            if d["metadata"]:
                try:
                    d["metadata"] = json.loads(d["metadata"])
                except json.JSONDecodeError:
                    pass
        return rows

    # ------------------------------------------------------------------
    # Settings (operator controls)
    # ------------------------------------------------------------------

    async def set_state(self, key: str, value: Any) -> None:
        async with self._transaction() as db:
            await db.execute(
                """INSERT OR REPLACE INTO settings (key, value, updated_at)
                VALUES (?, ?, ?)""",
                (key, json.dumps(value), now_ms()),
            )

    async def get_state(self, key: str, default: Any = None) -> Any:
        row = await self._fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        if row:
            try:
                return json.loads(row["value"])
            except json.JSONDecodeError:
                return row["value"]
        return default

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    async def upsert_discovered(self, mint: str, source: str, slot: Optional[int] = None) -> None:
        ts = now_ms()
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO candidates
                (mint, source, status, first_seen_at, last_seen_at, first_seen_slot, last_seen_slot)
                VALUES (?, ?, 'DISCOVERED', ?, ?, ?, ?)
                ON CONFLICT(mint) DO UPDATE SET
                    last_seen_at = excluded.last_seen_at,
                    last_seen_slot = COALESCE(excluded.last_seen_slot, candidates.last_seen_slot)""",
                (mint, source, ts, ts, slot, slot),
            )

    async def add_manual_candidate(self, mint: str) -> None:
        await self.upsert_discovered(mint, "manual")

    async def list_candidates(self, limit: int = 250) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM candidates ORDER BY id ASC LIMIT ?", (limit,)
        )
        for r in rows:
            r["score"] = json.loads(r["score_json"]) if r.get("score_json") else None
        return rows

    async def remove_candidate(self, mint: str) -> None:
        async with self._transaction() as db:
            await db.execute("DELETE FROM candidates WHERE mint = ?", (mint,))

    async def mark_scored(
        self,
        mint: str,
        confidence: float,
        pump_probability: float,
        rug_probability: float,
        reasons: List[str],
    ) -> None:
        score = {
            "confidence": confidence,
            "pump_probability": pump_probability,
            "rug_probability": rug_probability,
            "reasons": list(reasons),
        }
        async with self._transaction() as db:
            await db.execute(
                "UPDATE candidates SET status = 'SCORED', score_json = ?, last_seen_at = ? WHERE mint = ?",
                (json.dumps(score), now_ms(), mint),
            )

    async def count_candidates(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM candidates")
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    POSITION_ENTRY_COLUMNS = frozenset({
        "entry_cost_sol", "entry_token_amount_raw", "token_decimals", "entry_price_sol",
    })

    async def open_position(
        self,
        mint: str,
        size_sol: float,
        *,
        entry_signature: Optional[str] = None,
        entry_cost_sol: Optional[float] = None,
        entry_token_amount_raw: Optional[int] = None,
        token_decimals: Optional[int] = None,
        entry_price_sol: Optional[float] = None,
        strategy: Optional[Dict[str, Any]] = None,
        state_json: Optional[str] = None,
        opened_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        position_id = str(uuid.uuid4())
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO positions
                (id, mint, opened_at, size_sol, status, entry_signature, entry_cost_sol,
                 entry_token_amount_raw, token_decimals, entry_price_sol, strategy_json, state_json)
                VALUES (?, ?, ?, ?, 'OPEN', ?, ?, ?, ?, ?, ?, ?)""",
                (
                    position_id, mint, opened_at or self._ts(), size_sol, entry_signature,
                    entry_cost_sol,
                    str(entry_token_amount_raw) if entry_token_amount_raw is not None else None,
                    token_decimals, entry_price_sol,
                    json.dumps(strategy or {}), state_json,
                ),
            )
        return await self.get_position(position_id)

    async def get_position(self, position_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM positions WHERE id = ?", (position_id,))

    async def get_open_positions(self) -> List[Dict[str, Any]]:
        return await self._fetchall(
            "SELECT * FROM positions WHERE status = 'OPEN' ORDER BY opened_at ASC"
        )

    async def list_positions(self, limit: int = 100) -> List[Dict[str, Any]]:
        return await self._fetchall(
            "SELECT * FROM positions ORDER BY opened_at DESC LIMIT ?", (limit,)
        )

    async def update_position_state(
        self, position_id: str, state_json: str, notes: Optional[str] = None
    ) -> None:
        async with self._transaction() as db:
            if notes is None:
                await db.execute(
                    "UPDATE positions SET state_json = ? WHERE id = ?", (state_json, position_id)
                )
            else:
                await db.execute(
                    "UPDATE positions SET state_json = ?, notes = ? WHERE id = ?",
                    (state_json, notes, position_id),
                )

    async def update_entry_fields(self, position_id: str, fields: Dict[str, Any]) -> None:
        """Backfill entry settlement columns. Only whitelisted columns allowed."""
        set_clauses = []
        values: List[Any] = []
        for key, value in fields.items():
            if key not in self.POSITION_ENTRY_COLUMNS:
                raise ValueError(f"Column '{key}' not allowed in entry updates")
            if value is None:
                continue
            if key == "entry_token_amount_raw":
                value = str(value)
            set_clauses.append(f"{key} = ?")
            values.append(value)
        if not set_clauses:
            return
        values.append(position_id)
        async with self._transaction() as db:
            await db.execute(
                f"UPDATE positions SET {', '.join(set_clauses)} WHERE id = ?", values
            )

    async def close_position(
        self,
        position_id: str,
        *,
        pnl_sol: float,
        exit_signature: Optional[str] = None,
        state_json: Optional[str] = None,
        status: str = "CLOSED",
        notes: Optional[str] = None,
    ) -> bool:
        """Close an OPEN position. Returns False when it was already terminal."""
        async with self._transaction() as db:
            cursor = await db.execute(
                """UPDATE positions
                SET status = ?, closed_at = ?, pnl_sol = ?, exit_signature = ?,
                    state_json = COALESCE(?, state_json), notes = COALESCE(?, notes)
                WHERE id = ? AND status = 'OPEN'""",
                (status, self._ts(), pnl_sol, exit_signature, state_json, notes, position_id),
            )
            return cursor.rowcount > 0

    async def count_open_positions(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM positions WHERE status = 'OPEN'")
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Transaction attempts
    # ------------------------------------------------------------------

    async def start_tx_attempt(
        self,
        kind: str,
        mint: str,
        venue: str,
        amount_sol: Optional[float] = None,
        position_id: Optional[str] = None,
    ) -> int:
        ts = now_ms()
        async with self._transaction() as db:
            cursor = await db.execute(
                """INSERT INTO tx_attempts
                (kind, mint, position_id, venue, amount_sol, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'STARTED', ?, ?)""",
                (kind, mint, position_id, venue, amount_sol, ts, ts),
            )
            return int(cursor.lastrowid)

    async def mark_tx_submitted(self, attempt_id: int, signature: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                "UPDATE tx_attempts SET status = 'SUBMITTED', signature = ?, updated_at = ? WHERE id = ?",
                (signature, now_ms(), attempt_id),
            )

    async def mark_tx_confirmed(self, attempt_id: int) -> None:
        async with self._transaction() as db:
            await db.execute(
                "UPDATE tx_attempts SET status = 'CONFIRMED', updated_at = ? WHERE id = ?",
                (now_ms(), attempt_id),
            )

    async def mark_tx_failed(self, attempt_id: int, error: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                "UPDATE tx_attempts SET status = 'FAILED', error = ?, updated_at = ? WHERE id = ?",
                (str(error)[:500], now_ms(), attempt_id),
            )

    async def list_tx_attempts(self, mint: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if mint:
            return await self._fetchall(
                "SELECT * FROM tx_attempts WHERE mint = ? ORDER BY id ASC LIMIT ?", (mint, limit)
            )
        return await self._fetchall("SELECT * FROM tx_attempts ORDER BY id ASC LIMIT ?", (limit,))

    # ------------------------------------------------------------------
    # Risk ledger (one row per UTC day)
    # ------------------------------------------------------------------

    async def get_risk_day(self, date: str) -> Dict[str, Any]:
        async with self._transaction() as db:
            await db.execute(
                "INSERT OR IGNORE INTO risk_ledger (date, updated_at) VALUES (?, ?)",
                (date, now_ms()),
            )
            cursor = await db.execute(
                "SELECT date, realized_pnl_sol, circuit_breaker_trips FROM risk_ledger WHERE date = ?",
                (date,),
            )
            row = await cursor.fetchone()
        return {"date": row[0], "realized_pnl_sol": float(row[1]), "circuit_breaker_trips": int(row[2])}

    async def add_realized_pnl(self, date: str, delta_sol: float) -> None:
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO risk_ledger (date, realized_pnl_sol, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    realized_pnl_sol = risk_ledger.realized_pnl_sol + excluded.realized_pnl_sol,
                    updated_at = excluded.updated_at""",
                (date, float(delta_sol), now_ms()),
            )

    async def increment_circuit_breaker(self, date: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO risk_ledger (date, circuit_breaker_trips, updated_at) VALUES (?, 1, ?)
                ON CONFLICT(date) DO UPDATE SET
                    circuit_breaker_trips = risk_ledger.circuit_breaker_trips + 1,
                    updated_at = excluded.updated_at""",
                (date, now_ms()),
            )

    # ------------------------------------------------------------------
    # Governance
    # ------------------------------------------------------------------

    async def get_governance(self, mint: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM mint_governance WHERE mint = ?", (mint,))

    async def set_governance(self, mint: str, mode: str, reason: Optional[str] = None) -> None:
        mode = mode.upper()
        if mode not in ("ALLOW", "BLOCK"):
            raise ValueError(f"Invalid governance mode: {mode}")
        async with self._transaction() as db:
            await db.execute(
                """INSERT OR REPLACE INTO mint_governance (mint, mode, reason, updated_at)
                VALUES (?, ?, ?, ?)""",
                (mint, mode, reason, now_ms()),
            )

    async def remove_governance(self, mint: str) -> None:
        async with self._transaction() as db:
            await db.execute("DELETE FROM mint_governance WHERE mint = ?", (mint,))

    async def list_governance(self) -> List[Dict[str, Any]]:
        return await self._fetchall("SELECT * FROM mint_governance ORDER BY updated_at DESC")

    # ------------------------------------------------------------------
    # Dedupe claims
    # ------------------------------------------------------------------

    async def claim(self, key: str, ttl_ms: int, at_ms: Optional[int] = None) -> bool:
        """Insert ``key`` until ``at_ms + ttl_ms``. False if an unexpired claim exists."""
        ts = now_ms() if at_ms is None else at_ms
        self._ensure_ready()
        async with self._timed_lock():
            try:
                await self._db.execute("DELETE FROM action_dedupe WHERE expires_at <= ?", (ts,))
                await self._db.execute(
                    "INSERT INTO action_dedupe (key, expires_at) VALUES (?, ?)",
                    (key, ts + max(0, int(ttl_ms))),
                )
                await self._db.commit()
                return True
            except aiosqlite.IntegrityError:
                # Keep the expiry sweep; only the insert lost.
                await self._db.commit()
                return False
            except BaseException:
                await self._db.rollback()
                raise

    # ------------------------------------------------------------------
    # Paper ledger and balances
    # ------------------------------------------------------------------

    async def record_paper_ledger(
        self, kind: str, sol_delta: float, mint: Optional[str] = None, note: Optional[str] = None
    ) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO paper_ledger (ts, kind, mint, sol_delta, note) VALUES (?, ?, ?, ?, ?)",
                (now_ms(), kind, mint, float(sol_delta), note),
            )

    async def get_paper_sol_balance(self, initial_sol: float) -> float:
        row = await self._fetchone("SELECT COALESCE(SUM(sol_delta), 0) AS total FROM paper_ledger")
        return float(initial_sol) + float(row["total"] if row else 0.0)

    async def get_paper_balance(self, mint: str) -> Tuple[int, int]:
        """Return (amount_raw, decimals); (0, 0) when the mint was never held."""
        row = await self._fetchone(
            "SELECT amount_raw, decimals FROM paper_balances WHERE mint = ?", (mint,)
        )
        if not row:
            return 0, 0
        return int(row["amount_raw"]), int(row["decimals"])

    async def upsert_paper_balance(self, mint: str, amount_raw: int, decimals: int) -> None:
        async with self._transaction() as db:
            await db.execute(
                """INSERT OR REPLACE INTO paper_balances (mint, amount_raw, decimals, updated_at)
                VALUES (?, ?, ?, ?)""",
                (mint, str(max(0, int(amount_raw))), int(decimals), now_ms()),
            )

    # ------------------------------------------------------------------
    # AI entries / outcomes
    # ------------------------------------------------------------------

    async def upsert_ai_entry(
        self, entry_id: str, features_json: str, action: str, controller: str, opened_at: int
    ) -> None:
        async with self._transaction() as db:
            await db.execute(
                """INSERT OR REPLACE INTO ai_entries (entry_id, features_json, action, controller, opened_at)
                VALUES (?, ?, ?, ?, ?)""",
                (entry_id, features_json, action, controller, int(opened_at)),
            )

    async def get_ai_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM ai_entries WHERE entry_id = ?", (entry_id,))

    async def get_ai_outcome(self, entry_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM ai_outcomes WHERE entry_id = ?", (entry_id,))

    async def insert_ai_outcome(self, entry_id: str, reward: float, closed_at: int) -> bool:
        """Write the outcome once. False when one already exists for the entry."""
        async with self._transaction() as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO ai_outcomes (entry_id, reward, closed_at) VALUES (?, ?, ?)",
                (entry_id, float(reward), int(closed_at)),
            )
            return cursor.rowcount > 0

    async def load_ai_samples(self, since_ms: int) -> List[Dict[str, Any]]:
        """Entry/outcome pairs closed at or after ``since_ms``, oldest first."""
        return await self._fetchall(
            """SELECT e.entry_id, e.features_json, e.action, e.controller, e.opened_at,
                      o.reward, o.closed_at
            FROM ai_outcomes o JOIN ai_entries e ON e.entry_id = o.entry_id
            WHERE o.closed_at >= ?
            ORDER BY o.closed_at ASC, o.entry_id ASC""",
            (int(since_ms),),
        )

    # ------------------------------------------------------------------
    # AI model weights
    # ------------------------------------------------------------------

    async def load_ai_model(self) -> Optional[Dict[str, Any]]:
        meta = await self._fetchone("SELECT * FROM ai_model_meta WHERE id = 1")
        if not meta:
            return None
        rows = await self._fetchall("SELECT * FROM ai_model_weights")
        return {
            "version": meta["version"],
            "feature_keys_json": meta["feature_keys_json"],
            "trained_samples": meta["trained_samples"],
            "updated_at_ms": meta["updated_at_ms"],
            "actions": rows,
        }

    async def save_ai_model(
        self,
        version: int,
        feature_keys: List[str],
        trained_samples: int,
        updated_at_ms: int,
        actions: List[Tuple[str, List[float], float, int]],
    ) -> None:
        """Replace the stored model atomically. ``actions`` = (action, weights, bias, visits)."""
        async with self._transaction() as db:
            await db.execute("DELETE FROM ai_model_weights")
            await db.executemany(
                """INSERT INTO ai_model_weights (action, weights_json, bias, visit_count)
                VALUES (?, ?, ?, ?)""",
                [(a, json.dumps(list(w)), float(b), int(n)) for a, w, b, n in actions],
            )
            await db.execute(
                """INSERT OR REPLACE INTO ai_model_meta
                (id, version, feature_keys_json, trained_samples, updated_at_ms)
                VALUES (1, ?, ?, ?, ?)""",
                (int(version), json.dumps(list(feature_keys)), int(trained_samples), int(updated_at_ms)),
            )

    # ------------------------------------------------------------------
    # AI PnL event log
    # ------------------------------------------------------------------

    async def append_ai_pnl_event(
        self,
        ts: int,
        pnl_sol: float,
        entry_id: Optional[str],
        keep_last: int = 500,
        prune_before_ms: Optional[int] = None,
    ) -> None:
        async with self._transaction() as db:
            await db.execute(
                "INSERT INTO ai_pnl_events (ts, pnl_sol, entry_id) VALUES (?, ?, ?)",
                (int(ts), float(pnl_sol), entry_id),
            )
            if prune_before_ms is not None:
                await db.execute("DELETE FROM ai_pnl_events WHERE ts < ?", (int(prune_before_ms),))
            await db.execute(
                """DELETE FROM ai_pnl_events WHERE id NOT IN
                (SELECT id FROM ai_pnl_events ORDER BY ts DESC, id DESC LIMIT ?)""",
                (int(keep_last),),
            )

    async def list_ai_pnl_events(self, since_ms: int, until_ms: int) -> List[Dict[str, Any]]:
        return await self._fetchall(
            "SELECT ts, pnl_sol, entry_id FROM ai_pnl_events WHERE ts >= ? AND ts <= ? ORDER BY ts ASC",
            (int(since_ms), int(until_ms)),
        )

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close database connection gracefully."""
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False
