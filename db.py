# Coinmeter Database Layer
# SQLite with WAL. One file holds settings, owners, resources, the coin
# ledger and the audit event log.
#
# Balances and ledger amounts are stored as INTEGER minor units (1/100 coin)
# so SQL arithmetic on them is exact.

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Optional

log = logging.getLogger("coinmeter")


# ── Schema ────────────────────────────────────────────────────────────


def _ensure_sqlite_tables(conn):
    """Ensure all tables and indexes exist. Idempotent."""
    conn.execute(
        "CREATE TABLE IF NOT EXISTS state "
        "(namespace TEXT PRIMARY KEY, payload TEXT NOT NULL)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS owners (
            owner_id TEXT PRIMARY KEY,
            name TEXT DEFAULT '',
            balance_minor INTEGER NOT NULL DEFAULT 0 CHECK (balance_minor >= 0),
            is_banned INTEGER NOT NULL DEFAULT 0,
            created_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS resources (
            resource_id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL REFERENCES owners(owner_id),
            name TEXT DEFAULT '',
            ram_mb INTEGER NOT NULL CHECK (ram_mb > 0),
            disk_mb INTEGER DEFAULT 0,
            cpu_cores INTEGER DEFAULT 0,
            status TEXT NOT NULL,
            is_suspended INTEGER NOT NULL DEFAULT 0,
            suspended_at REAL,
            suspended_by TEXT,
            suspend_reason TEXT,
            external_id TEXT,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            CHECK (is_suspended = (status = 'suspended'))
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger_entries (
            entry_id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL REFERENCES owners(owner_id),
            entry_type TEXT NOT NULL CHECK (entry_type IN ('credit', 'debit')),
            amount_minor INTEGER NOT NULL CHECK (amount_minor > 0),
            description TEXT DEFAULT '',
            balance_after_minor INTEGER NOT NULL,
            metadata TEXT DEFAULT '{}',
            created_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            event_id TEXT PRIMARY KEY,
            event_type TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            timestamp REAL NOT NULL,
            actor TEXT DEFAULT '',
            data TEXT DEFAULT '{}',
            prev_hash TEXT DEFAULT '',
            event_hash TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_resources_billing "
        "ON resources(status, is_suspended)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_resources_suspend_reason "
        "ON resources(suspend_reason)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_ledger_owner "
        "ON ledger_entries(owner_id, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_entity "
        "ON events(entity_type, entity_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_time "
        "ON events(timestamp)"
    )


# ── Connections ───────────────────────────────────────────────────────


@contextmanager
def sqlite_connection(db_path: str):
    """SQLite connection with WAL mode enabled. Autocommit unless a
    transaction is opened explicitly."""
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    _ensure_sqlite_tables(conn)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def sqlite_transaction(db_path: str):
    """Execute a mutation in a single SQLite write transaction."""
    with sqlite_connection(db_path) as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise


# ── Namespaced state (settings) ───────────────────────────────────────


def load_state(db_path: str, namespace: str) -> Optional[dict]:
    """Read a JSON payload stored under namespace. None when absent."""
    with sqlite_connection(db_path) as conn:
        row = conn.execute(
            "SELECT payload FROM state WHERE namespace = ?", (namespace,)
        ).fetchone()
    if not row:
        return None
    try:
        payload = json.loads(row["payload"])
    except (TypeError, json.JSONDecodeError):
        log.warning("STATE %s holds an unreadable payload, ignoring", namespace)
        return None
    return payload if isinstance(payload, dict) else None


def save_state(db_path: str, namespace: str, payload: dict):
    """Upsert a JSON payload under namespace."""
    with sqlite_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO state(namespace, payload) VALUES (?, ?)
            ON CONFLICT(namespace) DO UPDATE SET payload = excluded.payload
            """,
            (namespace, json.dumps(payload, sort_keys=True)),
        )


def storage_healthcheck(db_path: str) -> dict:
    """Cheap read against the database for readiness probes."""
    started = time.time()
    try:
        with sqlite_connection(db_path) as conn:
            conn.execute("SELECT 1").fetchone()
    except sqlite3.Error as e:
        return {"ok": False, "backend": "sqlite", "error": str(e)}
    return {
        "ok": True,
        "backend": "sqlite",
        "latency_ms": round((time.time() - started) * 1000, 2),
    }
