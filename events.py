# Coinmeter Domain Events
# The billing core emits typed events (charge applied, resource suspended,
# resource resumed) into an EventBus and moves on. Delivery happens on a
# background thread; a listener that fails is logged and never reaches the
# core.
#
# EventStore is the built-in listener: an append-only audit log in SQLite.
# TAMPER-EVIDENT: each event carries the SHA-256 hash of the previous event,
# so replaying the chain detects edits or deletions.

import hashlib
import json
import logging
import queue
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

from db import sqlite_connection, sqlite_transaction

log = logging.getLogger("coinmeter")


class EventType(str, Enum):
    CHARGE_APPLIED = "billing.charged"
    CREDIT_APPLIED = "billing.credited"
    RESOURCE_SUSPENDED = "resource.suspended"
    RESOURCE_RESUMED = "resource.resumed"


@dataclass
class Event:
    """Immutable event record."""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = ""      # "resource", "owner"
    entity_id: str = ""
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # "system:billing", "admin:<name>"
    data: dict = field(default_factory=dict)
    prev_hash: str = ""
    event_hash: str = ""

    def __post_init__(self):
        if isinstance(self.event_type, EventType):
            self.event_type = self.event_type.value

    def compute_hash(self) -> str:
        """SHA-256 of the canonical payload (everything except event_hash)."""
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


def charge_applied(resource_id: str, owner_id: str, amount, balance_after,
                   entry_id: str, actor: str = "system:billing") -> Event:
    return Event(
        event_type=EventType.CHARGE_APPLIED, entity_type="resource",
        entity_id=resource_id, actor=actor,
        data={"owner_id": owner_id, "amount": str(amount),
              "balance_after": str(balance_after), "entry_id": entry_id},
    )


def credit_applied(owner_id: str, amount, balance_after, entry_id: str,
                   actor: str = "admin") -> Event:
    return Event(
        event_type=EventType.CREDIT_APPLIED, entity_type="owner",
        entity_id=owner_id, actor=actor,
        data={"amount": str(amount), "balance_after": str(balance_after),
              "entry_id": entry_id},
    )


def resource_suspended(resource_id: str, owner_id: str, reason: str,
                       remote_ok: bool, actor: str = "system:billing") -> Event:
    return Event(
        event_type=EventType.RESOURCE_SUSPENDED, entity_type="resource",
        entity_id=resource_id, actor=actor,
        data={"owner_id": owner_id, "reason": reason, "remote_ok": remote_ok},
    )


def resource_resumed(resource_id: str, owner_id: str, remote_ok: bool,
                     actor: str = "system:billing") -> Event:
    return Event(
        event_type=EventType.RESOURCE_RESUMED, entity_type="resource",
        entity_id=resource_id, actor=actor,
        data={"owner_id": owner_id, "remote_ok": remote_ok},
    )


# ── Event Store ───────────────────────────────────────────────────────


class EventStore:
    """Append-only, hash-chained audit log."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def append(self, event: Event) -> Event:
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT event_hash FROM events ORDER BY rowid DESC LIMIT 1"
            ).fetchone()
            event.prev_hash = row["event_hash"] if row else ""
            event.event_hash = event.compute_hash()
            conn.execute(
                """INSERT INTO events
                   (event_id, event_type, entity_type, entity_id, timestamp,
                    actor, data, prev_hash, event_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.event_id, event.event_type, event.entity_type,
                    event.entity_id, event.timestamp, event.actor,
                    json.dumps(event.data, sort_keys=True, default=str),
                    event.prev_hash, event.event_hash,
                ),
            )
        return event

    def get_events(self, entity_id: Optional[str] = None, event_type: Optional[str] = None,
                   limit: int = 100) -> list[Event]:
        clauses, params = [], []
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type.value if isinstance(event_type, EventType) else event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM events {where} ORDER BY rowid ASC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def verify_chain(self) -> dict:
        """Replay the whole log. Returns {"valid", "events_checked", "broken_at"}."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY rowid ASC").fetchall()

        prev = ""
        for i, row in enumerate(rows):
            event = self._from_row(row)
            if event.prev_hash != prev or event.compute_hash() != event.event_hash:
                log.warning("EVENT CHAIN broken at %s (index %d)", event.event_id, i)
                return {"valid": False, "events_checked": i, "broken_at": event.event_id}
            prev = event.event_hash
        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    @staticmethod
    def _from_row(row) -> Event:
        return Event(
            event_id=row["event_id"],
            event_type=row["event_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            timestamp=row["timestamp"],
            actor=row["actor"] or "",
            data=json.loads(row["data"] or "{}"),
            prev_hash=row["prev_hash"] or "",
            event_hash=row["event_hash"],
        )


# ── Event Bus ─────────────────────────────────────────────────────────


class EventBus:
    """Fire-and-forget outbound channel.

    emit() only enqueues. A single daemon thread hands each event to every
    subscribed listener in order.
    """

    def __init__(self):
        self._listeners: list[Callable[[Event], None]] = []
        self._lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue()
        self._worker: Optional[threading.Thread] = None

    def subscribe(self, listener: Callable[[Event], None]):
        with self._lock:
            self._listeners.append(listener)

    def emit(self, event: Event):
        self._ensure_worker()
        self._queue.put(event)

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every emitted event has been delivered. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def _ensure_worker(self):
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._deliver_loop, daemon=True, name="event-bus"
                )
                self._worker.start()

    def _deliver_loop(self):
        while True:
            event = self._queue.get()
            try:
                with self._lock:
                    listeners = list(self._listeners)
                for listener in listeners:
                    try:
                        listener(event)
                    except Exception as e:
                        log.error("EVENT delivery of %s to %s failed: %s",
                                  event.event_type, getattr(listener, "__name__", listener), e)
            finally:
                self._queue.task_done()
