# Coinmeter Coin Ledger
# Owner balances + immutable ledger entries. A balance mutation and the entry
# recording it are always written in the same SQLite transaction, so
# balance_after on every entry is exactly the balance that entry produced.
#
# Money is decimal.Decimal everywhere in Python and INTEGER minor units in
# SQLite. Never float.

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from db import sqlite_connection, sqlite_transaction

log = logging.getLogger("coinmeter")


# ── Money ─────────────────────────────────────────────────────────────

# Smallest amount the ledger can hold.
COIN_UNIT = Decimal("0.01")
MINOR_PER_COIN = 100


def to_decimal(value) -> Decimal:
    """Coerce user/config input to Decimal. Floats go through str() so 0.1
    stays 0.1 instead of its binary expansion."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Not a valid amount: {value!r}")


def ceil_to_unit(amount: Decimal) -> Decimal:
    """Round up to the ledger's minimum unit."""
    return amount.quantize(COIN_UNIT, rounding=ROUND_CEILING)


def to_minor(amount: Decimal) -> int:
    """Decimal coins -> integer minor units. Amount must already be on the unit grid."""
    quantized = amount.quantize(COIN_UNIT)
    if quantized != amount:
        raise ValueError(f"{amount} is finer than the ledger unit {COIN_UNIT}")
    return int(quantized * MINOR_PER_COIN)


def from_minor(units: int) -> Decimal:
    return (Decimal(int(units)) / MINOR_PER_COIN).quantize(COIN_UNIT)


# ── Ledger entries ────────────────────────────────────────────────────


class LedgerWriteError(Exception):
    """A ledger transaction could not be applied. Nothing was written."""


class EntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


@dataclass
class LedgerEntry:
    """Immutable audit record of one balance change."""
    owner_id: str = ""
    entry_type: str = EntryType.DEBIT.value
    amount: Decimal = Decimal("0")
    description: str = ""
    balance_after: Decimal = Decimal("0")
    metadata: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    entry_id: str = field(default_factory=lambda: f"TX-{uuid.uuid4().hex[:16]}")

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount"] = str(self.amount)
        d["balance_after"] = str(self.balance_after)
        return d

    @classmethod
    def from_row(cls, row) -> "LedgerEntry":
        try:
            metadata = json.loads(row["metadata"] or "{}")
        except json.JSONDecodeError:
            metadata = {}
        return cls(
            entry_id=row["entry_id"],
            owner_id=row["owner_id"],
            entry_type=row["entry_type"],
            amount=from_minor(row["amount_minor"]),
            description=row["description"] or "",
            balance_after=from_minor(row["balance_after_minor"]),
            metadata=metadata,
            created_at=row["created_at"],
        )


# ── Ledger store ──────────────────────────────────────────────────────


class LedgerStore:
    """Transactional coin ledger.

    The low-level primitives (decrement_balance, increment_balance,
    append_entry) take the open connection from with_transaction() so callers
    can compose them into one atomic unit. debit() and credit() are that
    composition.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def with_transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.
        sqlite errors surface as LedgerWriteError."""
        try:
            with sqlite_transaction(self.db_path) as conn:
                yield conn
        except sqlite3.Error as e:
            raise LedgerWriteError(f"ledger transaction failed: {e}") from e

    def decrement_balance(self, conn, owner_id: str, amount: Decimal) -> Decimal:
        """Take amount from owner's balance. Guarded: never goes below zero.
        Returns the new balance."""
        units = to_minor(amount)
        cur = conn.execute(
            "UPDATE owners SET balance_minor = balance_minor - ? "
            "WHERE owner_id = ? AND balance_minor >= ?",
            (units, owner_id, units),
        )
        if cur.rowcount != 1:
            raise LedgerWriteError(
                f"cannot debit {amount} from {owner_id}: owner missing or balance too low"
            )
        return self._balance_in(conn, owner_id)

    def increment_balance(self, conn, owner_id: str, amount: Decimal) -> Decimal:
        units = to_minor(amount)
        cur = conn.execute(
            "UPDATE owners SET balance_minor = balance_minor + ? WHERE owner_id = ?",
            (units, owner_id),
        )
        if cur.rowcount != 1:
            raise LedgerWriteError(f"cannot credit {owner_id}: owner missing")
        return self._balance_in(conn, owner_id)

    def append_entry(self, conn, entry: LedgerEntry) -> LedgerEntry:
        if entry.amount <= 0:
            raise LedgerWriteError(f"ledger amount must be positive, got {entry.amount}")
        conn.execute(
            """INSERT INTO ledger_entries
               (entry_id, owner_id, entry_type, amount_minor, description,
                balance_after_minor, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.entry_id, entry.owner_id, EntryType(entry.entry_type).value,
                to_minor(entry.amount), entry.description,
                to_minor(entry.balance_after),
                json.dumps(entry.metadata, sort_keys=True, default=str),
                entry.created_at,
            ),
        )
        return entry

    def debit(self, owner_id: str, amount: Decimal, description: str = "",
              metadata: Optional[dict] = None) -> LedgerEntry:
        """Atomically take amount from owner and record the debit."""
        amount = to_decimal(amount)
        with self.with_transaction() as conn:
            balance_after = self.decrement_balance(conn, owner_id, amount)
            entry = self.append_entry(conn, LedgerEntry(
                owner_id=owner_id,
                entry_type=EntryType.DEBIT.value,
                amount=amount,
                description=description,
                balance_after=balance_after,
                metadata=metadata or {},
            ))
        log.info("DEBIT %s -%s coins balance=%s", owner_id, amount, balance_after)
        return entry

    def credit(self, owner_id: str, amount: Decimal, description: str = "Coin top-up",
               metadata: Optional[dict] = None) -> LedgerEntry:
        """Atomically add amount to owner and record the credit."""
        amount = to_decimal(amount)
        with self.with_transaction() as conn:
            balance_after = self.increment_balance(conn, owner_id, amount)
            entry = self.append_entry(conn, LedgerEntry(
                owner_id=owner_id,
                entry_type=EntryType.CREDIT.value,
                amount=amount,
                description=description,
                balance_after=balance_after,
                metadata=metadata or {},
            ))
        log.info("CREDIT %s +%s coins balance=%s", owner_id, amount, balance_after)
        return entry

    def get_balance(self, owner_id: str) -> Optional[Decimal]:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT balance_minor FROM owners WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        return from_minor(row["balance_minor"]) if row else None

    def list_entries(self, owner_id: str, limit: int = 50) -> list[LedgerEntry]:
        """Newest first."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM ledger_entries WHERE owner_id = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT ?""",
                (owner_id, limit),
            ).fetchall()
        return [LedgerEntry.from_row(r) for r in rows]

    @staticmethod
    def _balance_in(conn, owner_id: str) -> Decimal:
        row = conn.execute(
            "SELECT balance_minor FROM owners WHERE owner_id = ?", (owner_id,)
        ).fetchone()
        return from_minor(row["balance_minor"])
