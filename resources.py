# Coinmeter Managed Resources
# Owners and the externally-provisioned resources they pay for.
#
# Resource lifecycle:  installing → active ⇄ suspended → deleted
# (running is treated like active for billing)

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from db import sqlite_connection, sqlite_transaction
from ledger import from_minor, to_decimal, to_minor

log = logging.getLogger("coinmeter")


class ResourceStatus(str, Enum):
    INSTALLING = "installing"
    ACTIVE = "active"
    RUNNING = "running"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class SuspendReason(str, Enum):
    INSUFFICIENT_COINS = "INSUFFICIENT_COINS"   # billing-driven, auto-resumable
    MANUAL = "MANUAL"                           # admin-driven, never auto-resumed


BILLABLE_STATUSES = (ResourceStatus.ACTIVE.value, ResourceStatus.RUNNING.value)

# Columns update_resource_status() may write.
MUTABLE_FIELDS = frozenset({
    "status", "is_suspended", "suspended_at", "suspended_by", "suspend_reason",
    "external_id", "name",
})


class ResourceNotFound(KeyError):
    pass


@dataclass
class Owner:
    owner_id: str = ""
    name: str = ""
    coin_balance: Decimal = Decimal("0")
    is_banned: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["coin_balance"] = str(self.coin_balance)
        return d


@dataclass
class ManagedResource:
    """A provisioned compute unit whose running time is metered."""
    resource_id: str = field(default_factory=lambda: f"res-{uuid.uuid4().hex[:12]}")
    owner_id: str = ""
    name: str = ""
    ram_mb: int = 1024
    disk_mb: int = 0
    cpu_cores: int = 0
    status: str = ResourceStatus.INSTALLING.value
    is_suspended: bool = False
    suspended_at: Optional[float] = None
    suspended_by: Optional[str] = None
    suspend_reason: Optional[str] = None
    external_id: Optional[str] = None
    owner: Optional[Owner] = None

    @property
    def ram_gb(self) -> Decimal:
        return Decimal(self.ram_mb) / 1024

    def to_dict(self) -> dict:
        d = asdict(self)
        if self.owner is not None:
            d["owner"] = self.owner.to_dict()
        return d


def _resource_from_row(row, with_owner: bool = False) -> ManagedResource:
    owner = None
    if with_owner:
        owner = Owner(
            owner_id=row["owner_id"],
            name=row["owner_name"] or "",
            coin_balance=from_minor(row["balance_minor"]),
            is_banned=bool(row["is_banned"]),
        )
    return ManagedResource(
        resource_id=row["resource_id"],
        owner_id=row["owner_id"],
        name=row["name"] or "",
        ram_mb=int(row["ram_mb"]),
        disk_mb=int(row["disk_mb"] or 0),
        cpu_cores=int(row["cpu_cores"] or 0),
        status=row["status"],
        is_suspended=bool(row["is_suspended"]),
        suspended_at=row["suspended_at"],
        suspended_by=row["suspended_by"],
        suspend_reason=row["suspend_reason"],
        external_id=row["external_id"],
        owner=owner,
    )


_SELECT_WITH_OWNER = """
    SELECT r.*, o.name AS owner_name, o.balance_minor, o.is_banned
    FROM resources r JOIN owners o ON o.owner_id = r.owner_id
"""


class ResourceStore:
    """SQLite-backed owners + managed resources."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    # ── Owners ───────────────────────────────────────────────────────

    def create_owner(self, owner_id: str, name: str = "", balance=0,
                     is_banned: bool = False) -> Owner:
        """Create an owner with an opening balance. Top-ups after this go
        through the ledger so they leave an audit entry."""
        balance = to_decimal(balance)
        with sqlite_connection(self.db_path) as conn:
            conn.execute(
                """INSERT INTO owners (owner_id, name, balance_minor, is_banned, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (owner_id, name, to_minor(balance), 1 if is_banned else 0, time.time()),
            )
        log.info("OWNER CREATED %s balance=%s", owner_id, balance)
        return Owner(owner_id=owner_id, name=name, coin_balance=balance, is_banned=is_banned)

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM owners WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        if not row:
            return None
        return Owner(
            owner_id=row["owner_id"],
            name=row["name"] or "",
            coin_balance=from_minor(row["balance_minor"]),
            is_banned=bool(row["is_banned"]),
        )

    def set_banned(self, owner_id: str, banned: bool = True):
        with sqlite_connection(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE owners SET is_banned = ? WHERE owner_id = ?",
                (1 if banned else 0, owner_id),
            )
        if cur.rowcount != 1:
            raise ResourceNotFound(owner_id)

    # ── Resources ────────────────────────────────────────────────────

    def create_resource(self, resource: ManagedResource) -> ManagedResource:
        if resource.ram_mb <= 0:
            raise ValueError("ram_mb must be positive")
        resource.status = ResourceStatus(resource.status).value
        if resource.suspend_reason is not None:
            resource.suspend_reason = SuspendReason(resource.suspend_reason).value
        resource.is_suspended = resource.status == ResourceStatus.SUSPENDED.value
        now = time.time()
        with sqlite_connection(self.db_path) as conn:
            conn.execute(
                """INSERT INTO resources
                   (resource_id, owner_id, name, ram_mb, disk_mb, cpu_cores,
                    status, is_suspended, suspended_at, suspended_by,
                    suspend_reason, external_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    resource.resource_id, resource.owner_id, resource.name,
                    resource.ram_mb, resource.disk_mb, resource.cpu_cores,
                    resource.status, 1 if resource.is_suspended else 0,
                    resource.suspended_at, resource.suspended_by,
                    resource.suspend_reason, resource.external_id, now, now,
                ),
            )
        log.info("RESOURCE CREATED %s owner=%s ram=%dMB status=%s",
                 resource.resource_id, resource.owner_id, resource.ram_mb, resource.status)
        return resource

    def get_resource(self, resource_id: str) -> Optional[ManagedResource]:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                _SELECT_WITH_OWNER + " WHERE r.resource_id = ?", (resource_id,)
            ).fetchone()
        return _resource_from_row(row, with_owner=True) if row else None

    def find_billing_eligible(self) -> list[ManagedResource]:
        """Active/running, not suspended, provisioned, owner not banned."""
        placeholders = ",".join("?" for _ in BILLABLE_STATUSES)
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                _SELECT_WITH_OWNER
                + f""" WHERE r.status IN ({placeholders})
                       AND r.is_suspended = 0
                       AND r.external_id IS NOT NULL AND r.external_id != ''
                       AND o.is_banned = 0
                       ORDER BY r.created_at ASC, r.resource_id ASC""",
                BILLABLE_STATUSES,
            ).fetchall()
        return [_resource_from_row(r, with_owner=True) for r in rows]

    def find_suspended_by_reason(self, reason: SuspendReason) -> list[ManagedResource]:
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                _SELECT_WITH_OWNER
                + """ WHERE r.status = ? AND r.is_suspended = 1
                      AND r.suspend_reason = ?
                      ORDER BY r.suspended_at ASC, r.resource_id ASC""",
                (ResourceStatus.SUSPENDED.value, SuspendReason(reason).value),
            ).fetchall()
        return [_resource_from_row(r, with_owner=True) for r in rows]

    def update_resource_status(self, resource_id: str, **fields) -> ManagedResource:
        """Write status/suspension fields. is_suspended always follows status."""
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        for key in ("status", "suspend_reason"):
            if isinstance(fields.get(key), Enum):
                fields[key] = fields[key].value

        if "status" in fields:
            ResourceStatus(fields["status"])
            implied = fields["status"] == ResourceStatus.SUSPENDED.value
            if "is_suspended" in fields and bool(fields["is_suspended"]) != implied:
                raise ValueError("is_suspended must match status == 'suspended'")
            fields["is_suspended"] = implied
        elif "is_suspended" in fields:
            raise ValueError("is_suspended is derived from status; set status instead")

        if "is_suspended" in fields:
            fields["is_suspended"] = 1 if fields["is_suspended"] else 0

        assignments = ", ".join(f"{k} = ?" for k in fields)
        values = list(fields.values()) + [time.time(), resource_id]
        with sqlite_transaction(self.db_path) as conn:
            cur = conn.execute(
                f"UPDATE resources SET {assignments}, updated_at = ? WHERE resource_id = ?",
                values,
            )
            if cur.rowcount != 1:
                raise ResourceNotFound(resource_id)

        return self.get_resource(resource_id)

    def list_resources(self, owner_id: Optional[str] = None) -> list[ManagedResource]:
        with sqlite_connection(self.db_path) as conn:
            if owner_id:
                rows = conn.execute(
                    _SELECT_WITH_OWNER + " WHERE r.owner_id = ? ORDER BY r.created_at ASC",
                    (owner_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    _SELECT_WITH_OWNER + " ORDER BY r.created_at ASC"
                ).fetchall()
        return [_resource_from_row(r, with_owner=True) for r in rows]
