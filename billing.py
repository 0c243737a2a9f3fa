# Coinmeter Billing Cycle Engine
# One metering pass per scheduler tick:
#   - charge every eligible resource for one interval of RAM-time
#   - suspend resources whose owners can't pay (auto_suspend)
#   - resume billing-suspended resources once owners can pay again (auto_resume)
#
# The local database is authoritative. Provisioning calls go through the
# request queue and their failures never stop a local state change.

import logging
import time
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

from db import load_state, save_state
from events import charge_applied, resource_resumed, resource_suspended
from ledger import LedgerStore, ceil_to_unit, to_decimal
from resources import (
    ManagedResource,
    ResourceNotFound,
    ResourceStatus,
    ResourceStore,
    SuspendReason,
)

log = logging.getLogger("coinmeter")

BILLING_NAMESPACE = "billing"
SYSTEM_ACTOR = "system:billing"


class ConfigurationError(ValueError):
    """Billing settings are missing or invalid. The cycle is skipped."""


# ── Configuration ─────────────────────────────────────────────────────

# Legacy camelCase keys written by the old admin panel.
_CONFIG_ALIASES = {
    "interval": "interval_minutes",
    "intervalMinutes": "interval_minutes",
    "coinsPerGbHour": "rate_per_gb_hour",
    "ratePerGbHour": "rate_per_gb_hour",
    "coinsPerGbMinute": "rate_per_gb_minute",
    "autoSuspend": "auto_suspend",
    "autoResume": "auto_resume",
    "requireOnline": "require_online",
}


def _as_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off", ""):
        return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _as_rate(name: str, value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        rate = to_decimal(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if not rate.is_finite() or rate < 0:
        raise ConfigurationError(f"{name} must be >= 0, got {value!r}")
    return rate


@dataclass(frozen=True)
class BillingConfig:
    """Admin-editable billing settings. Normalized once by from_dict()."""
    enabled: bool = False
    interval_minutes: int = 1
    rate_per_gb_hour: Decimal = Decimal("0")
    rate_per_gb_minute: Decimal = Decimal("0")
    auto_suspend: bool = False
    auto_resume: bool = False
    require_online: bool = False

    @property
    def effective_rate_per_gb_minute(self) -> Decimal:
        """Per-minute rate wins when set; otherwise the hourly rate / 60."""
        if self.rate_per_gb_minute > 0:
            return self.rate_per_gb_minute
        return self.rate_per_gb_hour / 60

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "BillingConfig":
        raw = dict(raw or {})
        for legacy, canonical in _CONFIG_ALIASES.items():
            if legacy in raw and canonical not in raw:
                raw[canonical] = raw.pop(legacy)
            else:
                raw.pop(legacy, None)

        unknown = set(raw) - set(cls.__dataclass_fields__)
        if unknown:
            log.warning("BILLING CONFIG ignoring unknown keys: %s", sorted(unknown))

        interval = raw.get("interval_minutes", 1)
        if isinstance(interval, bool):
            raise ConfigurationError("interval_minutes must be an integer")
        try:
            interval = int(interval)
        except (TypeError, ValueError):
            raise ConfigurationError(f"interval_minutes must be an integer, got {interval!r}")
        if interval <= 0:
            raise ConfigurationError(f"interval_minutes must be > 0, got {interval}")

        return cls(
            enabled=_as_bool("enabled", raw.get("enabled", False)),
            interval_minutes=interval,
            rate_per_gb_hour=_as_rate("rate_per_gb_hour", raw.get("rate_per_gb_hour")),
            rate_per_gb_minute=_as_rate("rate_per_gb_minute", raw.get("rate_per_gb_minute")),
            auto_suspend=_as_bool("auto_suspend", raw.get("auto_suspend", False)),
            auto_resume=_as_bool("auto_resume", raw.get("auto_resume", False)),
            require_online=_as_bool("require_online", raw.get("require_online", False)),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["rate_per_gb_hour"] = str(self.rate_per_gb_hour)
        d["rate_per_gb_minute"] = str(self.rate_per_gb_minute)
        return d


class SettingsStore:
    """Billing settings persisted in the `state` table."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_billing_config(self) -> BillingConfig:
        return BillingConfig.from_dict(load_state(self.db_path, BILLING_NAMESPACE))

    def save_billing_config(self, config: BillingConfig) -> BillingConfig:
        save_state(self.db_path, BILLING_NAMESPACE, config.to_dict())
        log.info("BILLING CONFIG saved: %s", config.to_dict())
        return config

    def update_billing_config(self, **changes) -> BillingConfig:
        """Merge changes into the stored config, validate, save."""
        try:
            current = self.get_billing_config().to_dict()
        except ConfigurationError:
            current = {}
        current.update({k: v for k, v in changes.items() if v is not None})
        return self.save_billing_config(BillingConfig.from_dict(current))


# ── Metering ──────────────────────────────────────────────────────────


def interval_cost(ram_mb: int, rate_per_gb_minute: Decimal, interval_minutes: int) -> Decimal:
    """Coins owed for running ram_mb for one interval, rounded up to the ledger unit."""
    ram_gb = Decimal(ram_mb) / 1024
    return ceil_to_unit(ram_gb * rate_per_gb_minute * interval_minutes)


@dataclass
class CycleReport:
    started_at: float = 0.0
    finished_at: float = 0.0
    eligible: int = 0
    charged: int = 0
    suspended: int = 0
    unbilled: int = 0      # insufficient funds, auto_suspend off
    offline: int = 0       # require_online and not running
    skipped: int = 0       # remote state unknown
    resumed: int = 0
    failed: int = 0
    total_charged: str = "0.00"

    def to_dict(self) -> dict:
        return asdict(self)


# ── Billing Engine ────────────────────────────────────────────────────


class BillingEngine:
    """Runs billing cycles and the suspend/resume transitions they drive.

    Collaborators are injected: settings, resources, ledger, a provisioning
    client (suspend/unsuspend/is_online) and an optional event bus.
    """

    def __init__(self, settings: SettingsStore, resources: ResourceStore,
                 ledger: LedgerStore, provisioning, events=None,
                 clock=time.time):
        self.settings = settings
        self.resources = resources
        self.ledger = ledger
        self.provisioning = provisioning
        self.events = events
        self._clock = clock
        self.last_report: Optional[CycleReport] = None

    # ── Cycle ────────────────────────────────────────────────────────

    def run_cycle(self) -> None:
        """One metering pass. Per-resource errors are logged, never raised.

        Errors loading the resource lists propagate; the scheduler logs them
        and the next tick tries again.
        """
        try:
            config = self.settings.get_billing_config()
        except ConfigurationError as e:
            log.warning("CYCLE skipped: billing misconfigured (%s)", e)
            return

        rate = config.effective_rate_per_gb_minute
        if not config.enabled or rate <= 0:
            log.debug("CYCLE skipped: billing disabled or no rate configured")
            return

        report = CycleReport(started_at=self._clock())
        total = Decimal("0")

        eligible = self.resources.find_billing_eligible()
        report.eligible = len(eligible)
        for resource in eligible:
            try:
                outcome, charged = self._bill_resource(resource, config, rate)
            except Exception as e:
                report.failed += 1
                log.error("CYCLE error billing %s: %s", resource.resource_id, e)
                continue
            setattr(report, outcome, getattr(report, outcome) + 1)
            total += charged

        if config.auto_resume:
            for resource in self.resources.find_suspended_by_reason(SuspendReason.INSUFFICIENT_COINS):
                try:
                    if self._maybe_resume(resource, config, rate):
                        report.resumed += 1
                except Exception as e:
                    report.failed += 1
                    log.error("CYCLE error resuming %s: %s", resource.resource_id, e)

        report.total_charged = str(total)
        report.finished_at = self._clock()
        self.last_report = report
        log.info(
            "CYCLE done eligible=%d charged=%d (%s coins) suspended=%d resumed=%d "
            "unbilled=%d offline=%d skipped=%d failed=%d",
            report.eligible, report.charged, report.total_charged, report.suspended,
            report.resumed, report.unbilled, report.offline, report.skipped, report.failed,
        )

    def _bill_resource(self, resource: ManagedResource, config: BillingConfig,
                       rate: Decimal) -> tuple[str, Decimal]:
        if config.require_online:
            try:
                online = self.provisioning.is_online(resource.external_id, allow_stale=False)
            except Exception as e:
                # Never charge for a state we can't verify.
                log.warning("CYCLE skipping %s: status unavailable (%s)", resource.resource_id, e)
                return "skipped", Decimal("0")
            if not online:
                return "offline", Decimal("0")

        cost = interval_cost(resource.ram_mb, rate, config.interval_minutes)
        balance = self.ledger.get_balance(resource.owner_id)
        if balance is None:
            raise ResourceNotFound(f"owner {resource.owner_id} of {resource.resource_id}")

        if balance >= cost:
            entry = self.ledger.debit(
                resource.owner_id,
                cost,
                description=f"Resource usage ({config.interval_minutes}m): {resource.name or resource.resource_id}",
                metadata={
                    "resource_id": resource.resource_id,
                    "ram_gb": str(resource.ram_gb),
                    "rate_per_gb_minute": str(rate),
                    "interval_minutes": config.interval_minutes,
                    "timestamp": self._clock(),
                },
            )
            log.info("CHARGE %s owner=%s %s coins balance=%s",
                     resource.resource_id, resource.owner_id, cost, entry.balance_after)
            self._emit(charge_applied(resource.resource_id, resource.owner_id,
                                      cost, entry.balance_after, entry.entry_id))
            return "charged", cost

        if not config.auto_suspend:
            log.info("UNBILLED %s owner=%s balance=%s < cost=%s (auto-suspend off)",
                     resource.resource_id, resource.owner_id, balance, cost)
            return "unbilled", Decimal("0")

        log.warning("SUSPEND %s owner=%s insufficient coins (balance=%s cost=%s)",
                    resource.resource_id, resource.owner_id, balance, cost)
        self._suspend(resource, SuspendReason.INSUFFICIENT_COINS, SYSTEM_ACTOR)
        return "suspended", Decimal("0")

    def _maybe_resume(self, resource: ManagedResource, config: BillingConfig,
                      rate: Decimal) -> bool:
        if resource.owner is not None and resource.owner.is_banned:
            return False
        cost = interval_cost(resource.ram_mb, rate, config.interval_minutes)
        balance = self.ledger.get_balance(resource.owner_id)
        if balance is None or balance < cost:
            return False
        log.info("RESUME %s owner=%s balance=%s covers %s",
                 resource.resource_id, resource.owner_id, balance, cost)
        self._resume(resource, SYSTEM_ACTOR)
        return True

    # ── Transitions ──────────────────────────────────────────────────

    def _suspend(self, resource: ManagedResource, reason: SuspendReason, actor: str) -> ManagedResource:
        """Remote suspend through the queue, then the local record regardless."""
        remote_ok = self._call_remote("suspend", resource)
        updated = self.resources.update_resource_status(
            resource.resource_id,
            status=ResourceStatus.SUSPENDED,
            suspended_at=self._clock(),
            suspended_by=actor,
            suspend_reason=reason,
        )
        self._emit(resource_suspended(resource.resource_id, resource.owner_id,
                                      SuspendReason(reason).value, remote_ok, actor=actor))
        return updated

    def _resume(self, resource: ManagedResource, actor: str) -> ManagedResource:
        remote_ok = self._call_remote("unsuspend", resource)
        updated = self.resources.update_resource_status(
            resource.resource_id,
            status=ResourceStatus.ACTIVE,
            suspended_at=None,
            suspended_by=None,
            suspend_reason=None,
        )
        self._emit(resource_resumed(resource.resource_id, resource.owner_id, remote_ok, actor=actor))
        return updated

    def _call_remote(self, action: str, resource: ManagedResource) -> bool:
        if not resource.external_id:
            return True
        try:
            getattr(self.provisioning, action)(resource.external_id)
            return True
        except Exception as e:
            log.error("PROVISIONING %s failed for %s (%s): %s",
                      action, resource.resource_id, resource.external_id, e)
            return False

    def _emit(self, event):
        if self.events is not None:
            self.events.emit(event)

    # ── Admin operations ─────────────────────────────────────────────

    def suspend_resource(self, resource_id: str, actor: str,
                         reason: SuspendReason = SuspendReason.MANUAL) -> ManagedResource:
        """Admin suspend. A billing suspension is re-tagged so auto-resume
        leaves it alone."""
        resource = self.resources.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        if resource.status == ResourceStatus.DELETED.value:
            raise ValueError(f"Resource {resource_id} is deleted")
        if resource.is_suspended:
            log.info("SUSPEND %s re-tagged %s -> %s by %s",
                     resource_id, resource.suspend_reason, SuspendReason(reason).value, actor)
            return self.resources.update_resource_status(
                resource_id, suspended_by=actor, suspend_reason=reason,
            )
        log.warning("SUSPEND %s by %s reason=%s", resource_id, actor, SuspendReason(reason).value)
        return self._suspend(resource, reason, actor)

    def resume_resource(self, resource_id: str, actor: str) -> ManagedResource:
        resource = self.resources.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        if not resource.is_suspended:
            return resource
        log.info("RESUME %s by %s", resource_id, actor)
        return self._resume(resource, actor)
