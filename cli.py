#!/usr/bin/env python3
# Coinmeter CLI
# argparse. Seed owners and resources, top up coins, run cycles, serve the API.

import argparse
import json
import sys
import time

from billing import ConfigurationError
from config import RuntimeSettings
from events import credit_applied
from ledger import LedgerWriteError, to_decimal
from resources import ManagedResource, ResourceNotFound, ResourceStatus
from scheduler import setup_logging
from services import build_services


def cmd_serve(args):
    """Start the API server (the scheduler starts with it)."""
    import uvicorn
    from api import create_app
    print(f"Starting Coinmeter API on port {args.port}...")
    uvicorn.run(create_app(args.services), host=args.bind, port=args.port)


def cmd_start(args):
    """Run the billing scheduler in the foreground."""
    scheduler = args.services.scheduler
    if not scheduler.start():
        print("Billing is disabled or misconfigured. Scheduler not started.")
        return 1
    print(f"Billing scheduler running every {scheduler.interval_minutes} minute(s). Ctrl+C to stop.")
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        print("\nScheduler stopped.")
    finally:
        args.services.shutdown()
    return 0


def cmd_run_cycle(args):
    """Run one billing cycle now."""
    if not args.services.scheduler.run_now():
        print("A cycle is already running.")
        return 1
    args.services.events.drain()
    report = args.services.engine.last_report
    if report is None:
        print("Cycle skipped (billing disabled or no rate configured).")
        return 0
    print(f"Cycle done: {report.charged} charged ({report.total_charged} coins), "
          f"{report.suspended} suspended, {report.resumed} resumed, "
          f"{report.skipped + report.offline} skipped, {report.failed} failed")
    return 0


def cmd_config(args):
    """Show or update billing settings."""
    store = args.services.billing_settings
    updates = {
        "enabled": args.enabled,
        "interval_minutes": args.interval,
        "rate_per_gb_hour": args.rate_hour,
        "rate_per_gb_minute": args.rate_minute,
        "auto_suspend": args.auto_suspend,
        "auto_resume": args.auto_resume,
        "require_online": args.require_online,
    }
    updates = {k: v for k, v in updates.items() if v is not None}
    try:
        config = store.update_billing_config(**updates) if updates else store.get_billing_config()
    except ConfigurationError as e:
        print(f"Invalid billing config: {e}")
        return 1
    print(json.dumps(config.to_dict(), indent=2, sort_keys=True))
    return 0


def cmd_owner_add(args):
    try:
        opening = to_decimal(args.balance)
    except ValueError as e:
        print(e)
        return 1
    owner = args.services.resources.create_owner(args.owner_id, name=args.name or "")
    if opening > 0:
        args.services.ledger.credit(owner.owner_id, opening, description="Opening balance")
    print(f"Owner created: {owner.owner_id} | balance {args.services.ledger.get_balance(owner.owner_id)}")
    return 0


def cmd_resource_add(args):
    resource = ManagedResource(
        owner_id=args.owner_id,
        name=args.name,
        ram_mb=args.ram,
        disk_mb=args.disk,
        cpu_cores=args.cpu,
        status=args.status,
        external_id=args.external_id,
    )
    if args.resource_id:
        resource.resource_id = args.resource_id
    try:
        resource = args.services.resources.create_resource(resource)
    except ValueError as e:
        print(f"Resource not created: {e}")
        return 1
    print(f"Resource created: {resource.resource_id} | {resource.name} | {resource.ram_mb}MB | {resource.status}")
    return 0


def cmd_credit(args):
    try:
        entry = args.services.ledger.credit(args.owner_id, args.amount,
                                            description=args.description)
    except (LedgerWriteError, ValueError) as e:
        print(f"Credit failed: {e}")
        return 1
    args.services.events.emit(credit_applied(args.owner_id, entry.amount, entry.balance_after,
                                             entry.entry_id, actor="cli"))
    args.services.events.drain()
    print(f"Credited {entry.amount} coins to {args.owner_id}. Balance: {entry.balance_after}")
    return 0


def cmd_ledger(args):
    balance = args.services.ledger.get_balance(args.owner_id)
    if balance is None:
        print(f"Owner {args.owner_id} not found.")
        return 1
    print(f"Owner {args.owner_id} | balance {balance}")
    for e in args.services.ledger.list_entries(args.owner_id, limit=args.limit):
        sign = "+" if e.entry_type == "credit" else "-"
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e.created_at))
        print(f"  {stamp} {sign}{e.amount:>10} -> {e.balance_after:>10} | {e.description}")
    return 0


def cmd_suspend(args):
    try:
        resource = args.services.engine.suspend_resource(args.resource_id, actor="cli")
    except ResourceNotFound:
        print(f"Resource {args.resource_id} not found.")
        return 1
    except ValueError as e:
        print(f"Suspend failed: {e}")
        return 1
    args.services.events.drain()
    print(f"Suspended {resource.resource_id} ({resource.suspend_reason})")
    return 0


def cmd_unsuspend(args):
    try:
        resource = args.services.engine.resume_resource(args.resource_id, actor="cli")
    except ResourceNotFound:
        print(f"Resource {args.resource_id} not found.")
        return 1
    args.services.events.drain()
    print(f"Resumed {resource.resource_id} ({resource.status})")
    return 0


def _bool_arg(value: str) -> bool:
    v = value.strip().lower()
    if v in ("true", "1", "yes", "on"):
        return True
    if v in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coinmeter",
        description="Coinmeter: coin billing for managed compute resources",
    )
    sub = parser.add_subparsers(dest="command")

    # coinmeter serve
    p_serve = sub.add_parser("serve", help="Start the admin API and scheduler")
    p_serve.add_argument("--bind", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8000, help="Port")
    p_serve.set_defaults(func=cmd_serve)

    # coinmeter start
    p_start = sub.add_parser("start", help="Run the billing scheduler")
    p_start.set_defaults(func=cmd_start)

    # coinmeter run-cycle
    p_cycle = sub.add_parser("run-cycle", help="Run one billing cycle now")
    p_cycle.set_defaults(func=cmd_run_cycle)

    # coinmeter config
    p_cfg = sub.add_parser("config", help="Show or update billing settings")
    p_cfg.add_argument("--enabled", type=_bool_arg, default=None)
    p_cfg.add_argument("--interval", type=int, default=None, help="Minutes between cycles")
    p_cfg.add_argument("--rate-hour", default=None, help="Coins per GB-hour")
    p_cfg.add_argument("--rate-minute", default=None, help="Coins per GB-minute (overrides hourly)")
    p_cfg.add_argument("--auto-suspend", type=_bool_arg, default=None)
    p_cfg.add_argument("--auto-resume", type=_bool_arg, default=None)
    p_cfg.add_argument("--require-online", type=_bool_arg, default=None)
    p_cfg.set_defaults(func=cmd_config)

    # coinmeter owner-add
    p_owner = sub.add_parser("owner-add", help="Create an owner")
    p_owner.add_argument("owner_id")
    p_owner.add_argument("--name", default="")
    p_owner.add_argument("--balance", default="0", help="Opening coin balance")
    p_owner.set_defaults(func=cmd_owner_add)

    # coinmeter resource-add
    p_res = sub.add_parser("resource-add", help="Register a managed resource")
    p_res.add_argument("owner_id")
    p_res.add_argument("--name", required=True)
    p_res.add_argument("--ram", type=int, required=True, help="RAM (MB)")
    p_res.add_argument("--disk", type=int, default=0, help="Disk (MB)")
    p_res.add_argument("--cpu", type=int, default=0, help="CPU cores")
    p_res.add_argument("--external-id", default=None, help="Provisioning backend ID")
    p_res.add_argument("--status", default=ResourceStatus.ACTIVE.value,
                       choices=[s.value for s in ResourceStatus if s != ResourceStatus.SUSPENDED])
    p_res.add_argument("--resource-id", default=None)
    p_res.set_defaults(func=cmd_resource_add)

    # coinmeter credit
    p_credit = sub.add_parser("credit", help="Top up an owner's coins")
    p_credit.add_argument("owner_id")
    p_credit.add_argument("amount")
    p_credit.add_argument("--description", default="Coin top-up")
    p_credit.set_defaults(func=cmd_credit)

    # coinmeter ledger
    p_ledger = sub.add_parser("ledger", help="Show balance and recent entries")
    p_ledger.add_argument("owner_id")
    p_ledger.add_argument("--limit", type=int, default=20)
    p_ledger.set_defaults(func=cmd_ledger)

    # coinmeter suspend / unsuspend
    p_susp = sub.add_parser("suspend", help="Suspend a resource (manual)")
    p_susp.add_argument("resource_id")
    p_susp.set_defaults(func=cmd_suspend)

    p_unsusp = sub.add_parser("unsuspend", help="Resume a suspended resource")
    p_unsusp.add_argument("resource_id")
    p_unsusp.set_defaults(func=cmd_unsuspend)

    return parser


def main(argv=None, services=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    if services is None:
        settings = RuntimeSettings.from_env()
        setup_logging(settings.log_file, settings.log_level)
        services = build_services(settings)
    args.services = services
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
