#!/usr/bin/env python3
"""
Protect Management CLI

Commands for operating the underwriting core:
- init-db: Create the record store table and indexes
- run-watchdog: Mark anchors SILENT after the silence threshold
- expire-quotes: Flip lapsed PENDING quotes to EXPIRED
- drain-outbox: Retry pending ledger appends and adjudication hand-offs
- export-audit: Export audit log entries to JSON
- price: Price a pricing context without storing anything
- health-check: Check record store and configuration

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage run-watchdog
    python -m tools.manage drain-outbox --limit 50
    python -m tools.manage price --valuation-micros 50000000000 --security VERIFIED --service-days 30
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_db(args):
    """Create the record table (PostgreSQL only)."""
    from protect.config import ProtectConfig
    from protect.db.config import RecordStoreDriver
    from protect.runtime import create_record_store

    config = ProtectConfig.from_env()
    if config.recordstore_driver == RecordStoreDriver.MEMORY:
        print("In-memory record store selected; nothing to create.")
        print("Set DATABASE_URL or RECORDSTORE_DRIVER=psycopg2 to use PostgreSQL.")
        return 1

    create_record_store(config)
    print("[OK] Record store schema is in place")
    return 0


def cmd_run_watchdog(args):
    """Run one signal-loss scan."""
    from protect.runtime import create_service

    service = create_service()
    result = service.run_watchdog()

    print(f"[OK] Watchdog processed {result.processed_count} policies")
    print(f"  Silenced: {len(result.silenced_policy_ids)}")
    for policy_id in result.silenced_policy_ids:
        print(f"    {policy_id}")
    return 0


def cmd_expire_quotes(args):
    """Expire every lapsed PENDING quote."""
    from protect.runtime import create_service

    service = create_service()
    expired = service.expire_quotes()
    print(f"[OK] Expired {len(expired)} quotes")
    return 0


def cmd_drain_outbox(args):
    """Retry pending side effects."""
    from protect.runtime import create_service

    service = create_service()
    result = service.drain_outbox(limit=args.limit)

    print(f"Attempted: {result.attempted}")
    print(f"  Completed: {result.completed}")
    print(f"  Still pending: {result.still_pending}")
    print(f"  Failed (needs attention): {result.failed}")

    if result.failed:
        print("[FAIL] Some tasks were refused by the ledger")
        return 1
    print("[OK] Outbox drained")
    return 0


def cmd_export_audit(args):
    """Export audit log entries to a JSON file."""
    from protect.db.store import Eq
    from protect.runtime import create_service
    from protect.schemas import AuditLogEntry, EntityType

    service = create_service()
    where = [Eq("resource_id", args.resource_id)] if args.resource_id else None
    rows = service.store.find(EntityType.AUDIT_LOG, where)

    export_data = [
        AuditLogEntry.model_validate(row).model_dump(mode="json")
        for row in reversed(rows)  # oldest first
    ]

    output_file = args.output or "audit_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(export_data)} audit entries to {output_file}")
    return 0


def cmd_price(args):
    """Price a context with the current pricing version."""
    from protect.core import ValidationError, calculate_premium
    from protect.core.errors import parse_model
    from protect.schemas import PricingContext

    try:
        ctx = parse_model(PricingContext, {
            "asset_valuation_micros": args.valuation_micros,
            "security_level": args.security,
            "last_verified_service_days": args.service_days,
            "transit_damage_history": args.transit_damage,
        })
    except ValidationError as e:
        print(f"[FAIL] {e.message}")
        for detail in e.details:
            print(f"  {detail['field']}: {detail['message']}")
        return 1

    result = calculate_premium(ctx, currency=args.currency)
    print(json.dumps(result.model_dump(), indent=2))
    return 0


def cmd_health_check(args):
    """Run health checks against the configured backends."""
    from protect.config import ProtectConfig
    from protect.db.config import RecordStoreDriver
    from protect.observability import check_health
    from protect.runtime import create_service

    config = ProtectConfig.from_env()

    print("=== Protect Health Check ===\n")

    print("Record store:")
    if config.recordstore_driver == RecordStoreDriver.MEMORY:
        print("  Type: In-Memory")
    else:
        print(f"  Type: PostgreSQL ({config.recordstore_driver.value})")
        print(f"  Database: {config.database.to_url(include_password=False)}")

    try:
        service = create_service(config)
    except Exception as e:
        print(f"  Status: [FAIL] {e}")
        return 1

    health = check_health(store=service.store, ledger=service.ledger)
    store_check = health.checks.get("record_store", {})
    if store_check.get("status") == "healthy":
        print("  Status: [OK] Connected")
    else:
        print(f"  Status: [FAIL] {store_check.get('error')}")

    print("\nLedger:")
    print(f"  Mode: {config.ledger_mode}")
    if config.ledger_mode == "live":
        print(f"  URL: {config.ledger_url}")
    else:
        print("  [WARN] In-memory ledger, entries do not survive the process")

    print("\nAdjudication:")
    print(f"  Mode: {config.adjudication_mode}")
    if config.adjudication_mode == "live":
        print(f"  URL: {config.adjudication_url}")

    print("\nEnvironment:")
    if config.cron_secret == "dev-cron-secret":
        print("  Cron secret: [WARN] Using default (development)")
    else:
        print("  Cron secret: [OK] Set")

    print("\n=== Health Check Complete ===")
    return 0 if health.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Protect Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-db
    subparsers.add_parser(
        "init-db",
        help="Create the record store table and indexes"
    )

    # run-watchdog
    subparsers.add_parser(
        "run-watchdog",
        help="Mark silent anchors"
    )

    # expire-quotes
    subparsers.add_parser(
        "expire-quotes",
        help="Expire lapsed PENDING quotes"
    )

    # drain-outbox
    p_drain = subparsers.add_parser(
        "drain-outbox",
        help="Retry pending ledger/adjudication side effects"
    )
    p_drain.add_argument("--limit", type=int, help="Max tasks to attempt")

    # export-audit
    p_export = subparsers.add_parser(
        "export-audit",
        help="Export audit log entries to JSON"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: audit_export.json)")
    p_export.add_argument("--resource-id", help="Only entries about this resource")

    # price
    p_price = subparsers.add_parser(
        "price",
        help="Price a context without storing a quote"
    )
    p_price.add_argument("--valuation-micros", type=int, required=True)
    p_price.add_argument("--security", default="STANDARD", help="STANDARD or VERIFIED")
    p_price.add_argument("--service-days", type=int, required=True)
    p_price.add_argument("--transit-damage", action="store_true")
    p_price.add_argument("--currency", default="USD")

    # health-check
    subparsers.add_parser(
        "health-check",
        help="Run comprehensive health checks"
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "run-watchdog": cmd_run_watchdog,
        "expire-quotes": cmd_expire_quotes,
        "drain-outbox": cmd_drain_outbox,
        "export-audit": cmd_export_audit,
        "price": cmd_price,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
