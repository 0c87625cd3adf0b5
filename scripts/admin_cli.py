#!/usr/bin/env python3
"""Top Voices admin CLI — maintenance jobs against the configured database.

Usage:
  python scripts/admin_cli.py export <dir>      # Write users.json + subscriptions.json
  python scripts/admin_cli.py import <dir>      # Load a snapshot (upsert + merge index)
  python scripts/admin_cli.py scan              # Recreate records users/index point at
  python scripts/admin_cli.py stats             # Print user/subscription counts
"""
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from topvoices.logging_config import setup_logging  # noqa: E402
from topvoices.storage.container import Storage  # noqa: E402


async def cmd_export(storage: Storage, args: list[str]):
    from topvoices.storage.snapshot import export_snapshot
    counts = await export_snapshot(storage, args[0])
    print(f"✅ Exported {counts.users} users, {counts.subscriptions} subscriptions "
          f"({counts.index_entries} index entries) to {args[0]}")


async def cmd_import(storage: Storage, args: list[str]):
    from topvoices.storage.snapshot import import_snapshot
    counts = await import_snapshot(storage, args[0])
    print(f"✅ Imported {counts.users} users, {counts.subscriptions} subscriptions, "
          f"{counts.index_entries} index entries ({counts.skipped} skipped)")


async def cmd_scan(storage: Storage, args: list[str]):
    from topvoices.services.sweep import scan_and_repair
    report = await scan_and_repair(storage)
    print(report.to_response()["message"])
    for source, count in sorted(report.missing_by_source.items()):
        print(f"     {source:<25} {count:,}")


async def cmd_stats(storage: Storage, args: list[str]):
    from topvoices.services.admin import SubscriptionAdmin
    from topvoices.services.stripe_gateway import StripeGateway
    stats = await SubscriptionAdmin(storage, StripeGateway()).stats()

    print("=" * 60)
    print("  Top Voices Subscriptions")
    print("=" * 60)
    print(f"  Users: {stats['totalUsers']:,}  (premium {stats['premiumUsers']:,}, free {stats['freeUsers']:,})")
    print(f"  New (7d): {stats['newUsers7d']:,}  |  Conversion: {stats['conversionRate']}%")
    print(f"  Active subscriptions: {stats['activeSubscriptions']:,}")
    for source, count in sorted(stats["subscriptionsBySource"].items()):
        print(f"     {source:<25} {count:,}")


COMMANDS = {
    "export": (cmd_export, 1),
    "import": (cmd_import, 1),
    "scan": (cmd_scan, 0),
    "stats": (cmd_stats, 0),
}


async def run(name: str, args: list[str]):
    storage = await Storage().init()
    try:
        await COMMANDS[name][0](storage, args)
    finally:
        await storage.close()


def main():
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        print(__doc__)
        sys.exit(1)
    name, args = sys.argv[1], sys.argv[2:]
    if len(args) < COMMANDS[name][1]:
        print(__doc__)
        sys.exit(1)
    setup_logging()
    asyncio.run(run(name, args))


if __name__ == "__main__":
    main()
