#!/usr/bin/env python3
"""
Radar Gateway - Admin Command Line Interface

Usage:
    radar grant <caller_id> <tool>           Grant a tool permission
    radar revoke <caller_id> <tool>          Revoke a tool permission
    radar bulk-grant <caller_id> <tool>...   Grant several tools at once
    radar list <caller_id>                   List a caller's active tools
    radar audit-trail <caller_id>            Show a caller's recent audit events
    radar incidents [--hours N]              Show recent warning+ audit events
    radar purge [--days N]                   Delete audit events older than N days

All commands operate directly on the SQLite store (--db, or RADAR_DB_PATH).
"""

import argparse
import asyncio
import json
import logging
import os
import sqlite3
import sys

from radar_gateway.audit_log import AuditSeverity, AuditWriter
from radar_gateway.config import GatewayConfig
from radar_gateway.lockdown import StorageLockdownError
from radar_gateway.permissions import PermissionGate
from radar_gateway.store import GatewayStore

logger = logging.getLogger("radar_gateway")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(level)


def _gate(args) -> PermissionGate:
    return PermissionGate(GatewayStore(args.db))


def _writer(args) -> AuditWriter:
    config = GatewayConfig.from_env()
    return AuditWriter.from_config(config, GatewayStore(args.db))


def _print_events(title: str, events) -> None:
    print(f"\n{'='*60}")
    print(f"{title} ({len(events)} events)")
    print(f"{'='*60}")
    for ev in reversed(events):  # oldest first
        print(f"\n{ev['created_at']} | {ev['event_type']} [{ev['severity']}]")
        if ev.get("caller_id") is not None:
            print(f"  Caller: {ev['caller_id']}")
        print(f"  Data: {json.dumps(ev['event_data'], sort_keys=True)[:200]}")
    print(f"\n{'='*60}\n")


def cmd_grant(args):
    """Grant one tool permission."""
    ok = asyncio.run(_gate(args).grant(args.caller_id, args.tool, args.granted_by, args.notes))
    if not ok:
        print(f"Failed to grant {args.tool} to {args.caller_id}", file=sys.stderr)
        return 1
    print(f"Granted {args.tool} to {args.caller_id}")
    return 0


def cmd_revoke(args):
    ok = asyncio.run(_gate(args).revoke(args.caller_id, args.tool, args.revoked_by))
    if not ok:
        print(f"Failed to revoke {args.tool} from {args.caller_id}", file=sys.stderr)
        return 1
    print(f"Revoked {args.tool} from {args.caller_id}")
    return 0


def cmd_bulk_grant(args):
    granted = asyncio.run(_gate(args).bulk_grant(args.caller_id, args.tools, args.granted_by))
    print(f"Granted {granted}/{len(args.tools)} tools to {args.caller_id}")
    return 0 if granted == len(args.tools) else 1


def cmd_list(args):
    """List a caller's active tool permissions."""
    tools = asyncio.run(_gate(args).list_permissions(args.caller_id))
    if args.json:
        print(json.dumps({"caller_id": args.caller_id, "tools": tools}))
        return 0
    if not tools:
        print(f"Caller {args.caller_id} has no tool permissions")
        return 0
    print(f"Tools for caller {args.caller_id}:")
    for name in tools:
        print(f"  - {name}")
    return 0


def cmd_audit_trail(args):
    events = asyncio.run(_writer(args).user_audit_trail(args.caller_id, days_back=args.days, limit=args.limit))
    _print_events(f"AUDIT TRAIL for caller {args.caller_id} (last {args.days} days)", events)
    return 0


def cmd_incidents(args):
    events = asyncio.run(
        _writer(args).security_incidents(
            hours_back=args.hours,
            min_severity=AuditSeverity(args.min_severity),
            limit=args.limit,
        )
    )
    _print_events(f"SECURITY INCIDENTS (last {args.hours} hours, >= {args.min_severity})", events)
    return 0


def cmd_purge(args):
    """Apply the audit retention policy."""
    try:
        deleted = asyncio.run(_writer(args).purge_older_than(args.days))
    except (StorageLockdownError, sqlite3.Error) as e:
        print(f"Purge failed: {e}", file=sys.stderr)
        return 1
    print(f"Deleted {deleted} audit events")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Radar Gateway admin CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--db",
        default=os.getenv("RADAR_DB_PATH", "radar_gateway.db"),
        help="Path to gateway database",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    grant_parser = subparsers.add_parser("grant", help="Grant a tool permission")
    grant_parser.add_argument("caller_id", type=int)
    grant_parser.add_argument("tool")
    grant_parser.add_argument("--granted-by", type=int, default=None, help="Admin caller id")
    grant_parser.add_argument("--notes", default=None)
    grant_parser.set_defaults(func=cmd_grant)

    revoke_parser = subparsers.add_parser("revoke", help="Revoke a tool permission")
    revoke_parser.add_argument("caller_id", type=int)
    revoke_parser.add_argument("tool")
    revoke_parser.add_argument("--revoked-by", type=int, default=None, help="Admin caller id")
    revoke_parser.set_defaults(func=cmd_revoke)

    bulk_parser = subparsers.add_parser("bulk-grant", help="Grant several tool permissions")
    bulk_parser.add_argument("caller_id", type=int)
    bulk_parser.add_argument("tools", nargs="+")
    bulk_parser.add_argument("--granted-by", type=int, default=None, help="Admin caller id")
    bulk_parser.set_defaults(func=cmd_bulk_grant)

    list_parser = subparsers.add_parser("list", help="List a caller's tool permissions")
    list_parser.add_argument("caller_id", type=int)
    list_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    list_parser.set_defaults(func=cmd_list)

    trail_parser = subparsers.add_parser("audit-trail", help="Show a caller's audit trail")
    trail_parser.add_argument("caller_id", type=int)
    trail_parser.add_argument("--days", type=int, default=7, help="Days to look back")
    trail_parser.add_argument("--limit", type=int, default=100, help="Number of events")
    trail_parser.set_defaults(func=cmd_audit_trail)

    inc_parser = subparsers.add_parser("incidents", help="Show recent security incidents")
    inc_parser.add_argument("--hours", type=int, default=24, help="Hours to look back")
    inc_parser.add_argument(
        "--min-severity",
        default="warning",
        choices=[s.value for s in AuditSeverity],
        help="Lowest severity to include",
    )
    inc_parser.add_argument("--limit", type=int, default=100, help="Number of events")
    inc_parser.set_defaults(func=cmd_incidents)

    purge_parser = subparsers.add_parser("purge", help="Delete old audit events")
    purge_parser.add_argument("--days", type=int, default=None, help="Retention in days (default: RADAR_AUDIT_RETENTION_DAYS)")
    purge_parser.set_defaults(func=cmd_purge)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
