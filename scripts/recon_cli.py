#!/usr/bin/env python3
"""
Operator command line for the reconciliation engine.

Usage:
    python scripts/recon_cli.py init-db
    python scripts/recon_cli.py ingest acme payout payouts.json
    python scripts/recon_cli.py run acme
    python scripts/recon_cli.py stats acme
    python scripts/recon_cli.py verify acme
    python scripts/recon_cli.py export acme --format csv --start 2026-01-01 --end 2026-01-31
    python scripts/recon_cli.py transition resolve <id> [<id> ...] --actor alice
    python scripts/recon_cli.py resolve <id> --ledger-ref dep_1 --note "booked by hand"
    python scripts/recon_cli.py exceptions acme --status open
    python scripts/recon_cli.py trace <run_id>

The database comes from DATABASE_URL (default: sqlite:///recon.db).  Every
command prints one JSON document on stdout and exits non-zero on failure.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from recon_kernel.db.engine import create_tables, init_engine_from_url, session_scope
from recon_kernel.db.immutability import register_immutability_listeners
from recon_kernel.exceptions import ReconciliationError
from recon_kernel.selectors.audit_selector import AuditSelector
from recon_kernel.selectors.exception_selector import ExceptionSelector
from recon_kernel.services.auditor_service import AuditorService
from recon_kernel.services.exception_lifecycle import ExceptionLifecycleService
from recon_kernel.services.source_record_store import SourceRecordStore
from recon_services.matching_coordinator import MatchingCoordinator

DEFAULT_DATABASE_URL = "sqlite:///recon.db"


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def cmd_init_db(args: argparse.Namespace) -> int:
    create_tables()
    _emit({"status": "ok", "command": "init-db"})
    return 0


def cmd_ingest(args: argparse.Namespace) -> int:
    raws = json.loads(Path(args.path).read_text())
    if isinstance(raws, dict):
        raws = [raws]
    with session_scope() as session:
        result = SourceRecordStore(session).upsert_records(
            args.company, args.source_type, raws, actor_id=args.actor
        )
    _emit({
        "company_id": args.company,
        "source_type": args.source_type,
        "inserted": result.inserted_count,
        "skipped": len(result.skipped),
        "rejected": [{"position": p, "reason": r} for p, r in result.rejected],
    })
    return 0 if not result.rejected else 1


def cmd_run(args: argparse.Namespace) -> int:
    with session_scope() as session:
        report = MatchingCoordinator(session).run_matching(args.company, actor_id=args.actor)
    _emit(report.to_dict())
    return 0 if report.status.value == "completed" else 1


def cmd_stats(args: argparse.Namespace) -> int:
    with session_scope() as session:
        stats = MatchingCoordinator(session).matching_stats(args.company)
        audit = AuditSelector(session).audit_stats(args.company)
        queue = ExceptionSelector(session).exception_stats(args.company)
    _emit({"matching": stats.to_dict(), "exceptions": queue.to_dict(), "audit": audit.to_dict()})
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    with session_scope() as session:
        report = AuditorService(session).verify_integrity(args.company)
    _emit(report.to_dict())
    return 0 if report.valid else 2


def cmd_export(args: argparse.Namespace) -> int:
    with session_scope() as session:
        text = AuditSelector(session).export_audit_trail(
            args.company, args.format, start=args.start, end=args.end
        )
    sys.stdout.write(text)
    if not text.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def cmd_transition(args: argparse.Namespace) -> int:
    with session_scope() as session:
        result = ExceptionLifecycleService(session).bulk_transition(
            args.ids, args.action, args.actor, note=args.note
        )
    _emit(result.to_dict())
    return 0 if result.ok else 1


def cmd_resolve(args: argparse.Namespace) -> int:
    with session_scope() as session:
        result = ExceptionLifecycleService(session).transition(
            args.id, "resolve", args.actor, ledger_ref=args.ledger_ref, note=args.note
        )
    _emit({
        "exception_id": result.exception_id,
        "from_status": result.from_status,
        "to_status": result.to_status,
        "match_id": result.match_id,
    })
    return 0


def cmd_exceptions(args: argparse.Namespace) -> int:
    with session_scope() as session:
        views = ExceptionSelector(session).list_exceptions(args.company, status=args.status)
    _emit({
        "company_id": args.company,
        "count": len(views),
        "exceptions": [v.to_dict() for v in views],
    })
    return 0


def cmd_trace(args: argparse.Namespace) -> int:
    with session_scope() as session:
        events = AuditSelector(session).events_by_trace(args.trace_id)
    _emit({"trace_id": args.trace_id, "events": [e.to_dict() for e in events]})
    return 0


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Payout / bank / ledger reconciliation")
    p.add_argument("--actor", default="system", help="Actor recorded in the audit chain")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables").set_defaults(func=cmd_init_db)

    ingest = sub.add_parser("ingest", help="Load raw records from a JSON file")
    ingest.add_argument("company")
    ingest.add_argument("source_type", choices=["payout", "bank", "ledger"])
    ingest.add_argument("path")
    ingest.set_defaults(func=cmd_ingest)

    run = sub.add_parser("run", help="Run matching for a company")
    run.add_argument("company")
    run.set_defaults(func=cmd_run)

    stats = sub.add_parser("stats", help="Match, exception and audit counts")
    stats.add_argument("company")
    stats.set_defaults(func=cmd_stats)

    verify = sub.add_parser("verify", help="Verify the audit hash chain")
    verify.add_argument("company")
    verify.set_defaults(func=cmd_verify)

    export = sub.add_parser("export", help="Export the audit trail")
    export.add_argument("company")
    export.add_argument("--format", default="json", help="json or csv")
    export.add_argument("--start", type=date.fromisoformat, default=None)
    export.add_argument("--end", type=date.fromisoformat, default=None)
    export.set_defaults(func=cmd_export)

    transition = sub.add_parser("transition", help="Resolve or ignore exceptions")
    transition.add_argument("action", choices=["resolve", "ignore"])
    transition.add_argument("ids", nargs="+")
    transition.add_argument("--note", default=None)
    transition.set_defaults(func=cmd_transition)

    resolve = sub.add_parser("resolve", help="Resolve one exception, optionally against a ledger object")
    resolve.add_argument("id")
    resolve.add_argument("--ledger-ref", default=None, help="Ledger object the payout was booked to")
    resolve.add_argument("--note", default=None)
    resolve.set_defaults(func=cmd_resolve)

    exceptions = sub.add_parser("exceptions", help="List a company's exceptions, newest first")
    exceptions.add_argument("company")
    exceptions.add_argument("--status", choices=["open", "resolved", "ignored"], default=None)
    exceptions.set_defaults(func=cmd_exceptions)

    trace = sub.add_parser("trace", help="Audit events written under one run id")
    trace.add_argument("trace_id")
    trace.set_defaults(func=cmd_trace)

    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    init_engine_from_url(os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL))
    register_immutability_listeners()
    try:
        return args.func(args)
    except ReconciliationError as exc:
        _emit({"status": "error", "code": exc.code, "message": str(exc)})
        return 1
    except (FileNotFoundError, ValueError) as exc:
        _emit({"status": "error", "code": type(exc).__name__, "message": str(exc)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
