"""
Admin CLI for the enrolment registry.

Usage:
    enrolment-admin register --demographics '{"first_name": ...}' [--actor <id>]
    enrolment-admin approve --id <registration_id>
    enrolment-admin request-correction --id <id> --fields first_name,date_of_birth [--note <text>]
    enrolment-admin submit-correction --id <id> --updates '{"first_name": ...}'
    enrolment-admin reject --id <id> --reason <text>
    enrolment-admin schedule --id <id> --when 2026-02-03T09:30:00+00:00
    enrolment-admin submit-capture --id <id> --samples-file <path.json>
    enrolment-admin resolve-duplicate --id <id> --decision approve|reject|merge [--note <text>]
    enrolment-admin issue-identity --id <id>
    enrolment-admin show --id <id>
    enrolment-admin list [--status pending_verification] [--limit 50]
    enrolment-admin stats
    enrolment-admin audit-trail --id <id> [--limit 100]
    enrolment-admin health
    enrolment-admin init-db

Commands print their result as JSON. Errors are printed as
``{"error": kind, "message": ..., "retryable": ...}`` with exit code 1.
"""

import argparse
import json
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import psycopg
from dotenv import load_dotenv
from pydantic import BaseModel

from enrolment.core.config import EnrolmentSettings, load_settings
from enrolment.core.errors import EnrolmentError, ServiceUnavailable
from enrolment.core.workflow import RegistrationStateMachine
from enrolment.observability.logger import get_logger
from enrolment.observability.metrics import start_metrics_server
from enrolment.services.deduplication import HttpIdentificationClient
from enrolment.services.quality_gate import HttpQualityScorer
from enrolment.store.audit import PostgresAuditSink, get_audit_summary
from enrolment.store.connection import DatabaseConnectionPool
from enrolment.store.record_store import PostgresRegistrationStore
from enrolment.store.schema import apply_schema

logger = get_logger(__name__)


def format_timestamp(ts: datetime | str | None) -> str:
    """Format timestamp for display."""
    if isinstance(ts, str):
        return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else "N/A"


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    return value


def print_json(value: Any) -> None:
    print(json.dumps(to_jsonable(value), indent=2, default=str))


def parse_json_argument(raw: str, name: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"{name} must be valid JSON: {e}") from e


def create_pool(args) -> DatabaseConnectionPool:
    return DatabaseConnectionPool(
        host=args.db_host,
        port=args.db_port,
        database=args.db_name,
        user=args.db_user,
        password=args.db_password,
    )


@contextmanager
def open_machine(args) -> Iterator[RegistrationStateMachine]:
    """
    Build a state machine over PostgreSQL and the configured HTTP services.

    Yields:
        RegistrationStateMachine bound to an open connection pool
    """
    settings = load_settings(args.config)
    if settings.metrics.enabled:
        start_metrics_server(settings.metrics.port)

    pool = create_pool(args)
    machine = None
    try:
        pool.open()
        machine = RegistrationStateMachine.from_settings(
            settings,
            store=PostgresRegistrationStore(pool),
            audit_sink=PostgresAuditSink(pool),
        )
        yield machine
    finally:
        if machine is not None:
            machine.close()
        pool.close()


# =======================
# COMMAND HANDLERS
# =======================

def register_command(machine: RegistrationStateMachine, args) -> Any:
    demographics = parse_json_argument(args.demographics, "--demographics")
    return machine.register(demographics, actor_id=args.actor)


def approve_command(machine: RegistrationStateMachine, args) -> Any:
    return machine.approve_for_biometric(args.id, actor_id=args.actor)


def request_correction_command(machine: RegistrationStateMachine, args) -> Any:
    fields = [f.strip() for f in args.fields.split(",") if f.strip()]
    return machine.request_correction(args.id, fields, note=args.note, actor_id=args.actor)


def submit_correction_command(machine: RegistrationStateMachine, args) -> Any:
    updates = parse_json_argument(args.updates, "--updates")
    return machine.submit_correction(args.id, updates, actor_id=args.actor)


def reject_command(machine: RegistrationStateMachine, args) -> Any:
    return machine.reject(args.id, args.reason, actor_id=args.actor)


def schedule_command(machine: RegistrationStateMachine, args) -> Any:
    return machine.schedule_biometric(args.id, args.when, actor_id=args.actor)


def submit_capture_command(machine: RegistrationStateMachine, args) -> Any:
    with open(args.samples_file) as f:
        samples = json.load(f)
    if isinstance(samples, dict):
        samples = samples.get("samples", [])
    return machine.submit_capture(args.id, samples, actor_id=args.actor)


def resolve_duplicate_command(machine: RegistrationStateMachine, args) -> Any:
    return machine.resolve_duplicate(args.id, args.decision, note=args.note, actor_id=args.actor)


def issue_identity_command(machine: RegistrationStateMachine, args) -> Any:
    return machine.issue_identity(args.id, actor_id=args.actor)


def show_command(machine: RegistrationStateMachine, args) -> Any:
    return machine.get_registration(args.id)


def list_command(machine: RegistrationStateMachine, args) -> Any:
    records = machine.list_registrations(status=args.status, limit=args.limit)
    if args.json:
        return records

    print(f"\n{'=' * 100}")
    print(f"REGISTRATIONS{f' - Status: {args.status}' if args.status else ''}")
    print(f"{'=' * 100}\n")
    print(f"{'Registration ID':<38} {'Status':<24} {'Biometrics':<22} {'Created'}")
    print(f"{'-' * 100}")
    for record in records:
        print(
            f"{record.id:<38} {record.status.value:<24} "
            f"{record.biometric_status.value:<22} {format_timestamp(record.created_at)}"
        )
    print(f"\nTotal: {len(records)}\n")
    return None


def stats_command(machine: RegistrationStateMachine, args) -> Any:
    stats = machine.registration_statistics()
    if args.json:
        return stats

    print(f"\n{'=' * 60}")
    print("REGISTRATION STATISTICS")
    print(f"{'=' * 60}\n")
    print(f"  Total registrations: {stats['total']}\n")
    for status, count in stats["by_status"].items():
        print(f"  {status:<30} {count:>8}")
    print(f"\n{'=' * 60}\n")
    return None


def audit_trail_command(machine: RegistrationStateMachine, args) -> Any:
    events = machine.audit_trail(args.id, limit=args.limit)
    if args.json:
        return events

    print(f"\n{'=' * 80}")
    print(f"AUDIT TRAIL FOR REGISTRATION: {args.id}")
    print(f"{'=' * 80}\n")
    print(f"{'Timestamp':<20} {'Event':<26} {'Actor':<15} {'Transition'}")
    print(f"{'-' * 80}")
    for event in events:
        transition = f"{event.payload.get('from_status', '-')} -> {event.payload.get('to_status', '-')}"
        print(
            f"{format_timestamp(event.created_at):<20} {event.event_type.value:<26} "
            f"{event.actor_id or '-':<15} {transition}"
        )
    print(f"\nTotal events: {len(events)}\n")
    return None


def audit_summary_command(machine: RegistrationStateMachine, args) -> Any:
    return get_audit_summary(machine.store.pool, registration_id=args.id)


COMMAND_HANDLERS: dict[str, Callable[[RegistrationStateMachine, Any], Any]] = {
    "register": register_command,
    "approve": approve_command,
    "request-correction": request_correction_command,
    "submit-correction": submit_correction_command,
    "reject": reject_command,
    "schedule": schedule_command,
    "submit-capture": submit_capture_command,
    "resolve-duplicate": resolve_duplicate_command,
    "issue-identity": issue_identity_command,
    "show": show_command,
    "list": list_command,
    "stats": stats_command,
    "audit-trail": audit_trail_command,
    "audit-summary": audit_summary_command,
}


def health_command(args) -> dict[str, Any]:
    """Probe the external services (and the database when reachable); never raises."""
    settings: EnrolmentSettings = load_settings(args.config)
    scorer = HttpQualityScorer(settings.quality_service.url)
    identifier = HttpIdentificationClient(settings.identification_service.url)
    try:
        services = [scorer.health_check(), identifier.health_check()]
    finally:
        scorer.close()
        identifier.close()

    database = {"service": "database", "available": True, "detail": "ok"}
    try:
        with create_pool(args) as pool:
            pool.execute_query("SELECT 1 AS ok")
    except Exception as e:
        database = {"service": "database", "available": False, "detail": str(e)}
    services.append(database)

    return {
        "healthy": all(s["available"] for s in services),
        "services": {s["service"]: s for s in services},
    }


def init_db_command(args) -> dict[str, Any]:
    with create_pool(args) as pool:
        apply_schema(pool)
    return {"status": "ok", "message": "Schema applied"}


def run_command(args) -> int:
    """
    Dispatch one parsed command.

    Returns:
        Process exit code
    """
    try:
        if args.command == "health":
            result = health_command(args)
            print_json(result)
            return 0 if result["healthy"] else 1

        if args.command == "init-db":
            print_json(init_db_command(args))
            return 0

        handler = COMMAND_HANDLERS[args.command]
        with open_machine(args) as machine:
            result = handler(machine, args)
        if result is not None:
            print_json(result)
        return 0

    except EnrolmentError as e:
        logger.warning(f"{args.command} failed: {e.kind}: {e.message}")
        print_json({"error": e.kind, "message": e.message, "retryable": e.retryable})
        return 1

    except psycopg.OperationalError as e:
        error = ServiceUnavailable("database", str(e), reason="connection")
        logger.error(f"{args.command} failed: {error.message}")
        print_json({"error": error.kind, "message": error.message, "retryable": error.retryable})
        return 1

    except (argparse.ArgumentTypeError, OSError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print_json({"error": "ValidationError", "message": str(e), "retryable": False})
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enrolment-admin",
        description="Admin CLI for the enrolment registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Global options; database settings fall back to DB_* environment variables
    parser.add_argument("--config", help="Path to settings YAML (default: $ENROLMENT_CONFIG)")
    parser.add_argument("--actor", help="Administrative actor id recorded in the audit trail")
    parser.add_argument("--db-host", help="Database host (default: $DB_HOST or localhost)")
    parser.add_argument("--db-port", type=int, help="Database port (default: $DB_PORT or 5432)")
    parser.add_argument("--db-name", help="Database name (default: $DB_NAME or enrolment)")
    parser.add_argument("--db-user", help="Database user (default: $DB_USER or enrolment)")
    parser.add_argument("--db-password", help="Database password (default: $DB_PASSWORD)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    register_parser = subparsers.add_parser("register", help="Register a new enrollee")
    register_parser.add_argument("--demographics", required=True, help="Demographics as a JSON object")

    approve_parser = subparsers.add_parser("approve", help="Approve a registration for biometric capture")
    approve_parser.add_argument("--id", required=True, help="Registration ID")

    correction_parser = subparsers.add_parser("request-correction", help="Request demographic corrections")
    correction_parser.add_argument("--id", required=True, help="Registration ID")
    correction_parser.add_argument("--fields", required=True, help="Comma-separated field names")
    correction_parser.add_argument("--note", help="Note for the enrollee (optional)")

    submit_correction_parser = subparsers.add_parser("submit-correction", help="Submit corrected demographics")
    submit_correction_parser.add_argument("--id", required=True, help="Registration ID")
    submit_correction_parser.add_argument("--updates", required=True, help="Corrected fields as a JSON object")

    reject_parser = subparsers.add_parser("reject", help="Reject a registration")
    reject_parser.add_argument("--id", required=True, help="Registration ID")
    reject_parser.add_argument("--reason", required=True, help="Rejection reason")

    schedule_parser = subparsers.add_parser("schedule", help="Schedule biometric capture")
    schedule_parser.add_argument("--id", required=True, help="Registration ID")
    schedule_parser.add_argument("--when", required=True, help="Appointment as an ISO datetime")

    capture_parser = subparsers.add_parser("submit-capture", help="Submit a biometric capture attempt")
    capture_parser.add_argument("--id", required=True, help="Registration ID")
    capture_parser.add_argument(
        "--samples-file",
        required=True,
        help="JSON file with a list of samples (or {\"samples\": [...]})",
    )

    resolve_parser = subparsers.add_parser("resolve-duplicate", help="Resolve a flagged duplicate")
    resolve_parser.add_argument("--id", required=True, help="Registration ID")
    resolve_parser.add_argument("--decision", required=True, help="approve, reject or merge")
    resolve_parser.add_argument("--note", help="Resolution note (optional)")

    issue_parser = subparsers.add_parser("issue-identity", help="Issue the identity number")
    issue_parser.add_argument("--id", required=True, help="Registration ID")

    show_parser = subparsers.add_parser("show", help="Show a registration and its biometric records")
    show_parser.add_argument("--id", required=True, help="Registration ID")

    list_parser = subparsers.add_parser("list", help="List registrations")
    list_parser.add_argument("--status", help="Filter by status (optional)")
    list_parser.add_argument("--limit", type=int, default=50, help="Maximum rows (default: 50)")
    list_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    stats_parser = subparsers.add_parser("stats", help="Registration counts per status")
    stats_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    trail_parser = subparsers.add_parser("audit-trail", help="Audit trail of a registration")
    trail_parser.add_argument("--id", required=True, help="Registration ID")
    trail_parser.add_argument("--limit", type=int, default=100, help="Maximum events (default: 100)")
    trail_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    summary_parser = subparsers.add_parser("audit-summary", help="Audit event counts by type")
    summary_parser.add_argument("--id", help="Restrict to one registration (optional)")

    subparsers.add_parser("health", help="Check the quality and identification services")
    subparsers.add_parser("init-db", help="Create the registry tables")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for admin CLI."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(run_command(args))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
