"""
CLI entry point for the Giving Sync service.

Usage:
    python -m services.giving_sync run stripe
    python -m services.giving_sync run batch --days 30 --reset-window
    python -m services.giving_sync run registrations --preview
    python -m services.giving_sync serve --port 8000
    python -m services.giving_sync init-db
    python -m services.giving_sync mapping set 1234 --class "General" --location "North"

Results are printed to stdout as JSON; logs go to stderr.
"""

import argparse
import json
import sys
from datetime import timedelta
from typing import Any, List, Optional

import structlog
import uvicorn

from . import __version__
from .api import create_app
from .clock import utcnow
from .db.connector import create_schema, get_engine
from .errors import ConfigurationError, SyncError
from .http_client import RetryAuditLog
from .ledger_client import LedgerToken, TokenStore, make_ledger_factory
from .log_config import configure_logging
from .mappings import CategoryMapping, MappingTable
from .models import SyncType
from .notify import build_notifier
from .orchestrator import RunOptions, RunStatus, build_orchestrator
from .run_log import RunLogger
from .settings import GivingSyncSettings, settings
from .source_client import SourceClient
from .watermark import RefundWatermarkStore

logger = structlog.get_logger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="giving-sync",
        description="Giving Sync - book giving and registration payments into the ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Incremental online giving sync
  giving-sync run stripe

  # Re-scan the last 30 days of committed batches
  giving-sync run batch --days 30 --reset-window

  # Show what a registrations run would book, without writing anything
  giving-sync run registrations --preview

  # Serve trigger and webhook endpoints
  giving-sync serve --host 0.0.0.0 --port 8000
        """
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration"
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Override log format from configuration"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run one sync")
    run.add_argument("sync_type", choices=[t.value for t in SyncType])
    run.add_argument("--days", type=int, help="Lookback days used with --reset-window")
    run.add_argument("--reset-window", action="store_true", help="Start the window at now - days")
    run.add_argument("--force-refunds", action="store_true", help="Treat prior refund totals as zero")
    run.add_argument("--preview", action="store_true", help="Build transactions without committing")

    serve = commands.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    commands.add_parser("init-db", help="Create missing tables")

    logs = commands.add_parser("logs", help="Show recent run log entries")
    logs.add_argument("--limit", type=int, default=20)
    logs.add_argument("--type", dest="sync_type", choices=[t.value for t in SyncType])

    mapping = commands.add_parser("mapping", help="Manage fund mappings")
    mapping_commands = mapping.add_subparsers(dest="mapping_command", required=True)
    mapping_commands.add_parser("list", help="List fund mappings")
    mapping_set = mapping_commands.add_parser("set", help="Create or update a fund mapping")
    mapping_set.add_argument("category_id")
    mapping_set.add_argument("--class", dest="class_name", required=True)
    mapping_set.add_argument("--location", dest="location_name", default="")
    mapping_set.add_argument("--name", dest="display_name", default="")
    mapping_commands.add_parser("sync-names", help="Refresh fund names from the source")

    token = commands.add_parser("store-token", help="Store ledger OAuth tokens obtained out of band")
    token.add_argument("--realm-id", required=True)
    token.add_argument("--access-token", required=True)
    token.add_argument("--refresh-token", required=True)
    token.add_argument("--expires-in", type=int, default=3600, help="Access token lifetime in seconds")

    prune = commands.add_parser("prune-refunds", help="Delete refund watermarks not updated recently")
    prune.add_argument("--older-than-days", type=int, default=365)

    commands.add_parser("test-connection", help="Check source and ledger connectivity")

    return parser


def emit(payload: Any) -> None:
    """Write a JSON document to stdout."""
    print(json.dumps(payload, indent=2, default=str))


def build_engine(config: GivingSyncSettings):
    if not config.database_url:
        raise ConfigurationError("DATABASE_URL is not configured")
    return get_engine(config.database_url)


def run_sync(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    """
    Run (or preview) one sync and print its result.

    Returns:
        Exit code: 1 when the run ends in ``error``, 0 otherwise
    """
    engine = build_engine(config)
    audit_log = RetryAuditLog(config.retry_log_path)

    with SourceClient(config, audit_log=audit_log) as source:
        orchestrator = build_orchestrator(
            SyncType(args.sync_type),
            config,
            engine,
            source,
            make_ledger_factory(config, engine, audit_log=audit_log),
            notifier=build_notifier(config),
        )
        options = RunOptions.coerce(
            args.days,
            args.reset_window,
            args.force_refunds,
            default_days=config.default_backfill_days,
        )
        result = orchestrator.preview(options) if args.preview else orchestrator.run(options)

    emit(result.to_dict())
    return 1 if result.status == RunStatus.ERROR else 0


def serve(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    app = create_app(config, build_engine(config))
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def init_db(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    create_schema(build_engine(config))
    emit({"status": "ok"})
    return 0


def show_logs(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    entries = RunLogger(build_engine(config)).recent(limit=args.limit, sync_type=args.sync_type)
    emit(entries)
    return 0


def manage_mappings(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    table = MappingTable(build_engine(config))

    if args.mapping_command == "list":
        emit([m.to_dict() for m in table.load().values()])
        return 0

    if args.mapping_command == "set":
        existing = table.get(args.category_id)
        display_name = args.display_name or (existing.display_name if existing else "")
        mapping = CategoryMapping(
            category_id=args.category_id,
            display_name=display_name,
            class_name=args.class_name.strip(),
            location_name=args.location_name.strip(),
        )
        table.upsert(mapping)
        emit(mapping.to_dict())
        return 0

    with SourceClient(config) as source:
        added = table.sync_names(source.list_funds())
    emit({"added": added})
    return 0


def store_token(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    now = utcnow()
    token = LedgerToken(
        realm_id=args.realm_id,
        access_token=args.access_token,
        refresh_token=args.refresh_token,
        expires_at=now + timedelta(seconds=args.expires_in),
    )
    TokenStore(build_engine(config)).save(token)
    emit({"realm_id": token.realm_id, "expires_at": token.expires_at.isoformat()})
    return 0


def prune_refunds(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    before = utcnow() - timedelta(days=args.older_than_days)
    removed = RefundWatermarkStore(build_engine(config)).prune(before)
    emit({"removed": removed, "before": before.isoformat()})
    return 0


def check_connections(config: GivingSyncSettings, args: argparse.Namespace) -> int:
    status = {}
    with SourceClient(config) as source:
        status["source"] = source.test_connection()

    engine = build_engine(config)
    try:
        ledger = make_ledger_factory(config, engine)()
    except SyncError as e:
        logger.error("Ledger client unavailable", error=e.message, error_kind=e.kind.value)
        status["ledger"] = False
    else:
        with ledger:
            status["ledger"] = ledger.test_connection()

    emit(status)
    return 0 if all(status.values()) else 1


COMMANDS = {
    "run": run_sync,
    "serve": serve,
    "init-db": init_db,
    "logs": show_logs,
    "mapping": manage_mappings,
    "store-token": store_token,
    "prune-refunds": prune_refunds,
    "test-connection": check_connections,
}


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI application.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    config = settings()
    configure_logging(config, args.log_level, args.log_format, stream=sys.stderr)
    logger.info(
        "Service starting",
        service_name=config.service_name,
        version=__version__,
        environment=config.environment,
        command=args.command,
    )

    try:
        return COMMANDS[args.command](config, args)
    except SyncError as e:
        logger.error("Command failed", error=e.message, error_kind=e.kind.value)
        emit({"status": "error", "error": e.to_record().to_dict()})
        return 1
    except KeyboardInterrupt:
        logger.warning("Service interrupted by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
