"""
CLI main entry point.

Every command prints JSON on stdout. Failures print a JSON error object
({"error_kind", "error_message"}) and exit with status 1.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..errors import InputValidationError, LedgerError
from ..extraction import ExtractionService
from ..schemas.records import UserProfile, parse_time_window
from ..services import IngestionService
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging. Log lines go to stderr so stdout stays JSON."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="push-ledger",
        description="Turn bank push notifications into a transaction ledger",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # ingest command
    ingest_parser = subparsers.add_parser(
        "ingest", help="Ingest a JSON array of notifications for a user"
    )
    ingest_parser.add_argument("--user-id", type=int, required=True, help="Owner user ID")
    ingest_parser.add_argument(
        "--file",
        type=str,
        default="-",
        help="JSON file with [{timestamp, title, body}, ...] (default: stdin)",
    )

    # notifications command
    notifications_parser = subparsers.add_parser(
        "notifications", help="List stored notifications, newest first"
    )
    notifications_parser.add_argument("--user-id", type=int, required=True, help="Owner user ID")
    _add_window_arguments(notifications_parser)

    # transactions command
    transactions_parser = subparsers.add_parser(
        "transactions", help="List stored transactions, newest first"
    )
    transactions_parser.add_argument("--user-id", type=int, required=True, help="Owner user ID")
    _add_window_arguments(transactions_parser)

    # add command
    add_parser = subparsers.add_parser("add", help="Record a transaction manually")
    add_parser.add_argument("--user-id", type=int, required=True, help="Owner user ID")
    add_parser.add_argument("--timestamp", type=str, required=True, help="ISO-8601 timestamp")
    add_parser.add_argument("--amount", type=str, required=True, help="Amount, e.g. 12.50")
    add_parser.add_argument("--name", type=str, required=True, help="Counterparty name")
    add_parser.add_argument("--type", type=str, help="Transaction type (e.g. EXPENSE)")
    add_parser.add_argument("--due-date", type=str, help="Invoice due date (INVOICE only)")
    add_parser.add_argument(
        "--invoice-status", type=str, help="CONFIRMED or UNCONFIRMED (INVOICE only)"
    )

    # update command
    update_parser = subparsers.add_parser("update", help="Edit a stored transaction")
    update_parser.add_argument("transaction_id", type=str, help="Transaction ID")
    update_parser.add_argument("--timestamp", type=str, help="New ISO-8601 timestamp")
    update_parser.add_argument("--amount", type=str, help="New amount")
    update_parser.add_argument("--name", type=str, help="New counterparty name")
    update_parser.add_argument("--type", type=str, help="New transaction type")
    update_parser.add_argument("--due-date", type=str, help="New invoice due date")

    # invoice-status command
    status_change_parser = subparsers.add_parser(
        "invoice-status", help="Set an invoice to CANCELED, PAID or UNPAID"
    )
    status_change_parser.add_argument("transaction_id", type=str, help="Transaction ID")
    status_change_parser.add_argument("status", type=str, help="CANCELED, PAID or UNPAID")

    # delete command
    delete_parser = subparsers.add_parser("delete", help="Delete a transaction")
    delete_parser.add_argument("transaction_id", type=str, help="Transaction ID")

    # settle-invoices command
    settle_parser = subparsers.add_parser(
        "settle-invoices", help="Apply due-date transitions to overdue invoices"
    )
    settle_parser.add_argument("--user-id", type=int, help="Restrict to one user")

    # profile command
    profile_parser = subparsers.add_parser(
        "profile", help="Set name and employer hints used during extraction"
    )
    profile_parser.add_argument("--user-id", type=int, required=True, help="Owner user ID")
    profile_parser.add_argument("--first-name", type=str, help="First name")
    profile_parser.add_argument("--last-name", type=str, help="Last name")
    profile_parser.add_argument("--company", type=str, help="Employer or company name")

    # status command
    status_parser = subparsers.add_parser("status", help="Show ledger statistics")
    status_parser.add_argument("--user-id", type=int, help="Restrict to one user")

    return parser


def _add_window_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start-date", type=str, help="First day (YYYY-MM-DD), inclusive")
    parser.add_argument("--end-date", type=str, help="Last day (YYYY-MM-DD), inclusive")


def _emit(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _window(start_date: str | None, end_date: str | None):
    try:
        return parse_time_window(start_date, end_date)
    except ValueError as e:
        raise InputValidationError(f"Invalid date (expected YYYY-MM-DD): {e}") from e


def _read_notifications(source: str) -> list:
    try:
        if source == "-":
            data = json.load(sys.stdin)
        else:
            with open(source, encoding="utf-8") as f:
                data = json.load(f)
    except OSError as e:
        raise InputValidationError(f"Cannot read {source}: {e}") from e
    except json.JSONDecodeError as e:
        raise InputValidationError(f"Invalid JSON in {source}: {e}") from e

    if isinstance(data, dict):
        data = data.get("notifications", [data])
    return data


def _service(config: Config, with_extractor: bool = False) -> IngestionService:
    store = StateStore(config.state_db_path)
    extractor = ExtractionService(config) if with_extractor else None
    return IngestionService(store, extractor, config)


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file unless one exists."""
    if config_path.exists():
        _emit({"created": False, "path": str(config_path)})
        return 0
    create_default_config(config_path)
    _emit({"created": True, "path": str(config_path)})
    return 0


def cmd_ingest(config: Config, user_id: int, source: str) -> int:
    """Ingest a notification batch."""
    notifications = _read_notifications(source)
    service = _service(config, with_extractor=True)
    try:
        result = service.ingest(user_id, notifications)
    finally:
        service.extractor.close()
    _emit(result.to_dict())
    return 0


def cmd_notifications(
    config: Config, user_id: int, start_date: str | None, end_date: str | None
) -> int:
    """List notifications in a window."""
    start, end = _window(start_date, end_date)
    notifications = _service(config).list_notifications(user_id, start, end)
    _emit([n.to_dict() for n in notifications])
    return 0


def cmd_transactions(
    config: Config, user_id: int, start_date: str | None, end_date: str | None
) -> int:
    """List transactions in a window."""
    start, end = _window(start_date, end_date)
    transactions = _service(config).list_transactions(user_id, start, end)
    _emit([t.to_dict() for t in transactions])
    return 0


def cmd_add(config: Config, parsed: argparse.Namespace) -> int:
    """Record a manual transaction."""
    txn, created = _service(config).add_transaction(
        parsed.user_id,
        timestamp=parsed.timestamp,
        amount=parsed.amount,
        name=parsed.name,
        type=parsed.type,
        due_date=parsed.due_date,
        invoice_status=parsed.invoice_status,
    )
    _emit({"created": created, "transaction": txn.to_dict()})
    return 0


def cmd_update(config: Config, parsed: argparse.Namespace) -> int:
    """Edit a stored transaction."""
    changes = {
        key: value
        for key, value in (
            ("timestamp", parsed.timestamp),
            ("amount", parsed.amount),
            ("name", parsed.name),
            ("type", parsed.type),
            ("due_date", parsed.due_date),
        )
        if value is not None
    }
    if not changes:
        raise InputValidationError("Nothing to update")
    txn = _service(config).update_transaction(parsed.transaction_id, changes)
    _emit(txn.to_dict())
    return 0


def cmd_invoice_status(config: Config, transaction_id: str, status: str) -> int:
    """Manually transition an invoice."""
    txn = _service(config).transition_invoice_status(transaction_id, status)
    _emit(txn.to_dict())
    return 0


def cmd_delete(config: Config, transaction_id: str) -> int:
    """Delete a transaction."""
    deleted = _service(config).delete_transaction(transaction_id)
    _emit({"deleted": deleted, "id": transaction_id})
    return 0


def cmd_settle_invoices(config: Config, user_id: int | None) -> int:
    """Apply due-date transitions."""
    changed = _service(config).apply_due_invoices(user_id)
    _emit([t.to_dict() for t in changed])
    return 0


def cmd_profile(config: Config, parsed: argparse.Namespace) -> int:
    """Store extraction hints for a user."""
    profile = UserProfile(
        user_id=parsed.user_id,
        first_name=parsed.first_name,
        last_name=parsed.last_name,
        company_name=parsed.company,
    )
    StateStore(config.state_db_path).upsert_user_profile(profile)
    _emit(
        {
            "user_id": profile.user_id,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "company_name": profile.company_name,
        }
    )
    return 0


def cmd_status(config: Config, user_id: int | None) -> int:
    """Show ledger statistics."""
    stats = StateStore(config.state_db_path).get_stats(user_id)
    stats["llm"] = {
        "enabled": config.llm.enabled,
        "model": config.llm.model,
        "remote": config.llm.is_remote(),
    }
    _emit(stats)
    return 0


def _dispatch(config: Config, parsed: argparse.Namespace) -> int:
    if parsed.command == "ingest":
        return cmd_ingest(config, parsed.user_id, parsed.file)
    elif parsed.command == "notifications":
        return cmd_notifications(config, parsed.user_id, parsed.start_date, parsed.end_date)
    elif parsed.command == "transactions":
        return cmd_transactions(config, parsed.user_id, parsed.start_date, parsed.end_date)
    elif parsed.command == "add":
        return cmd_add(config, parsed)
    elif parsed.command == "update":
        return cmd_update(config, parsed)
    elif parsed.command == "invoice-status":
        return cmd_invoice_status(config, parsed.transaction_id, parsed.status)
    elif parsed.command == "delete":
        return cmd_delete(config, parsed.transaction_id)
    elif parsed.command == "settle-invoices":
        return cmd_settle_invoices(config, parsed.user_id)
    elif parsed.command == "profile":
        return cmd_profile(config, parsed)
    elif parsed.command == "status":
        return cmd_status(config, parsed.user_id)
    raise InputValidationError(f"Unknown command: {parsed.command}")


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        logger.error("Failed to load config: %s", e)
        _emit({"error_kind": "INVALID_PARAMETER", "error_message": f"Failed to load config: {e}"})
        return 1

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error("Config: %s", error)
        _emit({"error_kind": "INVALID_PARAMETER", "error_message": "; ".join(errors)})
        return 1

    try:
        return _dispatch(config, parsed)
    except LedgerError as e:
        logger.error("%s failed: %s", parsed.command, e.message)
        payload = e.to_dict()
        if getattr(e, "errors", None):
            payload["errors"] = e.errors
        _emit(payload)
        return 1


if __name__ == "__main__":
    sys.exit(main())
