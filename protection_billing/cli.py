from __future__ import annotations

import argparse
import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from protection_billing.common.db import run_alembic_upgrade
from protection_billing.common.date_utils import parse_week_identifier
from protection_billing.common.json_logger import get_logger, timed_event
from protection_billing.config import SYNC_MODES, ConfigError, get_config


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}; expected YYYY-MM-DD") from exc


def _week_id(value: str) -> str:
    try:
        parse_week_identifier(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return value


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer {value!r}") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("value must be >= 1")
    return parsed


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, default=str, indent=2))


async def _run_sync(args: argparse.Namespace) -> int:
    from protection_billing.sync.batch import sync_now

    try:
        batch = await sync_now(
            store_id=args.store_id,
            days_back=args.days_back,
            start_date=args.start_date,
            end_date=args.end_date,
            mode=args.mode,
        )
    except ValueError as exc:
        _print({"success": False, "error": str(exc)})
        return 2
    _print(batch.as_dict())
    return 0 if batch.failed_syncs == 0 and batch.total_failed_orders == 0 else 1


async def _run_validate_store(args: argparse.Namespace) -> int:
    from protection_billing.sync.batch import validate_store

    try:
        result = await validate_store(store_id=args.store_id)
    except (LookupError, ValueError) as exc:
        _print({"success": False, "error": str(exc)})
        return 2
    _print({"success": result["valid"], **result})
    return 0 if result["valid"] else 1


async def _run_weekly(args: argparse.Namespace) -> int:
    from protection_billing.billing.weekly import generate_weekly_invoices

    result = await generate_weekly_invoices(test_mode=args.test_mode, store_id=args.store_id)
    _print(result.as_dict())
    return 0 if result.success else 1


async def _run_supplemental(args: argparse.Namespace) -> int:
    from protection_billing.billing.invoice_workflow import InvoicePersistError, InvoiceWorkflowError
    from protection_billing.billing.supplemental import generate_supplemental_invoice

    try:
        result = await generate_supplemental_invoice(
            store_id=args.store_id, week=args.week, original_invoice_id=args.original_invoice_id
        )
    except (LookupError, ValueError) as exc:
        _print({"success": False, "error": str(exc)})
        return 2
    except (InvoiceWorkflowError, InvoicePersistError) as exc:
        _print({"success": False, "error": str(exc), "external_invoice_id": exc.external_invoice_id})
        return 1
    _print({"success": True, **result.as_dict()})
    return 0


def _run_db_upgrade(args: argparse.Namespace) -> int:
    config = get_config()
    logger = get_logger(log_file_path=config.json_log_file)
    try:
        with timed_event(logger=logger, phase="db", message="running migrations", revision=args.revision):
            run_alembic_upgrade(
                args.revision,
                database_url=config.database_url,
                alembic_config_path=config.alembic_config,
            )
    finally:
        logger.close()
    return 0


async def _run_webhook(args: argparse.Namespace) -> int:
    from protection_billing.billing.webhooks import WebhookSignatureError, apply_invoice_event, verify_signature

    config = get_config()
    payload = args.payload_file.read_bytes()
    if config.webhook_verification_enabled:
        try:
            verify_signature(payload, args.signature or "", config.stripe_webhook_secret)
        except WebhookSignatureError as exc:
            _print({"success": False, "error": str(exc)})
            return 2
    try:
        event = json.loads(payload)
    except ValueError as exc:
        _print({"success": False, "error": f"invalid event payload: {exc}"})
        return 2

    logger = get_logger(log_file_path=config.json_log_file)
    try:
        updated = await apply_invoice_event(config.database_url, event, logger=logger)
    finally:
        logger.close()
    _print({"success": True, "updated": updated, "event_type": event.get("type")})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="protection_billing")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Sync protection sales from Shopify")
    sync_parser.add_argument("--store-id", dest="store_id", default=None, help="Sync a single store")
    window = sync_parser.add_mutually_exclusive_group()
    window.add_argument("--days-back", dest="days_back", type=_positive_int, default=None)
    window.add_argument("--start-date", dest="start_date", type=_iso_date, default=None)
    sync_parser.add_argument("--end-date", dest="end_date", type=_iso_date, default=None)
    sync_parser.add_argument("--mode", choices=sorted(SYNC_MODES), default=None)

    stores_parser = subparsers.add_parser("stores", help="Store maintenance")
    store_commands = stores_parser.add_subparsers(dest="store_command", required=True)
    validate_parser = store_commands.add_parser("validate", help="Check a store's Shopify API token")
    validate_parser.add_argument("--store-id", dest="store_id", required=True)

    invoices_parser = subparsers.add_parser("invoices", help="Commission invoicing")
    invoice_commands = invoices_parser.add_subparsers(dest="invoice_command", required=True)
    weekly_parser = invoice_commands.add_parser("weekly", help="Generate weekly commission invoices")
    weekly_parser.add_argument(
        "--test-mode", dest="test_mode", action="store_true", help="Bill the current week instead of last week"
    )
    weekly_parser.add_argument("--store-id", dest="store_id", default=None)

    supplemental_parser = invoice_commands.add_parser(
        "supplemental", help="Bill sales recorded after a week's invoice was issued"
    )
    supplemental_parser.add_argument("--store-id", dest="store_id", required=True)
    supplemental_parser.add_argument("--week", type=_week_id, required=True, help="ISO week, e.g. 2025-W15")
    supplemental_parser.add_argument("--original-invoice-id", dest="original_invoice_id", type=int, default=None)

    webhook_parser = invoice_commands.add_parser(
        "webhook", help="Apply a processor invoice event to the local invoice row"
    )
    webhook_parser.add_argument("--payload-file", dest="payload_file", type=Path, required=True)
    webhook_parser.add_argument("--signature", default=None, help="Stripe-Signature header value")

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_commands = db_parser.add_subparsers(dest="db_command", required=True)
    upgrade_parser = db_commands.add_parser("upgrade", help="Run Alembic migrations")
    upgrade_parser.add_argument("--revision", default="head")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "sync" and bool(args.start_date) != bool(args.end_date):
        parser.error("--start-date and --end-date must be given together")

    try:
        if args.command == "sync":
            return asyncio.run(_run_sync(args))
        if args.command == "stores" and args.store_command == "validate":
            return asyncio.run(_run_validate_store(args))
        if args.command == "invoices" and args.invoice_command == "weekly":
            return asyncio.run(_run_weekly(args))
        if args.command == "invoices" and args.invoice_command == "supplemental":
            return asyncio.run(_run_supplemental(args))
        if args.command == "invoices" and args.invoice_command == "webhook":
            return asyncio.run(_run_webhook(args))
        if args.command == "db" and args.db_command == "upgrade":
            return _run_db_upgrade(args)
    except ConfigError as exc:
        _print({"success": False, "error": str(exc)})
        return 2

    parser.error("Unknown command")
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
