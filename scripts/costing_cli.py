#!/usr/bin/env python3
"""
Operator CLI for the FIFO costing core.

Subcommands:
  init-db          create the costing tables
  recalculate      rebuild one product's costs from a date
  recalculate-all  rebuild every product with sales (historical repair)
  stock            show on-hand lots for a product
  audit            show the cost audit trail

Usage:
  python3 scripts/costing_cli.py recalculate --product-id UUID --from-date 2024-01-05
  python3 scripts/costing_cli.py recalculate-all --triggered-by "repair job"
  python3 scripts/costing_cli.py stock --product-id UUID
  python3 scripts/costing_cli.py audit --product-id UUID --limit 20

The database comes from --db-url, else the DATABASE_URL environment variable.
Recalculations run in one transaction per invocation; --dry-run rolls it back.
"""

import argparse
import os
import sys
from datetime import date
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from costing_config import load_costing_config  # noqa: E402
from costing_kernel.db.engine import (  # noqa: E402
    create_tables,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from costing_kernel.db.immutability import register_immutability_listeners  # noqa: E402
from costing_kernel.db.types import round_money  # noqa: E402
from costing_kernel.exceptions import CostingKernelError  # noqa: E402
from costing_kernel.logging_config import LogContext, get_logger  # noqa: E402
from costing_kernel.selectors.stock_selector import StockSelector  # noqa: E402
from costing_services.recalculation_service import RecalculationService  # noqa: E402

logger = get_logger("scripts.costing_cli")


class _DryRunRollback(Exception):
    """Raised inside session_scope to discard a dry run."""


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="FIFO costing maintenance")
    p.add_argument(
        "--db-url",
        default=os.environ.get("DATABASE_URL"),
        help="Database URL (default: DATABASE_URL)",
    )
    p.add_argument("--config", default=None, help="Costing settings YAML file")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the costing tables")

    recalc = sub.add_parser("recalculate", help="Recalculate one product from a date")
    recalc.add_argument("--product-id", required=True, type=UUID)
    recalc.add_argument("--from-date", required=True, type=date.fromisoformat)
    recalc.add_argument("--reason", default=None)
    recalc.add_argument("--triggered-by", default="costing_cli")
    recalc.add_argument("--dry-run", action="store_true")

    recalc_all = sub.add_parser("recalculate-all", help="Recalculate every product")
    recalc_all.add_argument("--from-date", default=date.min, type=date.fromisoformat)
    recalc_all.add_argument("--reason", default=None)
    recalc_all.add_argument("--triggered-by", default="costing_cli")
    recalc_all.add_argument("--dry-run", action="store_true")

    stock = sub.add_parser("stock", help="Show on-hand stock for a product")
    stock.add_argument("--product-id", required=True, type=UUID)
    stock.add_argument("--warehouse", default=None)

    audit = sub.add_parser("audit", help="Show the cost audit trail")
    audit.add_argument("--product-id", default=None, type=UUID)
    audit.add_argument("--limit", default=50, type=int)

    return p.parse_args(argv)


def _print_summary(summary) -> None:
    if summary.skipped:
        print(f"  {summary.product_id}: nothing to recalculate from {summary.from_date}")
        return
    print(
        f"  {summary.product_id}: {summary.lines_replayed} line(s) replayed, "
        f"{summary.audit_entries} cost change(s), "
        f"net {round_money(summary.total_cogs_change)}"
    )
    for warning in summary.warnings:
        print(f"    warning: {warning}")


def _recalculate(args, config) -> int:
    try:
        with session_scope() as session:
            service = RecalculationService(session, config=config)
            if args.command == "recalculate":
                summaries = [
                    service.recalculate_from_date(
                        args.product_id,
                        args.from_date,
                        reason=args.reason,
                        triggered_by=args.triggered_by,
                    )
                ]
            else:
                summaries = service.recalculate_all(
                    from_date=args.from_date,
                    reason=args.reason,
                    triggered_by=args.triggered_by,
                )
            for summary in summaries:
                _print_summary(summary)
            if args.dry_run:
                raise _DryRunRollback()
    except _DryRunRollback:
        print("  Dry run: changes rolled back.")
    return 0


def _stock(args) -> int:
    with session_scope() as session:
        stock = StockSelector(session).get_product_stock(args.product_id, args.warehouse)
    if stock is None:
        print(f"  Product not found: {args.product_id}", file=sys.stderr)
        return 1
    print(f"  {stock.product_name} ({stock.product_id})")
    print(
        f"  on hand {stock.total_quantity.normalize():f}  value {round_money(stock.total_value)}  "
        f"average cost {round_money(stock.average_cost)}"
    )
    for lot in stock.lots:
        print(
            f"    {lot.lot_date}  {lot.source_type:<13}  "
            f"{lot.remaining_quantity.normalize():f}/{lot.initial_quantity.normalize():f} "
            f"@ {round_money(lot.unit_cost)}"
        )
    return 0


def _audit(args) -> int:
    with session_scope() as session:
        entries = StockSelector(session).cost_audit_entries(
            product_id=args.product_id,
            limit=args.limit,
        )
    if not entries:
        print("  No cost changes recorded.")
        return 0
    for entry in entries:
        print(
            f"  {entry.created_at:%Y-%m-%d %H:%M:%S}  line {entry.invoice_line_id}  "
            f"{round_money(entry.old_cogs)} -> {round_money(entry.new_cogs)}  "
            f"({entry.change_reason}; {entry.triggered_by or '-'})"
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if not args.db_url:
        print("  ERROR: no database URL (use --db-url or DATABASE_URL)", file=sys.stderr)
        return 2

    try:
        config = load_costing_config(args.config)
    except (CostingKernelError, OSError) as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2

    init_engine_from_url(args.db_url)
    register_immutability_listeners()
    try:
        with LogContext.bind(actor_id="costing_cli"):
            if args.command == "init-db":
                create_tables()
                print("  Costing tables created.")
                return 0
            if args.command in ("recalculate", "recalculate-all"):
                return _recalculate(args, config)
            if args.command == "stock":
                return _stock(args)
            return _audit(args)
    except CostingKernelError as exc:
        logger.error("costing_cli_failed", extra={"command": args.command, "code": exc.code})
        print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        reset_engine()


if __name__ == "__main__":
    sys.exit(main())
