from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .pipeline import run_reconciliation


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Truck round-trip fuel reconciliation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Replay trip orders and fuel events and write the ledger")
    run_parser.add_argument(
        "--orders",
        type=Path,
        default=Path("data/delivery_orders.csv"),
        help="CSV of going (IMPORT) and return (EXPORT) delivery orders.",
    )
    run_parser.add_argument(
        "--lpos",
        type=Path,
        default=None,
        help="CSV of LPO fuel purchases at stations.",
    )
    run_parser.add_argument(
        "--yard",
        type=Path,
        default=None,
        help="CSV of fuel dispensed at company yards.",
    )
    run_parser.add_argument(
        "--routes",
        type=Path,
        default=Path("data/routes.csv"),
        help="CSV of route allowances by destination.",
    )
    run_parser.add_argument(
        "--batches",
        type=Path,
        default=Path("data/truck_batches.csv"),
        help="CSV of extra-fuel batches by truck suffix.",
    )
    run_parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("out"),
        help="Directory that will receive the ledger and report.",
    )
    run_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "run":
        logging.basicConfig(
            level=getattr(logging, args.log_level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        run_reconciliation(
            orders_path=args.orders,
            lpos_path=args.lpos,
            yard_path=args.yard,
            routes_path=args.routes,
            batches_path=args.batches,
            out_dir=args.out_dir,
        )
        return 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover - exercised via CLI entry point
    raise SystemExit(main())
