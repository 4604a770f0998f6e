"""
Command-line entry point for batch operations.

Usage:
    loan-engine payouts run [--date YYYY-MM-DD] [--dry-run] [--annual]
    loan-engine payouts status [--date YYYY-MM-DD] [--annual]
    loan-engine replay ACCOUNT_ID [--as-of YYYY-MM-DD]
    loan-engine analytics ACCOUNT_ID [--period 6|12|24]

Meant to be run from cron for the daily batch. Results are printed as JSON.
Exit code is 0 on success and 1 when the command failed or a batch
reported per-deposit failures.
"""

import argparse
import json
import sys
from dataclasses import asdict
from datetime import date
from typing import Any, List, Optional

from .config import get_config
from .engine import LoanEngine
from .exceptions import LoanEngineError
from .logging_config import setup_logging
from .storage import _to_storable


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loan-engine",
        description="Loan ledger and yield payout operations",
    )
    parser.add_argument(
        "--backend", choices=["memory", "sqlite"], default=None,
        help="Storage backend (default: from LOAN_ENGINE_STORAGE_BACKEND)",
    )
    parser.add_argument(
        "--database", default=None,
        help="SQLite database path (default: from LOAN_ENGINE_DATABASE_PATH)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    payouts = commands.add_parser("payouts", help="Yield payout batches")
    payout_commands = payouts.add_subparsers(dest="payouts_command", required=True)

    run = payout_commands.add_parser("run", help="Process payouts for a date")
    run.add_argument("--date", type=_parse_date, default=None, help="Batch date (default: today)")
    run.add_argument("--dry-run", action="store_true", help="Report what would be paid without writing")
    run.add_argument("--annual", action="store_true", help="Run anniversary payouts instead of the daily batch")
    run.add_argument("--processed-by", default="system", help="Recorded as the payouts' processor")

    status = payout_commands.add_parser("status", help="Show batch progress for a date")
    status.add_argument("--date", type=_parse_date, default=None, help="Batch date (default: today)")
    status.add_argument("--annual", action="store_true", help="Status of anniversary payouts")

    replay = commands.add_parser("replay", help="Recompute an account's monthly balances")
    replay.add_argument("account_id")
    replay.add_argument("--as-of", type=_parse_date, default=None, help="Replay horizon (default: today)")

    analytics = commands.add_parser("analytics", help="Print an account's analytics view")
    analytics.add_argument("account_id")
    analytics.add_argument("--period", default=None, help="6, 12 or 24 months (anything else means 24)")
    analytics.add_argument("--as-of", type=_parse_date, default=None)

    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(_to_storable(payload), indent=2, sort_keys=True))


def _make_engine(args: argparse.Namespace) -> LoanEngine:
    config = get_config()
    overrides = {}
    if args.backend:
        overrides["storage_backend"] = args.backend
    if args.database:
        overrides["database_path"] = args.database
    if overrides:
        config = config.model_copy(update=overrides)
    return LoanEngine(config=config)


def main(argv: Optional[List[str]] = None, engine: Optional[LoanEngine] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    engine = engine or _make_engine(args)
    try:
        if args.command == "payouts":
            as_of = args.date or date.today()
            kind = "annual" if args.annual else "daily"
            if args.payouts_command == "run":
                if args.annual:
                    result = engine.run_annual_payouts(as_of, args.processed_by, dry_run=args.dry_run)
                else:
                    result = engine.run_daily_batch(as_of, args.processed_by, dry_run=args.dry_run)
                _emit(asdict(result))
                return 0 if not result.failures else 1

            status = engine.get_batch_status(as_of, kind)
            payload = asdict(status)
            payload["is_complete"] = status.is_complete
            _emit(payload)
            return 0

        if args.command == "replay":
            _emit(asdict(engine.replay_and_persist(args.account_id, args.as_of)))
            return 0

        if args.command == "analytics":
            _emit(asdict(engine.get_analytics(args.account_id, args.period, as_of=args.as_of)))
            return 0

    except LoanEngineError as e:
        _emit({"error": e.code, "message": str(e)})
        return 1

    return 1


if __name__ == "__main__":
    sys.exit(main())
