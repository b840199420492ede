"""
Maintenance entry point for Liquidity Planner.

Run on process start and from a scheduler to keep every active
template's series filled up to the horizon.

Examples:
    python app/main.py topup
    python app/main.py topup --horizon 2025-06-30
    python app/main.py summary
    python app/main.py check-config
"""

import argparse
import json
import logging
import sys
from datetime import date

from liquidity.api import error_payload
from liquidity.config import get_settings, validate_all_settings
from liquidity.engine import build_components
from liquidity.queries import ForecastQueries
from liquidity.services.storage import PersistenceError, SqlStore


def _parse_horizon(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="liquidity-planner",
        description="Recurring transaction maintenance.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override STORAGE_DATABASE_URL",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    topup = commands.add_parser("topup", help="Generate missing occurrences for active templates")
    topup.add_argument(
        "--horizon",
        type=_parse_horizon,
        default=None,
        help="Last date to generate, YYYY-MM-DD (default: today + RECURRENCE_HORIZON_MONTHS)",
    )

    commands.add_parser("summary", help="Print template counts and monthly totals as JSON")
    commands.add_parser("check-config", help="Validate configuration and exit")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.app.log_level, format="%(message)s")

    if args.command == "check-config":
        results = validate_all_settings()
        print(json.dumps(results, indent=2, default=str))
        failed = [name for name, ok in results.items() if ok is False]
        return 1 if failed else 0

    try:
        store = SqlStore(database_url=args.database_url) if args.database_url else None
        engine, store = build_components(settings=settings, store=store)
        if args.command == "topup":
            result = engine.top_up(horizon=args.horizon)
            print(json.dumps(result.model_dump(mode="json"), indent=2))
            return 0
        if args.command == "summary":
            summary = ForecastQueries(store).summarize()
            print(json.dumps(summary.model_dump(mode="json"), indent=2))
            return 0
    except PersistenceError as e:
        print(json.dumps(error_payload(e), indent=2), file=sys.stderr)
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
