#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
from datetime import date

from attendance_points.db import SessionLocal
from attendance_points.logging_utils import setup_json_logging
from attendance_points.models import ConsistencyOperationKind, ExpirationScope
from attendance_points.services.consistency import ScopeFilter, management_stats, run_consistency_operation
from attendance_points.settings import get_settings, local_today


def _parse_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {raw}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run an attendance point consistency job.")
    parser.add_argument(
        "kind",
        nargs="?",
        choices=[item.value for item in ConsistencyOperationKind],
        default=ConsistencyOperationKind.PROCESS_EXPIRATIONS.value,
    )
    parser.add_argument("--employee-id", dest="employee_ids", type=int, action="append")
    parser.add_argument("--date-from", type=_parse_date)
    parser.add_argument("--date-to", type=_parse_date)
    parser.add_argument(
        "--scope",
        choices=[item.value for item in ExpirationScope],
        default=ExpirationScope.BOTH.value,
    )
    parser.add_argument("--as-of", type=_parse_date)
    parser.add_argument("--requested-by", default="system")
    parser.add_argument("--stats", action="store_true", help="Print management stats and change nothing.")
    return parser


def run(argv: list[str] | None = None) -> dict:
    args = build_parser().parse_args(argv)
    scope = ScopeFilter(
        employee_ids=tuple(args.employee_ids) if args.employee_ids else None,
        date_from=args.date_from,
        date_to=args.date_to,
        expiration_scope=ExpirationScope(args.scope),
    )
    as_of = args.as_of or local_today()
    with SessionLocal() as db:
        if args.stats:
            return management_stats(db, scope, as_of)
        result = run_consistency_operation(
            db,
            ConsistencyOperationKind(args.kind),
            scope,
            as_of,
            requested_by=args.requested_by,
        )
        return result.to_dict()


if __name__ == "__main__":
    setup_json_logging(get_settings().log_level)
    print(json.dumps(run(), ensure_ascii=False, indent=2))
