#!/usr/bin/env python
from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.engine import Engine

from attendance_points.db import engine as default_engine
from attendance_points.settings import local_today


EXPECTED_HEAD = "0001_attendance_points"
REQUIRED_TABLES = ["employees", "attendance_violations", "attendance_points", "consistency_jobs", "audit_logs"]


def run(engine: Engine | None = None) -> dict:
    engine = engine or default_engine
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append({"name": name, "status": status, "details": details})

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema = current_schema()
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = list(conn.execute(text("select version_num from alembic_version")).scalars())
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing else "ok", {"tables": missing})
        if "attendance_points" not in tables:
            return report

        duplicate_slots = conn.execute(
            text(
                """
                select employee_id, shift_date, point_type, count(*)
                from attendance_points
                group by employee_id, shift_date, point_type
                having count(*) > 1
                limit 20
                """
            )
        ).fetchall()
        add(
            "duplicate_point_slots",
            "warn" if duplicate_slots else "ok",
            {"rows": [[row[0], row[1].isoformat(), str(row[2]), row[3]] for row in duplicate_slots]},
        )

        gbro_before_shift = conn.execute(
            text(
                """
                select id
                from attendance_points
                where gbro_expires_at is not null and gbro_expires_at < shift_date
                limit 20
                """
            )
        ).fetchall()
        add(
            "gbro_prediction_before_shift_date",
            "fail" if gbro_before_shift else "ok",
            {"sample_ids": [row[0] for row in gbro_before_shift]},
        )

        excused_and_expired = conn.execute(
            text(
                """
                select id
                from attendance_points
                where is_excused = true and is_expired = true
                limit 20
                """
            )
        ).fetchall()
        add(
            "excused_points_marked_expired",
            "fail" if excused_and_expired else "ok",
            {"sample_ids": [row[0] for row in excused_and_expired]},
        )

        overdue = conn.execute(
            text(
                """
                select
                    count(*) filter (where sro_expires_at <= :today),
                    count(*) filter (where gbro_expires_at <= :today)
                from attendance_points
                where is_expired = false and is_excused = false
                """
            ),
            {"today": local_today()},
        ).one()
        add(
            "expirations_overdue",
            "warn" if overdue[0] or overdue[1] else "ok",
            {"sro": overdue[0], "gbro": overdue[1]},
        )

        orphan_points = conn.execute(
            text(
                """
                select p.id
                from attendance_points p
                left join employees e on e.id = p.employee_id
                where e.id is null
                limit 20
                """
            )
        ).fetchall()
        add(
            "attendance_point_orphan_employee",
            "fail" if orphan_points else "ok",
            {"sample_ids": [row[0] for row in orphan_points]},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
