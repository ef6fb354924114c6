#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from timeclock.services.schema_guard import ALEMBIC_HEAD
from timeclock.settings import get_settings


# name -> (query returning offending ids, status when rows come back)
INTEGRITY_QUERIES: dict[str, tuple[str, str]] = {
    "started_jobs_without_time_logs": (
        """
        select j.id
        from jobs j
        left join time_logs t on t.job_id = j.id
        where j.status in ('in_progress', 'done') and t.id is null
        limit 20
        """,
        "fail",
    ),
    "time_logs_ending_before_start": (
        """
        select id
        from time_logs
        where ended_at is not null and ended_at < started_at
        limit 20
        """,
        "warn",
    ),
    "open_time_logs_on_done_jobs": (
        """
        select t.id
        from time_logs t
        join jobs j on j.id = t.job_id
        where j.status = 'done' and t.ended_at is null
        limit 20
        """,
        "warn",
    ),
    "time_log_worker_mismatch": (
        """
        select t.id
        from time_logs t
        join jobs j on j.id = t.job_id
        where t.worker_id <> j.worker_id
        limit 20
        """,
        "warn",
    ),
    "active_sites_without_geofence": (
        """
        select id
        from sites
        where archived_at is null and (lat is null or lng is null or radius_m is null)
        limit 20
        """,
        "warn",
    ),
}


def _sample_ids(conn: Connection, query: str) -> list[Any]:
    return [row[0] for row in conn.execute(text(query)).fetchall()]


def run() -> dict[str, Any]:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append({"name": name, "status": status, "details": details})

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if ALEMBIC_HEAD in current_versions else "warn",
            {"expected_head": ALEMBIC_HEAD, "current": current_versions},
        )

        required_tables = ["profiles", "sites", "jobs", "time_logs", "audit_logs"]
        missing_tables = [table for table in required_tables if table not in tables]
        add("missing_tables", "fail" if missing_tables else "ok", {"missing": missing_tables})
        if missing_tables:
            return report

        for name, (query, failing_status) in INTEGRITY_QUERIES.items():
            sample_ids = _sample_ids(conn, query)
            add(name, failing_status if sample_ids else "ok", {"sample_ids": sample_ids})

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
