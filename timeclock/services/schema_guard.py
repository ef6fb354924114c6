from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine, Inspector
from sqlalchemy.exc import SQLAlchemyError

from timeclock.models import JobStatus, ProfileRole

ALEMBIC_HEAD = "0001_initial"

# Checked once at startup so request handlers can rely on a fixed schema.
REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "profiles": {"id", "email", "role", "is_active", "password_hash"},
    "sites": {"id", "name", "lat", "lng", "radius_m", "archived_at"},
    "jobs": {"id", "site_id", "worker_id", "job_date", "scheduled_time", "scheduled_end_time", "status"},
    "time_logs": {"id", "job_id", "worker_id", "started_at", "ended_at", "start_accuracy_m"},
    "audit_logs": {"id", "ts_utc", "action", "details"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "job_status": {item.value for item in JobStatus},
    "profile_role": {item.value for item in ProfileRole},
}


@dataclass(slots=True)
class SchemaGuardResult:
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "issues": list(self.issues), "warnings": list(self.warnings)}


def _check_columns(inspector: Inspector, result: SchemaGuardResult) -> None:
    for table_name, required in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(column.get("name")) for column in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            result.issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required - present)
        if missing:
            result.issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")


def _check_enums(inspector: Inspector, result: SchemaGuardResult) -> None:
    try:
        enums = inspector.get_enums() or []
    except (SQLAlchemyError, NotImplementedError) as exc:
        result.warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    for enum_name, required in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            result.warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required - labels_by_name[enum_name])
        if missing:
            result.issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")


def _check_alembic_head(engine: Engine, result: SchemaGuardResult) -> None:
    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        result.issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return

    version = str(version or "").strip()
    if not version:
        result.issues.append("ALEMBIC_VERSION_EMPTY")
    elif version != ALEMBIC_HEAD:
        result.warnings.append(f"ALEMBIC_VERSION_MISMATCH:{version}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    result = SchemaGuardResult()
    inspector = inspect(engine)
    _check_columns(inspector, result)
    _check_enums(inspector, result)
    _check_alembic_head(engine, result)
    return result
