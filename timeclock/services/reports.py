from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from math import floor
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from timeclock.errors import ApiError
from timeclock.models import Job, Profile, Site, TimeLog
from timeclock.settings import get_settings, resolve_media_url

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True, slots=True)
class ReportLogRow:
    job_id: int
    worker_id: int
    started_at: datetime | None
    ended_at: datetime | None
    job_date: date | None = None
    worker_name: str | None = None
    worker_avatar: str | None = None
    site_id: int | None = None
    site_name: str | None = None


@dataclass(slots=True)
class _Bucket:
    key: int | None
    name: str | None
    avatar_url: str | None = None
    minutes: int = 0
    sessions: int = 0
    job_ids: set[int] = field(default_factory=set)

    def add(self, *, job_id: int, minutes: int) -> None:
        self.minutes += minutes
        self.sessions += 1
        self.job_ids.add(job_id)


@dataclass(frozen=True, slots=True)
class ReportComputation:
    total_minutes: int
    total_hours: float
    by_worker: list[dict[str, Any]]
    by_site: list[dict[str, Any]]
    entries: list[dict[str, Any]]
    incomplete: list[dict[str, Any]]


def round_half_up(value: float) -> int:
    return int(floor(value + 0.5))


def minutes_to_hours(minutes: int) -> float:
    return round_half_up(minutes / 60 * 100) / 100


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes_between(started_at: datetime, ended_at: datetime) -> int:
    seconds = (_as_utc(ended_at) - _as_utc(started_at)).total_seconds()
    return round_half_up(seconds / 60)


@lru_cache
def _report_timezone() -> ZoneInfo:
    raw_name = (get_settings().report_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def parse_report_date(raw: str | None, *, field_name: str) -> date:
    value = (raw or "").strip()
    if not _ISO_DATE_RE.match(value):
        raise ApiError(
            status_code=422,
            code="INVALID_DATE_RANGE",
            message=f"{field_name} must be YYYY-MM-DD.",
        )
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ApiError(
            status_code=422,
            code="INVALID_DATE_RANGE",
            message=f"{field_name} is not a valid date.",
        ) from exc


def parse_report_range(from_raw: str | None, to_raw: str | None) -> tuple[date, date]:
    from_date = parse_report_date(from_raw, field_name="from")
    to_date = parse_report_date(to_raw, field_name="to")
    if to_date < from_date:
        raise ApiError(
            status_code=422,
            code="INVALID_DATE_RANGE",
            message="Invalid period: to is before from.",
        )
    return from_date, to_date


def report_bounds_utc(
    from_date: date,
    to_date: date,
    tz: ZoneInfo | None = None,
) -> tuple[datetime, datetime]:
    """Half-open ``[from 00:00, (to + 1 day) 00:00)`` in the reporting zone, as UTC."""
    zone = tz or _report_timezone()
    local_start = datetime.combine(from_date, time.min, tzinfo=zone)
    local_end = datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=zone)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def _bucket_payload(bucket: _Bucket, *, id_field: str, name_field: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        id_field: bucket.key,
        name_field: bucket.name,
        "minutes": bucket.minutes,
        "hours": minutes_to_hours(bucket.minutes),
        "jobs_count": len(bucket.job_ids),
        "sessions": bucket.sessions,
    }
    if id_field == "worker_id":
        payload["avatar_url"] = bucket.avatar_url
    return payload


def aggregate_time_logs(rows: Iterable[ReportLogRow]) -> ReportComputation:
    total_minutes = 0
    worker_buckets: dict[int, _Bucket] = {}
    site_buckets: dict[int | None, _Bucket] = {}
    entries: list[dict[str, Any]] = []
    incomplete: list[dict[str, Any]] = []

    for row in rows:
        if row.started_at is not None and row.ended_at is None:
            incomplete.append(
                {
                    "job_id": row.job_id,
                    "worker_id": row.worker_id,
                    "worker_name": row.worker_name,
                    "site_id": row.site_id,
                    "site_name": row.site_name,
                    "started_at": _as_utc(row.started_at),
                }
            )
            continue
        if row.started_at is None or row.ended_at is None:
            continue

        minutes = minutes_between(row.started_at, row.ended_at)
        if minutes <= 0:
            continue

        total_minutes += minutes

        worker_bucket = worker_buckets.get(row.worker_id)
        if worker_bucket is None:
            worker_bucket = _Bucket(
                key=row.worker_id,
                name=row.worker_name,
                avatar_url=resolve_media_url(row.worker_avatar),
            )
            worker_buckets[row.worker_id] = worker_bucket
        worker_bucket.add(job_id=row.job_id, minutes=minutes)

        site_bucket = site_buckets.get(row.site_id)
        if site_bucket is None:
            site_bucket = _Bucket(key=row.site_id, name=row.site_name)
            site_buckets[row.site_id] = site_bucket
        site_bucket.add(job_id=row.job_id, minutes=minutes)

        entries.append(
            {
                "job_id": row.job_id,
                "job_date": row.job_date,
                "worker_id": row.worker_id,
                "worker_name": row.worker_name,
                "site_id": row.site_id,
                "site_name": row.site_name,
                "started_at": _as_utc(row.started_at),
                "ended_at": _as_utc(row.ended_at),
                "minutes": minutes,
            }
        )

    # sorted() is stable: equal totals keep first-seen order.
    by_worker = [
        _bucket_payload(bucket, id_field="worker_id", name_field="worker_name")
        for bucket in sorted(worker_buckets.values(), key=lambda item: -item.minutes)
    ]
    by_site = [
        _bucket_payload(bucket, id_field="site_id", name_field="site_name")
        for bucket in sorted(site_buckets.values(), key=lambda item: -item.minutes)
    ]

    return ReportComputation(
        total_minutes=total_minutes,
        total_hours=minutes_to_hours(total_minutes),
        by_worker=by_worker,
        by_site=by_site,
        entries=entries,
        incomplete=incomplete,
    )


def _load_report_rows(
    db: Session,
    *,
    from_ts: datetime,
    to_ts: datetime,
    worker_id: int | None,
) -> list[ReportLogRow]:
    statement = (
        select(TimeLog, Job, Site, Profile)
        .join(Job, TimeLog.job_id == Job.id)
        .outerjoin(Site, Job.site_id == Site.id)
        .outerjoin(Profile, TimeLog.worker_id == Profile.id)
        .where(TimeLog.started_at >= from_ts, TimeLog.started_at < to_ts)
        .order_by(TimeLog.started_at.asc(), TimeLog.id.asc())
    )
    if worker_id is not None:
        statement = statement.where(Job.worker_id == worker_id)

    rows: list[ReportLogRow] = []
    for time_log, job, site, profile in db.execute(statement).all():
        rows.append(
            ReportLogRow(
                job_id=job.id,
                job_date=job.job_date,
                worker_id=time_log.worker_id,
                worker_name=(profile.full_name or profile.email) if profile is not None else None,
                worker_avatar=profile.avatar_path if profile is not None else None,
                site_id=site.id if site is not None else None,
                site_name=site.name if site is not None else None,
                started_at=time_log.started_at,
                ended_at=time_log.ended_at,
            )
        )
    return rows


def build_report(
    db: Session,
    *,
    from_date: date,
    to_date: date,
    worker_id: int | None = None,
) -> dict[str, Any]:
    from_ts, to_ts = report_bounds_utc(from_date, to_date)
    rows = _load_report_rows(db, from_ts=from_ts, to_ts=to_ts, worker_id=worker_id)
    computation = aggregate_time_logs(rows)
    return {
        "from": from_date,
        "to": to_date,
        "worker_id": worker_id,
        "total_minutes": computation.total_minutes,
        "total_hours": computation.total_hours,
        "by_worker": computation.by_worker,
        "by_site": computation.by_site,
        "entries": computation.entries,
        "incomplete": computation.incomplete,
    }
