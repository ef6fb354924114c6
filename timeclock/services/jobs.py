from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from timeclock.errors import ApiError
from timeclock.models import Job, JobStatus, Profile, Site, TimeLog

logger = logging.getLogger("timeclock.jobs")

JOB_STATUS_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PLANNED: frozenset({JobStatus.IN_PROGRESS}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.DONE}),
    JobStatus.DONE: frozenset(),
}

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_STATUS_TRANSITIONS.get(current, frozenset())


def advance_job_status(job: Job, target: JobStatus) -> bool:
    """Move ``job`` to ``target``; returns False when it is already there."""
    current = JobStatus(job.status)
    if current == target:
        return False
    if not can_transition(current, target):
        raise _transition_error(current, target)
    job.status = target
    return True


def _transition_error(current: JobStatus, target: JobStatus) -> ApiError:
    return ApiError(
        status_code=409,
        code="INVALID_STATUS_TRANSITION",
        message=f"Shift status cannot change from {current.value} to {target.value}.",
        details={"from": current.value, "to": target.value},
    )


def parse_clock_time(raw: str, *, field: str = "scheduled_time") -> time:
    match = _HHMM_RE.match((raw or "").strip())
    if match is None:
        raise ApiError(status_code=422, code="INVALID_TIME", message=f"{field} must be HH:MM.")
    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3) or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        raise ApiError(status_code=422, code="INVALID_TIME", message=f"{field} must be HH:MM.")
    return time(hours, minutes, seconds)


def parse_duration_minutes(*, minutes: int | None, hm: str | None) -> int:
    """Actual duration from either a minute count or an ``H:MM`` string."""
    if minutes is not None:
        return max(0, int(minutes))
    if hm is not None:
        match = re.match(r"^(\d{1,2}):(\d{2})$", hm.strip())
        if match is not None:
            hours = int(match.group(1))
            mins = int(match.group(2))
            if hours <= 23 and mins <= 59:
                return hours * 60 + mins
    raise ApiError(
        status_code=422,
        code="INVALID_DURATION",
        message='Provide minutes (number) or hm (for example "3:30").',
    )


def format_hhmm(value: time | None) -> str | None:
    if value is None:
        return None
    return f"{value.hour:02d}:{value.minute:02d}"


def planned_end_time(start: time | None, planned_minutes: int | None) -> str | None:
    if start is None or planned_minutes is None:
        return None
    total = start.hour * 60 + start.minute + max(0, int(planned_minutes))
    return f"{(total % 1440) // 60:02d}:{total % 60:02d}"


def worker_display_name(worker: Profile | None) -> str | None:
    if worker is None:
        return None
    return worker.full_name or worker.email


def get_job_or_404(db: Session, job_id: int) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise ApiError(status_code=404, code="JOB_NOT_FOUND", message="Shift not found.")
    return job


def _ensure_site_exists(db: Session, site_id: int) -> Site:
    site = db.get(Site, site_id)
    if site is None:
        raise ApiError(status_code=404, code="SITE_NOT_FOUND", message="Site not found.")
    return site


def _ensure_worker_exists(db: Session, worker_id: int) -> Profile:
    worker = db.get(Profile, worker_id)
    if worker is None:
        raise ApiError(status_code=404, code="WORKER_NOT_FOUND", message="Worker not found.")
    return worker


def create_jobs(
    db: Session,
    *,
    site_id: int,
    worker_ids: list[int],
    job_date: date,
    scheduled_time: str,
    scheduled_end_time: str | None = None,
    planned_minutes: int | None = None,
) -> list[Job]:
    unique_worker_ids = list(dict.fromkeys(worker_ids))
    if not unique_worker_ids:
        raise ApiError(status_code=422, code="WORKERS_REQUIRED", message="Select at least one worker.")

    _ensure_site_exists(db, site_id)
    for worker_id in unique_worker_ids:
        _ensure_worker_exists(db, worker_id)

    start = parse_clock_time(scheduled_time)
    end = parse_clock_time(scheduled_end_time, field="scheduled_end_time") if scheduled_end_time else None

    jobs = [
        Job(
            site_id=site_id,
            worker_id=worker_id,
            job_date=job_date,
            scheduled_time=start,
            scheduled_end_time=end,
            planned_minutes=planned_minutes,
            status=JobStatus.PLANNED,
        )
        for worker_id in unique_worker_ids
    ]
    for job in jobs:
        db.add(job)
    db.commit()
    for job in jobs:
        db.refresh(job)
    return jobs


def update_job(db: Session, job: Job, changes: dict[str, Any]) -> Job:
    """Apply a partial admin update. ``changes`` only holds fields the client sent."""
    if not changes:
        raise ApiError(status_code=422, code="NOTHING_TO_UPDATE", message="Nothing to update.")
    if changes.get("status") == "cancelled":
        raise ApiError(
            status_code=422,
            code="USE_CANCEL_ENDPOINT",
            message="Cancelling a shift is done with the cancel action, not a status change.",
        )

    current_status = JobStatus(job.status)
    target_status = JobStatus(changes["status"]) if changes.get("status") is not None else None
    if target_status is not None and target_status != current_status:
        if not can_transition(current_status, target_status):
            raise _transition_error(current_status, target_status)
        # A started or finished shift always has recorded work behind it.
        has_logs = db.scalar(select(TimeLog.id).where(TimeLog.job_id == job.id).limit(1))
        if has_logs is None:
            raise ApiError(
                status_code=409,
                code="NO_TIME_LOGS",
                message="A shift without time logs can only be started by a check-in.",
                details={"from": current_status.value, "to": target_status.value},
            )

    reassigning = any(key in changes for key in ("site_id", "worker_id"))
    if reassigning and JobStatus(job.status) != JobStatus.PLANNED:
        raise ApiError(
            status_code=409,
            code="JOB_NOT_PLANNED",
            message="Site and worker can only be changed while the shift is planned.",
        )

    if "site_id" in changes:
        if changes["site_id"] is None:
            raise ApiError(status_code=422, code="SITE_REQUIRED", message="A shift needs a site.")
        _ensure_site_exists(db, changes["site_id"])
        job.site_id = changes["site_id"]
    if "worker_id" in changes:
        if changes["worker_id"] is None:
            raise ApiError(status_code=422, code="WORKER_REQUIRED", message="A shift needs a worker.")
        _ensure_worker_exists(db, changes["worker_id"])
        job.worker_id = changes["worker_id"]
    if changes.get("job_date") is not None:
        job.job_date = changes["job_date"]
    if "scheduled_time" in changes:
        if not changes["scheduled_time"]:
            raise ApiError(status_code=422, code="INVALID_TIME", message="scheduled_time must be HH:MM.")
        job.scheduled_time = parse_clock_time(changes["scheduled_time"])
    if "scheduled_end_time" in changes:
        raw_end = changes["scheduled_end_time"]
        job.scheduled_end_time = parse_clock_time(raw_end, field="scheduled_end_time") if raw_end else None
    if "planned_minutes" in changes:
        job.planned_minutes = changes["planned_minutes"]
    if target_status is not None:
        advance_job_status(job, target_status)

    db.commit()
    db.refresh(job)
    return job


def cancel_job(db: Session, job_id: int) -> None:
    # Cancellation is deletion; it is refused once any work was recorded.
    job = get_job_or_404(db, job_id)
    if JobStatus(job.status) != JobStatus.PLANNED:
        raise ApiError(
            status_code=409,
            code="JOB_NOT_CANCELLABLE",
            message="Cannot cancel a shift that is in progress or done.",
        )
    has_logs = db.scalar(select(TimeLog.id).where(TimeLog.job_id == job.id).limit(1))
    if has_logs is not None:
        raise ApiError(
            status_code=409,
            code="JOB_NOT_CANCELLABLE",
            message="Cannot cancel a shift that already has time logs.",
        )
    db.delete(job)
    db.commit()
    logger.info("job_cancelled", extra={"job_id": job_id})


def set_actual_minutes(db: Session, job_id: int, minutes: int) -> TimeLog:
    get_job_or_404(db, job_id)
    time_log = db.scalar(
        select(TimeLog)
        .where(TimeLog.job_id == job_id)
        .order_by(TimeLog.started_at.asc(), TimeLog.id.asc())
        .limit(1)
    )
    if time_log is None:
        raise ApiError(
            status_code=409,
            code="NO_TIME_LOGS",
            message="This shift has no time logs to correct.",
        )
    time_log.ended_at = time_log.started_at + timedelta(minutes=max(0, minutes))
    db.commit()
    db.refresh(time_log)
    return time_log


@dataclass(frozen=True, slots=True)
class JobActuals:
    started_at: datetime | None
    ended_at: datetime | None


def collect_actuals(time_logs: list[TimeLog]) -> JobActuals:
    """Earliest start and latest end over a shift's logs."""
    starts = [item.started_at for item in time_logs if item.started_at is not None]
    ends = [item.ended_at for item in time_logs if item.ended_at is not None]
    return JobActuals(
        started_at=min(starts) if starts else None,
        ended_at=max(ends) if ends else None,
    )


def list_jobs(db: Session, *, status: JobStatus | None = None) -> list[Job]:
    statement = (
        select(Job)
        .options(selectinload(Job.site), selectinload(Job.worker))
        .order_by(Job.job_date.asc(), Job.scheduled_time.asc(), Job.id.asc())
    )
    if status is not None:
        statement = statement.where(Job.status == status)
    return list(db.scalars(statement).all())


def list_schedule(
    db: Session,
    *,
    date_from: date,
    date_to: date,
    site_id: int | None = None,
    worker_id: int | None = None,
) -> list[dict[str, Any]]:
    if date_to < date_from:
        raise ApiError(status_code=422, code="INVALID_DATE_RANGE", message="date_to is before date_from.")

    statement = (
        select(Job)
        .options(
            selectinload(Job.site),
            selectinload(Job.worker),
            selectinload(Job.time_logs),
        )
        .where(Job.job_date >= date_from, Job.job_date <= date_to)
        .order_by(Job.job_date.asc(), Job.scheduled_time.asc(), Job.id.asc())
    )
    if site_id is not None:
        statement = statement.where(Job.site_id == site_id)
    if worker_id is not None:
        statement = statement.where(Job.worker_id == worker_id)

    items: list[dict[str, Any]] = []
    for job in db.scalars(statement).all():
        actuals = collect_actuals(list(job.time_logs or []))
        items.append(
            {
                "id": job.id,
                "status": JobStatus(job.status),
                "job_date": job.job_date,
                "scheduled_time": format_hhmm(job.scheduled_time),
                "scheduled_end_time": format_hhmm(job.scheduled_end_time),
                "planned_minutes": job.planned_minutes,
                "planned_end_time": planned_end_time(job.scheduled_time, job.planned_minutes),
                "site_id": job.site_id,
                "site_name": job.site.name if job.site is not None else None,
                "worker_id": job.worker_id,
                "worker_name": worker_display_name(job.worker),
                "worker_phone": job.worker.phone if job.worker is not None else None,
                "started_at": actuals.started_at,
                "ended_at": actuals.ended_at,
            }
        )
    return items


def list_worker_jobs(
    db: Session,
    *,
    worker_id: int,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[dict[str, Any]]:
    today = datetime.now(timezone.utc).date()
    effective_from = date_from or today - timedelta(days=30)
    effective_to = date_to or today + timedelta(days=30)

    statement = (
        select(Job)
        .options(selectinload(Job.site), selectinload(Job.time_logs))
        .where(
            Job.worker_id == worker_id,
            Job.job_date >= effective_from,
            Job.job_date <= effective_to,
        )
        .order_by(Job.job_date.asc(), Job.scheduled_time.asc(), Job.id.asc())
    )

    items: list[dict[str, Any]] = []
    for job in db.scalars(statement).all():
        actuals = collect_actuals(list(job.time_logs or []))
        site = job.site
        items.append(
            {
                "id": job.id,
                "status": JobStatus(job.status),
                "job_date": job.job_date,
                "scheduled_time": format_hhmm(job.scheduled_time),
                "scheduled_end_time": format_hhmm(job.scheduled_end_time),
                "site_id": job.site_id,
                "site_name": site.name if site is not None else None,
                "site_address": site.address if site is not None else None,
                "site_lat": site.lat if site is not None else None,
                "site_lng": site.lng if site is not None else None,
                "site_radius_m": site.radius_m if site is not None else None,
                "started_at": actuals.started_at,
                "ended_at": actuals.ended_at,
            }
        )
    return items
