from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from timeclock.errors import ApiError
from timeclock.models import Job, JobStatus, Site, TimeLog
from timeclock.services.geo import distance_m
from timeclock.services.jobs import advance_job_status
from timeclock.settings import get_settings

logger = logging.getLogger("timeclock.checkin")


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)
    return ts_utc.astimezone(timezone.utc)


def _rejected(
    action: str,
    *,
    job_id: int,
    worker_id: int,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> ApiError:
    logger.info(
        f"{action}_rejected",
        extra={"job_id": job_id, "worker_id": worker_id, "code": code, "details": details},
    )
    return ApiError(status_code=status_code, code=code, message=message, details=details)


def _load_assigned_job(db: Session, *, action: str, job_id: int, worker_id: int) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise _rejected(
            action,
            job_id=job_id,
            worker_id=worker_id,
            status_code=404,
            code="JOB_NOT_FOUND",
            message="Shift not found.",
        )
    if job.worker_id != worker_id:
        raise _rejected(
            action,
            job_id=job_id,
            worker_id=worker_id,
            status_code=403,
            code="JOB_NOT_ASSIGNED",
            message="Shift is not assigned to this worker.",
        )
    return job


def _ensure_accuracy(action: str, *, job_id: int, worker_id: int, accuracy_m: float) -> None:
    max_accuracy_m = get_settings().checkin_max_accuracy_m
    if accuracy_m > max_accuracy_m:
        raise _rejected(
            action,
            job_id=job_id,
            worker_id=worker_id,
            status_code=422,
            code="GPS_ACCURACY_TOO_LOW",
            message=f"GPS accuracy is too low: {round(accuracy_m)} m (need <= {round(max_accuracy_m)} m).",
            details={"accuracy_m": accuracy_m, "max_accuracy_m": max_accuracy_m},
        )


def _ensure_within_radius(
    action: str,
    *,
    job_id: int,
    worker_id: int,
    site: Site,
    radius_m: float,
    lat: float,
    lng: float,
) -> float:
    distance_value = distance_m(lat, lng, site.lat, site.lng)  # type: ignore[arg-type]
    if distance_value > radius_m:
        raise _rejected(
            action,
            job_id=job_id,
            worker_id=worker_id,
            status_code=422,
            code="TOO_FAR_FROM_SITE",
            message=f"Too far from the site: {round(distance_value)} m (allowed <= {round(radius_m)} m).",
            details={"distance_m": round(distance_value, 2), "radius_m": radius_m},
        )
    return distance_value


def attempt_check_in(
    db: Session,
    *,
    job_id: int,
    worker_id: int,
    lat: float,
    lng: float,
    accuracy_m: float,
    now_utc: datetime | None = None,
) -> TimeLog:
    job = _load_assigned_job(db, action="checkin", job_id=job_id, worker_id=worker_id)
    if JobStatus(job.status) == JobStatus.DONE:
        raise _rejected(
            "checkin",
            job_id=job_id,
            worker_id=worker_id,
            status_code=409,
            code="JOB_ALREADY_DONE",
            message="Shift is already finished.",
        )

    _ensure_accuracy("checkin", job_id=job_id, worker_id=worker_id, accuracy_m=accuracy_m)

    site = job.site
    if site is None or not site.is_geofence_configured:
        raise _rejected(
            "checkin",
            job_id=job_id,
            worker_id=worker_id,
            status_code=409,
            code="SITE_NOT_CONFIGURED",
            message="The site has no coordinates or radius.",
        )

    distance_value = _ensure_within_radius(
        "checkin",
        job_id=job_id,
        worker_id=worker_id,
        site=site,
        radius_m=float(site.radius_m),  # type: ignore[arg-type]
        lat=lat,
        lng=lng,
    )

    # Status change and log insert commit together.
    advance_job_status(job, JobStatus.IN_PROGRESS)
    time_log = TimeLog(
        job_id=job.id,
        worker_id=worker_id,
        started_at=_normalize_ts(now_utc),
        start_lat=lat,
        start_lng=lng,
        start_accuracy_m=accuracy_m,
    )
    db.add(time_log)
    db.commit()
    db.refresh(time_log)

    logger.info(
        "checkin_admitted",
        extra={
            "job_id": job.id,
            "worker_id": worker_id,
            "time_log_id": time_log.id,
            "distance_m": round(distance_value, 2),
        },
    )
    return time_log


def _resolve_open_time_log(db: Session, *, job_id: int, worker_id: int) -> TimeLog | None:
    return db.scalar(
        select(TimeLog)
        .where(
            TimeLog.job_id == job_id,
            TimeLog.worker_id == worker_id,
            TimeLog.ended_at.is_(None),
        )
        .order_by(TimeLog.started_at.desc(), TimeLog.id.desc())
        .limit(1)
    )


def attempt_check_out(
    db: Session,
    *,
    job_id: int,
    worker_id: int,
    lat: float,
    lng: float,
    accuracy_m: float,
    now_utc: datetime | None = None,
) -> TimeLog:
    job = _load_assigned_job(db, action="checkout", job_id=job_id, worker_id=worker_id)
    _ensure_accuracy("checkout", job_id=job_id, worker_id=worker_id, accuracy_m=accuracy_m)

    site = job.site
    if site is None or site.lat is None or site.lng is None:
        raise _rejected(
            "checkout",
            job_id=job_id,
            worker_id=worker_id,
            status_code=409,
            code="SITE_NOT_CONFIGURED",
            message="The site has no coordinates.",
        )
    radius_m = site.radius_m if site.radius_m is not None else get_settings().checkout_fallback_radius_m
    _ensure_within_radius(
        "checkout",
        job_id=job_id,
        worker_id=worker_id,
        site=site,
        radius_m=float(radius_m),
        lat=lat,
        lng=lng,
    )

    time_log = _resolve_open_time_log(db, job_id=job.id, worker_id=worker_id)
    if time_log is None:
        raise _rejected(
            "checkout",
            job_id=job_id,
            worker_id=worker_id,
            status_code=409,
            code="NO_ACTIVE_SESSION",
            message="No open check-in for this shift.",
        )

    advance_job_status(job, JobStatus.DONE)
    time_log.ended_at = _normalize_ts(now_utc)
    time_log.end_lat = lat
    time_log.end_lng = lng
    time_log.end_accuracy_m = accuracy_m
    db.commit()
    db.refresh(time_log)

    logger.info(
        "checkout_completed",
        extra={"job_id": job.id, "worker_id": worker_id, "time_log_id": time_log.id},
    )
    return time_log
