from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from timeclock.audit import audit_request
from timeclock.db import get_db
from timeclock.errors import ApiError
from timeclock.models import AuditActorType, JobStatus, Profile
from timeclock.schemas import (
    CheckInRequest,
    CheckInResponse,
    MyJobItem,
    ProfileRead,
    ProfileUpdateRequest,
    TimeLogRead,
)
from timeclock.security import require_user
from timeclock.services.checkin import attempt_check_in, attempt_check_out
from timeclock.services.jobs import list_worker_jobs
from timeclock.services.workers import to_profile_read, update_own_profile

router = APIRouter(tags=["me"])


def _audit_gate_failure(
    db: Session,
    request: Request,
    *,
    action: str,
    profile: Profile,
    payload: CheckInRequest,
    exc: ApiError,
) -> None:
    audit_request(
        db,
        request,
        actor_type=AuditActorType.WORKER,
        actor_id=str(profile.id),
        action=action,
        entity_type="job",
        entity_id=str(payload.job_id),
        success=False,
        details={"code": exc.code, **(exc.details or {})},
    )


@router.get("/api/me/profile", response_model=ProfileRead)
def my_profile(profile: Profile = Depends(require_user)) -> ProfileRead:
    return to_profile_read(profile)


@router.patch("/api/me/profile", response_model=ProfileRead)
def update_my_profile(
    payload: ProfileUpdateRequest,
    request: Request,
    profile: Profile = Depends(require_user),
    db: Session = Depends(get_db),
) -> ProfileRead:
    previous_email = profile.email
    profile = update_own_profile(db, profile, full_name=payload.full_name, email=payload.email)
    audit_request(
        db,
        request,
        actor_type=AuditActorType.WORKER,
        actor_id=str(profile.id),
        action="PROFILE_UPDATED",
        entity_type="profile",
        entity_id=str(profile.id),
        details={"email_changed": profile.email != previous_email},
    )
    return to_profile_read(profile)


@router.get("/api/me/jobs", response_model=list[MyJobItem])
def my_jobs(
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    profile: Profile = Depends(require_user),
    db: Session = Depends(get_db),
) -> list[MyJobItem]:
    items = list_worker_jobs(db, worker_id=profile.id, date_from=date_from, date_to=date_to)
    return [MyJobItem(**item) for item in items]


@router.post("/api/me/jobs/start", response_model=CheckInResponse)
def start_job(
    payload: CheckInRequest,
    request: Request,
    profile: Profile = Depends(require_user),
    db: Session = Depends(get_db),
) -> CheckInResponse:
    request.state.job_id = payload.job_id
    request.state.worker_id = profile.id
    try:
        time_log = attempt_check_in(
            db,
            job_id=payload.job_id,
            worker_id=profile.id,
            lat=payload.lat,
            lng=payload.lng,
            accuracy_m=payload.accuracy_m,
        )
    except ApiError as exc:
        _audit_gate_failure(db, request, action="CHECKIN_REJECTED", profile=profile, payload=payload, exc=exc)
        raise

    audit_request(
        db,
        request,
        actor_type=AuditActorType.WORKER,
        actor_id=str(profile.id),
        action="CHECKIN",
        entity_type="job",
        entity_id=str(payload.job_id),
        details={"time_log_id": time_log.id, "accuracy_m": payload.accuracy_m},
    )
    return CheckInResponse(
        job_id=payload.job_id,
        status=JobStatus.IN_PROGRESS,
        time_log=TimeLogRead.model_validate(time_log),
    )


@router.post("/api/me/jobs/stop", response_model=CheckInResponse)
def stop_job(
    payload: CheckInRequest,
    request: Request,
    profile: Profile = Depends(require_user),
    db: Session = Depends(get_db),
) -> CheckInResponse:
    request.state.job_id = payload.job_id
    request.state.worker_id = profile.id
    try:
        time_log = attempt_check_out(
            db,
            job_id=payload.job_id,
            worker_id=profile.id,
            lat=payload.lat,
            lng=payload.lng,
            accuracy_m=payload.accuracy_m,
        )
    except ApiError as exc:
        _audit_gate_failure(db, request, action="CHECKOUT_REJECTED", profile=profile, payload=payload, exc=exc)
        raise

    audit_request(
        db,
        request,
        actor_type=AuditActorType.WORKER,
        actor_id=str(profile.id),
        action="CHECKOUT",
        entity_type="job",
        entity_id=str(payload.job_id),
        details={"time_log_id": time_log.id, "accuracy_m": payload.accuracy_m},
    )
    return CheckInResponse(
        job_id=payload.job_id,
        status=JobStatus.DONE,
        time_log=TimeLogRead.model_validate(time_log),
    )
