from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from timeclock.audit import audit_request
from timeclock.db import get_db
from timeclock.models import AuditActorType, Job, JobStatus, Profile, ProfileRole
from timeclock.schemas import (
    GeocodeRequest,
    GeocodeResponse,
    JobCreate,
    JobRead,
    JobSetActualRequest,
    JobUpdate,
    OkResponse,
    ProfileRead,
    ReportResponse,
    ScheduleItem,
    SiteArchiveRequest,
    SiteCreate,
    SiteRead,
    SiteUpdate,
    TimeLogRead,
    WorkerActiveUpdateRequest,
    WorkerCreate,
    WorkerRoleUpdateRequest,
)
from timeclock.security import require_admin
from timeclock.services.exports import XLSX_MEDIA_TYPE, build_report_xlsx_bytes
from timeclock.services.geocode import geocode_address
from timeclock.services.jobs import (
    cancel_job,
    create_jobs,
    format_hhmm,
    get_job_or_404,
    list_jobs,
    list_schedule,
    parse_duration_minutes,
    set_actual_minutes,
    update_job,
    worker_display_name,
)
from timeclock.services.reports import build_report, parse_report_range
from timeclock.services.sites import (
    create_site,
    delete_site,
    get_site_or_404,
    list_sites,
    set_site_archived,
    update_site,
)
from timeclock.services.workers import (
    create_profile,
    delete_profile,
    list_profiles,
    set_profile_active,
    set_profile_role,
    to_profile_read,
)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])


def _audit(
    db: Session,
    request: Request,
    *,
    action: str,
    entity_type: str,
    entity_id: Any,
    details: dict[str, Any] | None = None,
) -> None:
    audit_request(
        db,
        request,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(getattr(request.state, "actor_id", "admin")),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details=details,
    )


def _to_job_read(job: Job) -> JobRead:
    return JobRead(
        id=job.id,
        site_id=job.site_id,
        site_name=job.site.name if job.site is not None else None,
        worker_id=job.worker_id,
        worker_name=worker_display_name(job.worker),
        job_date=job.job_date,
        scheduled_time=format_hhmm(job.scheduled_time) or "",
        scheduled_end_time=format_hhmm(job.scheduled_end_time),
        planned_minutes=job.planned_minutes,
        status=JobStatus(job.status),
        created_at=job.created_at,
    )


@router.get("/api/admin/sites", response_model=list[SiteRead])
def admin_list_sites(
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[SiteRead]:
    return list_sites(db, include_archived=include_archived)


@router.post("/api/admin/sites", response_model=SiteRead, status_code=status.HTTP_201_CREATED)
def admin_create_site(
    payload: SiteCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> SiteRead:
    site = create_site(
        db,
        name=payload.name,
        lat=payload.lat,
        lng=payload.lng,
        radius_m=payload.radius_m,
        address=payload.address,
        notes=payload.notes,
        category=payload.category,
    )
    _audit(
        db,
        request,
        action="SITE_CREATED",
        entity_type="site",
        entity_id=site.id,
        details={"name": site.name, "radius_m": site.radius_m},
    )
    return site


@router.get("/api/admin/sites/{site_id}", response_model=SiteRead)
def admin_get_site(site_id: int, db: Session = Depends(get_db)) -> SiteRead:
    return get_site_or_404(db, site_id)


@router.patch("/api/admin/sites/{site_id}", response_model=SiteRead)
def admin_update_site(
    site_id: int,
    payload: SiteUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> SiteRead:
    site = get_site_or_404(db, site_id)
    changes = payload.model_dump(exclude_unset=True)
    site = update_site(db, site, changes)
    _audit(
        db,
        request,
        action="SITE_UPDATED",
        entity_type="site",
        entity_id=site.id,
        details={"fields": sorted(changes)},
    )
    return site


@router.post("/api/admin/sites/{site_id}/archive", response_model=SiteRead)
def admin_archive_site(
    site_id: int,
    request: Request,
    payload: SiteArchiveRequest | None = None,
    db: Session = Depends(get_db),
) -> SiteRead:
    archived = payload.archived if payload is not None else True
    site = set_site_archived(db, get_site_or_404(db, site_id), archived=archived)
    _audit(
        db,
        request,
        action="SITE_ARCHIVED" if archived else "SITE_UNARCHIVED",
        entity_type="site",
        entity_id=site.id,
    )
    return site


@router.delete("/api/admin/sites/{site_id}", response_model=OkResponse)
def admin_delete_site(
    site_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> OkResponse:
    delete_site(db, site_id)
    _audit(db, request, action="SITE_DELETED", entity_type="site", entity_id=site_id)
    return OkResponse()


@router.get("/api/admin/workers", response_model=list[ProfileRead])
def admin_list_workers(
    role: ProfileRole | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[ProfileRead]:
    return [to_profile_read(profile) for profile in list_profiles(db, role=role)]


@router.post("/api/admin/workers", response_model=ProfileRead, status_code=status.HTTP_201_CREATED)
def admin_create_worker(
    payload: WorkerCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = create_profile(
        db,
        email=payload.email,
        password=payload.password,
        full_name=payload.full_name,
        phone=payload.phone,
        role=payload.role,
    )
    _audit(
        db,
        request,
        action="WORKER_CREATED",
        entity_type="profile",
        entity_id=profile.id,
        details={"email": profile.email, "role": ProfileRole(profile.role).value},
    )
    return to_profile_read(profile)


@router.patch("/api/admin/workers/{profile_id}/active", response_model=ProfileRead)
def admin_set_worker_active(
    profile_id: int,
    payload: WorkerActiveUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = set_profile_active(db, profile_id, active=payload.is_active)
    _audit(
        db,
        request,
        action="WORKER_REACTIVATED" if payload.is_active else "WORKER_DEACTIVATED",
        entity_type="profile",
        entity_id=profile.id,
        details={"is_active": payload.is_active},
    )
    return to_profile_read(profile)


@router.patch("/api/admin/workers/{profile_id}/role", response_model=ProfileRead)
def admin_set_worker_role(
    profile_id: int,
    payload: WorkerRoleUpdateRequest,
    request: Request,
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = set_profile_role(db, profile_id, role=payload.role, actor_profile_id=admin.id)
    _audit(
        db,
        request,
        action="WORKER_ROLE_CHANGED",
        entity_type="profile",
        entity_id=profile.id,
        details={"role": payload.role.value},
    )
    return to_profile_read(profile)


@router.delete("/api/admin/workers/{profile_id}", response_model=OkResponse)
def admin_delete_worker(
    profile_id: int,
    request: Request,
    admin: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OkResponse:
    delete_profile(db, profile_id, actor_profile_id=admin.id)
    _audit(db, request, action="WORKER_DELETED", entity_type="profile", entity_id=profile_id)
    return OkResponse()


@router.get("/api/admin/jobs", response_model=list[JobRead])
def admin_list_jobs(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
) -> list[JobRead]:
    return [_to_job_read(job) for job in list_jobs(db, status=status_filter)]


@router.post("/api/admin/jobs", response_model=list[JobRead], status_code=status.HTTP_201_CREATED)
def admin_create_jobs(
    payload: JobCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> list[JobRead]:
    jobs = create_jobs(
        db,
        site_id=payload.site_id,
        worker_ids=payload.worker_ids,
        job_date=payload.job_date,
        scheduled_time=payload.scheduled_time,
        scheduled_end_time=payload.scheduled_end_time,
        planned_minutes=payload.planned_minutes,
    )
    _audit(
        db,
        request,
        action="JOBS_CREATED",
        entity_type="site",
        entity_id=payload.site_id,
        details={"job_ids": [job.id for job in jobs], "job_date": payload.job_date.isoformat()},
    )
    return [_to_job_read(job) for job in jobs]


@router.patch("/api/admin/jobs/{job_id}", response_model=JobRead)
def admin_update_job(
    job_id: int,
    payload: JobUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> JobRead:
    job = get_job_or_404(db, job_id)
    changes = payload.model_dump(exclude_unset=True)
    job = update_job(db, job, changes)
    _audit(
        db,
        request,
        action="JOB_UPDATED",
        entity_type="job",
        entity_id=job.id,
        details={"fields": sorted(changes), "status": JobStatus(job.status).value},
    )
    return _to_job_read(job)


@router.post("/api/admin/jobs/{job_id}/cancel", response_model=OkResponse)
def admin_cancel_job(
    job_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> OkResponse:
    cancel_job(db, job_id)
    _audit(db, request, action="JOB_CANCELLED", entity_type="job", entity_id=job_id)
    return OkResponse()


@router.post("/api/admin/jobs/{job_id}/set-actual", response_model=TimeLogRead)
def admin_set_job_actual(
    job_id: int,
    payload: JobSetActualRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> TimeLogRead:
    minutes = parse_duration_minutes(minutes=payload.minutes, hm=payload.hm)
    time_log = set_actual_minutes(db, job_id, minutes)
    _audit(
        db,
        request,
        action="JOB_ACTUAL_SET",
        entity_type="job",
        entity_id=job_id,
        details={"minutes": minutes, "time_log_id": time_log.id},
    )
    return TimeLogRead.model_validate(time_log)


@router.get("/api/admin/schedule", response_model=list[ScheduleItem])
def admin_schedule(
    date_from: date = Query(...),
    date_to: date = Query(...),
    site_id: int | None = Query(default=None, ge=1),
    worker_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[ScheduleItem]:
    items = list_schedule(db, date_from=date_from, date_to=date_to, site_id=site_id, worker_id=worker_id)
    return [ScheduleItem(**item) for item in items]


@router.get("/api/admin/reports", response_model=ReportResponse, response_model_by_alias=True)
def admin_report(
    from_raw: str | None = Query(default=None, alias="from"),
    to_raw: str | None = Query(default=None, alias="to"),
    worker_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> ReportResponse:
    from_date, to_date = parse_report_range(from_raw, to_raw)
    report = build_report(db, from_date=from_date, to_date=to_date, worker_id=worker_id)
    return ReportResponse.model_validate(report)


@router.get("/api/admin/reports/export")
def admin_report_export(
    from_raw: str | None = Query(default=None, alias="from"),
    to_raw: str | None = Query(default=None, alias="to"),
    worker_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> Response:
    from_date, to_date = parse_report_range(from_raw, to_raw)
    report = build_report(db, from_date=from_date, to_date=to_date, worker_id=worker_id)
    payload = build_report_xlsx_bytes(report)
    filename = f"timeclock-{from_date.isoformat()}_{to_date.isoformat()}.xlsx"
    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/api/admin/geocode", response_model=GeocodeResponse)
def admin_geocode(payload: GeocodeRequest) -> GeocodeResponse:
    result = geocode_address(payload.address)
    return GeocodeResponse(lat=result.lat, lng=result.lng, display_name=result.display_name)
