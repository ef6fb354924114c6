from datetime import date, datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from timeclock.models import JobStatus, ProfileRole


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str | None = None


class ProfileRead(BaseModel):
    id: int
    email: str
    full_name: str | None = None
    phone: str | None = None
    role: ProfileRole
    is_active: bool
    avatar_url: str | None = None
    created_at: datetime | None = None


class WorkerCreate(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=128)
    full_name: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=64)
    role: ProfileRole = ProfileRole.WORKER


class WorkerActiveUpdateRequest(BaseModel):
    is_active: bool


class WorkerRoleUpdateRequest(BaseModel):
    role: ProfileRole


class ProfileUpdateRequest(BaseModel):
    full_name: str = Field(max_length=255)
    email: str | None = Field(default=None, max_length=320)


class SiteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    address: str | None = None
    notes: str | None = None
    category: int | None = Field(default=None, ge=1, le=15)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    radius_m: float | None = Field(default=None, gt=0)


class SiteUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    address: str | None = None
    notes: str | None = None
    category: int | None = Field(default=None, ge=1, le=15)
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    radius_m: float | None = Field(default=None, gt=0)


class SiteArchiveRequest(BaseModel):
    archived: bool = True


class SiteRead(BaseModel):
    id: int
    name: str
    address: str | None = None
    notes: str | None = None
    category: int | None = None
    lat: float | None = None
    lng: float | None = None
    radius_m: int | None = None
    archived_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class JobCreate(BaseModel):
    site_id: int = Field(ge=1)
    worker_id: int | None = Field(default=None, ge=1)
    worker_ids: list[int] = Field(default_factory=list)
    job_date: date
    scheduled_time: str
    scheduled_end_time: str | None = None
    planned_minutes: int | None = Field(default=None, ge=1, le=1440)

    @model_validator(mode="after")
    def _collect_workers(self) -> "JobCreate":
        if self.worker_id is not None and self.worker_id not in self.worker_ids:
            self.worker_ids = [self.worker_id, *self.worker_ids]
        if not self.worker_ids:
            raise ValueError("worker_id or worker_ids is required.")
        return self


class JobUpdate(BaseModel):
    site_id: int | None = Field(default=None, ge=1)
    worker_id: int | None = Field(default=None, ge=1)
    job_date: date | None = None
    scheduled_time: str | None = None
    scheduled_end_time: str | None = None
    planned_minutes: int | None = Field(default=None, ge=1, le=1440)
    status: Literal["planned", "in_progress", "done", "cancelled"] | None = None


class JobSetActualRequest(BaseModel):
    minutes: int | None = Field(default=None, ge=0, le=1440)
    hm: str | None = None


class JobRead(BaseModel):
    id: int
    site_id: int
    site_name: str | None = None
    worker_id: int
    worker_name: str | None = None
    job_date: date
    scheduled_time: str
    scheduled_end_time: str | None = None
    planned_minutes: int | None = None
    status: JobStatus
    created_at: datetime | None = None


class ScheduleItem(BaseModel):
    id: int
    status: JobStatus
    job_date: date
    scheduled_time: str | None = None
    scheduled_end_time: str | None = None
    planned_minutes: int | None = None
    planned_end_time: str | None = None
    site_id: int
    site_name: str | None = None
    worker_id: int
    worker_name: str | None = None
    worker_phone: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class MyJobItem(BaseModel):
    id: int
    status: JobStatus
    job_date: date
    scheduled_time: str | None = None
    scheduled_end_time: str | None = None
    site_id: int
    site_name: str | None = None
    site_address: str | None = None
    site_lat: float | None = None
    site_lng: float | None = None
    site_radius_m: int | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class CheckInRequest(BaseModel):
    # Older mobile builds send camelCase keys.
    job_id: int = Field(ge=1, validation_alias=AliasChoices("job_id", "jobId", "shiftId", "id"))
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy_m: float = Field(ge=0, validation_alias=AliasChoices("accuracy_m", "accuracyMeters", "accuracy"))


class TimeLogRead(BaseModel):
    id: int
    job_id: int
    worker_id: int
    started_at: datetime
    ended_at: datetime | None = None
    start_lat: float | None = None
    start_lng: float | None = None
    start_accuracy_m: float | None = None
    end_lat: float | None = None
    end_lng: float | None = None
    end_accuracy_m: float | None = None

    model_config = ConfigDict(from_attributes=True)


class CheckInResponse(BaseModel):
    ok: bool = True
    job_id: int
    status: JobStatus
    time_log: TimeLogRead


class ReportWorkerTotal(BaseModel):
    worker_id: int
    worker_name: str | None = None
    avatar_url: str | None = None
    minutes: int
    hours: float
    jobs_count: int
    sessions: int


class ReportSiteTotal(BaseModel):
    site_id: int | None = None
    site_name: str | None = None
    minutes: int
    hours: float
    jobs_count: int
    sessions: int


class ReportEntry(BaseModel):
    job_id: int
    job_date: date | None = None
    worker_id: int
    worker_name: str | None = None
    site_id: int | None = None
    site_name: str | None = None
    started_at: datetime
    ended_at: datetime
    minutes: int


class ReportIncompleteEntry(BaseModel):
    job_id: int
    worker_id: int
    worker_name: str | None = None
    site_id: int | None = None
    site_name: str | None = None
    started_at: datetime


class ReportResponse(BaseModel):
    from_date: date = Field(alias="from")
    to_date: date = Field(alias="to")
    worker_id: int | None = None
    total_minutes: int
    total_hours: float
    by_worker: list[ReportWorkerTotal] = Field(default_factory=list)
    by_site: list[ReportSiteTotal] = Field(default_factory=list)
    entries: list[ReportEntry] = Field(default_factory=list)
    incomplete: list[ReportIncompleteEntry] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class GeocodeRequest(BaseModel):
    address: str = Field(min_length=1, max_length=500)


class GeocodeResponse(BaseModel):
    lat: float
    lng: float
    display_name: str | None = None


class OkResponse(BaseModel):
    ok: bool = True
