from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timeclock.errors import ApiError
from timeclock.models import Job, Profile, ProfileRole, TimeLog
from timeclock.schemas import ProfileRead
from timeclock.security import hash_password
from timeclock.settings import resolve_media_url


def normalize_email(email: str) -> str:
    return email.strip().lower()


def get_profile_or_404(db: Session, profile_id: int) -> Profile:
    profile = db.get(Profile, profile_id)
    if profile is None:
        raise ApiError(status_code=404, code="WORKER_NOT_FOUND", message="Profile not found.")
    return profile


def list_profiles(db: Session, *, role: ProfileRole | None = None) -> list[Profile]:
    stmt = select(Profile).order_by(Profile.full_name.asc(), Profile.id.asc())
    if role is not None:
        stmt = stmt.where(Profile.role == role)
    return list(db.scalars(stmt).all())


def create_profile(
    db: Session,
    *,
    email: str,
    password: str,
    full_name: str | None = None,
    phone: str | None = None,
    role: ProfileRole = ProfileRole.WORKER,
) -> Profile:
    normalized_email = normalize_email(email)
    existing = db.scalar(select(Profile).where(Profile.email == normalized_email))
    if existing is not None:
        raise ApiError(status_code=409, code="EMAIL_TAKEN", message="A profile with this email already exists.")

    profile = Profile(
        email=normalized_email,
        password_hash=hash_password(password),
        full_name=(full_name or "").strip() or None,
        phone=(phone or "").strip() or None,
        role=role,
        is_active=True,
    )
    db.add(profile)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(status_code=409, code="EMAIL_TAKEN", message="A profile with this email already exists.") from exc
    db.refresh(profile)
    return profile


def set_profile_active(db: Session, profile_id: int, *, active: bool) -> Profile:
    profile = get_profile_or_404(db, profile_id)
    if ProfileRole(profile.role) == ProfileRole.ADMIN and not active:
        raise ApiError(
            status_code=409,
            code="ADMIN_CANNOT_BE_DEACTIVATED",
            message="Admins cannot be deactivated.",
        )
    profile.is_active = active
    db.commit()
    db.refresh(profile)
    return profile


def set_profile_role(db: Session, profile_id: int, *, role: ProfileRole, actor_profile_id: int) -> Profile:
    profile = get_profile_or_404(db, profile_id)
    if profile.id == actor_profile_id and role != ProfileRole.ADMIN:
        raise ApiError(
            status_code=409,
            code="CANNOT_DEMOTE_SELF",
            message="You cannot remove your own admin role.",
        )
    profile.role = role
    db.commit()
    db.refresh(profile)
    return profile


def to_profile_read(profile: Profile) -> ProfileRead:
    return ProfileRead(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        phone=profile.phone,
        role=ProfileRole(profile.role),
        is_active=profile.is_active,
        avatar_url=resolve_media_url(profile.avatar_path),
        created_at=profile.created_at,
    )


def delete_profile(db: Session, profile_id: int, *, actor_profile_id: int) -> None:
    # Profiles with recorded work stay so reports keep their names; deactivate those instead.
    profile = get_profile_or_404(db, profile_id)
    if profile.id == actor_profile_id:
        raise ApiError(status_code=409, code="CANNOT_DELETE_SELF", message="You cannot delete your own profile.")
    if ProfileRole(profile.role) == ProfileRole.ADMIN:
        raise ApiError(status_code=409, code="ADMIN_CANNOT_BE_DELETED", message="Admins cannot be deleted.")
    if db.scalar(select(TimeLog.id).where(TimeLog.worker_id == profile.id).limit(1)) is not None:
        raise ApiError(
            status_code=409,
            code="WORKER_HAS_TIME_LOGS",
            message="Cannot delete a worker with time logs; deactivate them instead.",
        )
    if db.scalar(select(Job.id).where(Job.worker_id == profile.id).limit(1)) is not None:
        raise ApiError(
            status_code=409,
            code="WORKER_HAS_JOBS",
            message="Cannot delete a worker with shifts; deactivate them instead.",
        )
    db.delete(profile)
    db.commit()


def update_own_profile(db: Session, profile: Profile, *, full_name: str, email: str | None = None) -> Profile:
    cleaned_name = full_name.strip()
    if not cleaned_name:
        raise ApiError(status_code=422, code="FULL_NAME_REQUIRED", message="Full name is required.")

    # A blank email keeps the current one.
    new_email = normalize_email(email) if email and email.strip() else profile.email
    if new_email != profile.email:
        taken = db.scalar(select(Profile.id).where(Profile.email == new_email, Profile.id != profile.id))
        if taken is not None:
            raise ApiError(status_code=409, code="EMAIL_TAKEN", message="A profile with this email already exists.")

    profile.full_name = cleaned_name
    profile.email = new_email
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(status_code=409, code="EMAIL_TAKEN", message="A profile with this email already exists.") from exc
    db.refresh(profile)
    return profile
