from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from timeclock.errors import ApiError
from timeclock.models import Job, Site
from timeclock.settings import get_settings


def get_site_or_404(db: Session, site_id: int) -> Site:
    site = db.get(Site, site_id)
    if site is None:
        raise ApiError(status_code=404, code="SITE_NOT_FOUND", message="Site not found.")
    return site


def list_sites(db: Session, *, include_archived: bool = False) -> list[Site]:
    stmt = select(Site).order_by(Site.name.asc(), Site.id.asc())
    if not include_archived:
        stmt = stmt.where(Site.archived_at.is_(None))
    return list(db.scalars(stmt).all())


def normalize_radius(radius_m: float | None) -> int:
    if radius_m is None:
        return get_settings().site_default_radius_m
    return max(1, round(radius_m))


def create_site(
    db: Session,
    *,
    name: str,
    lat: float,
    lng: float,
    radius_m: float | None = None,
    address: str | None = None,
    notes: str | None = None,
    category: int | None = None,
) -> Site:
    clean_name = name.strip()
    if not clean_name:
        raise ApiError(status_code=422, code="SITE_NAME_REQUIRED", message="Site name is required.")
    site = Site(
        name=clean_name,
        address=(address or "").strip() or None,
        notes=notes,
        category=category,
        lat=lat,
        lng=lng,
        radius_m=normalize_radius(radius_m),
    )
    db.add(site)
    db.commit()
    db.refresh(site)
    return site


def update_site(db: Session, site: Site, changes: dict[str, Any]) -> Site:
    if not changes:
        raise ApiError(status_code=422, code="NOTHING_TO_UPDATE", message="Nothing to update.")

    if "name" in changes:
        clean_name = (changes["name"] or "").strip()
        if not clean_name:
            raise ApiError(status_code=422, code="SITE_NAME_REQUIRED", message="Site name is required.")
        site.name = clean_name
    if "address" in changes:
        site.address = (changes["address"] or "").strip() or None
    if "notes" in changes:
        site.notes = changes["notes"]
    if "category" in changes:
        site.category = changes["category"] or None
    if "lat" in changes:
        site.lat = changes["lat"]
    if "lng" in changes:
        site.lng = changes["lng"]
    if "radius_m" in changes:
        radius_m = changes["radius_m"]
        site.radius_m = None if radius_m is None else max(1, round(radius_m))

    db.commit()
    db.refresh(site)
    return site


def set_site_archived(db: Session, site: Site, *, archived: bool) -> Site:
    site.archived_at = datetime.now(timezone.utc) if archived else None
    db.commit()
    db.refresh(site)
    return site


def delete_site(db: Session, site_id: int) -> None:
    site = get_site_or_404(db, site_id)
    referencing_job = db.scalar(select(Job.id).where(Job.site_id == site.id).limit(1))
    if referencing_job is not None:
        raise ApiError(
            status_code=409,
            code="SITE_HAS_JOBS",
            message="Cannot delete a site that has shifts; archive it instead.",
        )
    db.delete(site)
    db.commit()
