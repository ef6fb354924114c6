from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from timeclock.audit import client_ip, log_audit, user_agent
from timeclock.db import get_db
from timeclock.errors import ApiError
from timeclock.models import AuditActorType, Profile
from timeclock.schemas import AuthResponse, LoginRequest, RefreshRequest
from timeclock.security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    ensure_login_attempt_allowed,
    load_active_profile,
    register_login_failure,
    register_login_success,
    should_allow_refresh,
    verify_password,
)
from timeclock.services.workers import normalize_email

router = APIRouter(tags=["auth"])


@router.post("/api/auth/login", response_model=AuthResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AuthResponse:
    email = normalize_email(payload.email)
    ip = client_ip(request)
    agent = user_agent(request)
    request_id = getattr(request.state, "request_id", None)
    request.state.actor = "system"
    request.state.actor_id = "system"

    if ip:
        try:
            ensure_login_attempt_allowed(ip)
        except ApiError:
            log_audit(
                db,
                actor_type=AuditActorType.SYSTEM,
                actor_id=email,
                action="LOGIN_FAIL",
                success=False,
                ip=ip,
                user_agent=agent,
                details={"reason": "TOO_MANY_ATTEMPTS"},
                request_id=request_id,
            )
            raise

    profile = db.scalar(select(Profile).where(Profile.email == email))
    if profile is None or not profile.is_active or not verify_password(payload.password, profile.password_hash):
        if ip:
            register_login_failure(ip)
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id=email,
            action="LOGIN_FAIL",
            success=False,
            ip=ip,
            user_agent=agent,
            details={"reason": "INVALID_CREDENTIALS"},
            request_id=request_id,
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid credentials.")

    if ip:
        register_login_success(ip)

    access_token, expires_in, access_claims = create_access_token(profile)
    refresh_token: str | None = None
    refresh_jti: str | None = None
    if should_allow_refresh():
        refresh_token, refresh_claims = create_refresh_token(profile)
        refresh_jti = refresh_claims["jti"]

    request.state.actor = access_claims["role"]
    request.state.actor_id = str(profile.id)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN if access_claims["role"] == "admin" else AuditActorType.WORKER,
        actor_id=str(profile.id),
        action="LOGIN_SUCCESS",
        success=True,
        ip=ip,
        user_agent=agent,
        details={"access_jti": access_claims["jti"], "refresh_jti": refresh_jti},
        request_id=request_id,
    )

    return AuthResponse(access_token=access_token, expires_in=expires_in, refresh_token=refresh_token)


@router.post("/api/auth/refresh", response_model=AuthResponse)
def refresh(
    payload: RefreshRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AuthResponse:
    if not should_allow_refresh():
        raise ApiError(status_code=403, code="FORBIDDEN", message="Refresh token is disabled.")

    claims = decode_token(payload.refresh_token, expected_type="refresh")
    profile = load_active_profile(db, claims)

    access_token, expires_in, _ = create_access_token(profile)
    new_refresh_token, _ = create_refresh_token(profile)

    request.state.actor = str(claims.get("role") or "worker")
    request.state.actor_id = str(profile.id)
    return AuthResponse(access_token=access_token, expires_in=expires_in, refresh_token=new_refresh_token)
