import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlmodel import Session, select

from ftth_inventory.config import get_settings
from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, load_context, require_user
from ftth_inventory.error import _auth_401, abort
from ftth_inventory.models import RefreshToken, User, utcnow
from ftth_inventory.schemas import ChangePasswordRequest, LoginRequest, LoginResponse, Message, Token, UserRead
from ftth_inventory.security import (
    REFRESH,
    InvalidOrExpired,
    hash_password,
    issue_access_token,
    issue_refresh_token,
    verify,
    verify_password,
)
from ftth_inventory.services import audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 6


def user_out(ctx: AuthContext) -> dict:
    u = ctx.user
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "is_active": u.is_active,
        "role": {"id": ctx.role.id, "name": ctx.role.name, "permissions": list(ctx.role.permissions)},
        "created_at": u.created_at,
        "updated_at": u.updated_at,
    }


def _set_refresh_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=token,
        max_age=settings.refresh_token_expire_days * 24 * 3600,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
        path="/api/auth",
    )


def _expires_in() -> int:
    return get_settings().access_token_expire_minutes * 60


def _open_refresh_token(session: Session, response: Response, user_id: int) -> None:
    """Issue a refresh token, remember its jti, and hand it out as a cookie."""
    token = issue_refresh_token(user_id)
    claims = verify(token, REFRESH)
    expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc).replace(tzinfo=None)
    session.add(RefreshToken(jti=claims["jti"], user_id=user_id, expires_at=expires_at))
    _set_refresh_cookie(response, token)


def _stored_refresh_token(session: Session, claims: dict) -> Optional[RefreshToken]:
    jti = claims.get("jti")
    if not jti:
        return None
    return session.exec(select(RefreshToken).where(RefreshToken.jti == jti)).first()


@router.post("/login", response_model=LoginResponse)
def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    session: Session = Depends(get_session),
):
    email = data.email.strip().lower()
    user = session.exec(select(User).where(User.email == email)).first()
    if (not user) or (not verify_password(data.password, user.password_hash)):
        logger.info("failed login for %s", email)
        raise _auth_401("INVALID_CREDENTIALS", "Invalid email or password")
    if not user.is_active:
        raise _auth_401("USER_DISABLED", "Account is disabled")

    ctx = load_context(session, user.id)
    access = issue_access_token(user.id)
    _open_refresh_token(session, response, user.id)

    audit.record(
        session,
        actor=user,
        entity="USER",
        entity_id=user.id,
        action="LOGIN",
        description=f"User \"{user.name}\" logged in",
        request=request,
    )
    session.commit()
    logger.info("user %s logged in", user.id)

    return {"user": user_out(ctx), "access_token": access, "token_type": "bearer", "expires_in": _expires_in()}


@router.post("/refresh", response_model=Token)
def refresh(request: Request, session: Session = Depends(get_session)):
    token = request.cookies.get(get_settings().refresh_cookie_name)
    if not token:
        raise _auth_401("REFRESH_TOKEN_MISSING", "Refresh token not found")
    try:
        claims = verify(token, REFRESH)
    except InvalidOrExpired:
        raise _auth_401("INVALID_TOKEN", "Invalid or expired refresh token")

    stored = _stored_refresh_token(session, claims)
    if stored is None or stored.revoked_at is not None:
        raise _auth_401("INVALID_TOKEN", "Refresh token has been revoked")

    # 用户被删或被禁用就不能续签
    user_id = int(claims["sub"])
    load_context(session, user_id)
    return {"access_token": issue_access_token(user_id), "token_type": "bearer", "expires_in": _expires_in()}


@router.post("/logout", response_model=Message)
def logout(request: Request, response: Response, session: Session = Depends(get_session)):
    settings = get_settings()
    token = request.cookies.get(settings.refresh_cookie_name)
    if token:
        try:
            claims = verify(token, REFRESH)
        except InvalidOrExpired:
            claims = None
        if claims:
            stored = _stored_refresh_token(session, claims)
            if stored is not None and stored.revoked_at is None:
                stored.revoked_at = utcnow()
                session.add(stored)
            user = session.get(User, int(claims["sub"]))
            if user:
                audit.record(
                    session,
                    actor=user,
                    entity="USER",
                    entity_id=user.id,
                    action="LOGOUT",
                    description=f"User \"{user.name}\" logged out",
                    request=request,
                )
            session.commit()

    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path="/api/auth",
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
    )
    return {"message": "Logged out"}


@router.get("/me", response_model=UserRead)
def me(ctx: AuthContext = Depends(require_user)):
    return user_out(ctx)


@router.post("/change-password", response_model=Message)
def change_password(
    data: ChangePasswordRequest,
    request: Request,
    ctx: AuthContext = Depends(require_user),
    session: Session = Depends(get_session),
):
    user = ctx.user
    if len(data.new_password) < MIN_PASSWORD_LENGTH:
        abort(400, "PASSWORD_TOO_SHORT", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not verify_password(data.current_password, user.password_hash):
        raise _auth_401("INVALID_CREDENTIALS", "Current password is incorrect")

    user.password_hash = hash_password(data.new_password)
    user.updated_at = utcnow()
    session.add(user)
    audit.record(
        session,
        actor=user,
        entity="USER",
        entity_id=user.id,
        action="CHANGE_PASSWORD",
        description=f"User \"{user.name}\" changed their password",
        request=request,
    )
    session.commit()
    return {"message": "Password changed"}
