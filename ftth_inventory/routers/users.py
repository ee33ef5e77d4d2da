import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, or_
from sqlmodel import Session, select

from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.error import not_found, validation_error
from ftth_inventory.models import Role, User, utcnow
from ftth_inventory.permissions import Permission
from ftth_inventory.routers.auth import MIN_PASSWORD_LENGTH
from ftth_inventory.routers.histories import paginate
from ftth_inventory.schemas import Message, PasswordReset, UserCreate, UserListResponse, UserRead, UserUpdate
from ftth_inventory.security import hash_password
from ftth_inventory.services import audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

USER_FIELDS = ("email", "name", "role_id", "is_active")


def user_read(user: User, role: Role) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "is_active": user.is_active,
        "role": {"id": role.id, "name": role.name, "permissions": list(role.permissions)},
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }


def _get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        not_found("User")
    return user


def _get_role(session: Session, role_id: int) -> Role:
    role = session.get(Role, role_id)
    if not role:
        not_found("Role")
    return role


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        validation_error("PASSWORD_TOO_SHORT", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _email_taken(session: Session, email: str, exclude_id: int | None = None) -> bool:
    stmt = select(User.id).where(User.email == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return session.exec(stmt).first() is not None


@router.get("", response_model=UserListResponse)
def list_users(
    search: Optional[str] = Query(None, max_length=100),
    role_id: Optional[int] = Query(None, ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.USERS_MANAGE)),
):
    stmt = select(User, Role).join(Role, Role.id == User.role_id)
    count_stmt = select(func.count()).select_from(User)
    if search:
        cond = or_(User.name.contains(search), User.email.contains(search))
        stmt = stmt.where(cond)
        count_stmt = count_stmt.where(cond)
    if role_id is not None:
        stmt = stmt.where(User.role_id == role_id)
        count_stmt = count_stmt.where(User.role_id == role_id)
    stmt = stmt.order_by(User.created_at.desc(), User.id.desc())

    rows, pagination = paginate(session, stmt, count_stmt, page, limit)
    return {"data": [user_read(u, r) for u, r in rows], "pagination": pagination}


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: int,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.USERS_MANAGE)),
):
    user = _get_user(session, user_id)
    return user_read(user, _get_role(session, user.role_id))


@router.post("", response_model=UserRead, status_code=201)
def create_user(
    data: UserCreate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.USERS_MANAGE)),
):
    email = data.email.strip().lower()
    _check_password(data.password)
    if _email_taken(session, email):
        validation_error("EMAIL_EXISTS", f"Email {email} is already registered")
    role = _get_role(session, data.role_id)

    user = User(email=email, name=data.name.strip(), password_hash=hash_password(data.password), role_id=role.id)
    session.add(user)
    session.flush()
    audit.record(
        session,
        actor=ctx.user,
        entity="USER",
        entity_id=user.id,
        action="CREATE",
        after=audit.snapshot(user, USER_FIELDS),
        request=request,
    )
    session.commit()
    session.refresh(user)
    logger.info("user %s created %s with role %s", ctx.user.id, user.id, role.name)
    return user_read(user, role)


@router.put("/{user_id}", response_model=UserRead)
def update_user(
    user_id: int,
    data: UserUpdate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.USERS_MANAGE)),
):
    user = _get_user(session, user_id)
    before = audit.snapshot(user, USER_FIELDS)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    if "email" in changes:
        email = changes["email"].strip().lower()
        if _email_taken(session, email, exclude_id=user.id):
            validation_error("EMAIL_EXISTS", f"Email {email} is already registered")
        user.email = email
    if "name" in changes:
        user.name = changes["name"].strip()
    if "role_id" in changes:
        user.role_id = _get_role(session, changes["role_id"]).id
    if "is_active" in changes:
        if not changes["is_active"] and user.id == ctx.user.id:
            validation_error("CANNOT_DELETE_SELF", "You cannot disable your own account")
        user.is_active = changes["is_active"]

    user.updated_at = utcnow()
    session.add(user)
    audit.record(
        session,
        actor=ctx.user,
        entity="USER",
        entity_id=user.id,
        action="UPDATE",
        before=before,
        after=audit.snapshot(user, USER_FIELDS),
        request=request,
    )
    session.commit()
    session.refresh(user)
    return user_read(user, _get_role(session, user.role_id))


@router.delete("/{user_id}", response_model=Message)
def delete_user(
    user_id: int,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.USERS_MANAGE)),
):
    user = _get_user(session, user_id)
    if user.id == ctx.user.id:
        validation_error("CANNOT_DELETE_SELF", "You cannot delete your own account")

    before = audit.snapshot(user, USER_FIELDS)
    user.is_active = False
    user.updated_at = utcnow()
    session.add(user)
    audit.record(
        session,
        actor=ctx.user,
        entity="USER",
        entity_id=user.id,
        action="DELETE",
        before=before,
        after=audit.snapshot(user, USER_FIELDS),
        request=request,
    )
    session.commit()
    logger.info("user %s disabled %s", ctx.user.id, user.id)
    return {"message": "User disabled"}


@router.post("/{user_id}/reset-password", response_model=Message)
def reset_password(
    user_id: int,
    data: PasswordReset,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.USERS_MANAGE)),
):
    user = _get_user(session, user_id)
    _check_password(data.new_password)

    user.password_hash = hash_password(data.new_password)
    user.updated_at = utcnow()
    session.add(user)
    audit.record(
        session,
        actor=ctx.user,
        entity="USER",
        entity_id=user.id,
        action="RESET_PASSWORD",
        before={"name": user.name},
        request=request,
    )
    session.commit()
    return {"message": "Password reset"}
