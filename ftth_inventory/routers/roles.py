import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func
from sqlmodel import Session, select

from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.error import conflict, not_found, validation_error
from ftth_inventory.models import Role, User, utcnow
from ftth_inventory.permissions import (
    ALL_PERMISSIONS,
    CATALOG_VERSION,
    Permission,
    normalize_permissions,
    unknown_permissions,
)
from ftth_inventory.schemas import (
    Message,
    PermissionCatalog,
    RoleCreate,
    RolePermissionsUpdate,
    RoleRead,
    RoleUpdate,
)
from ftth_inventory.services import audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/roles", tags=["roles"])

ROLE_FIELDS = ("name", "permissions")


def _get_role(session: Session, role_id: int) -> Role:
    role = session.get(Role, role_id)
    if not role:
        not_found("Role")
    return role


def _clean_permissions(perms: list[str]) -> list[str]:
    perms = normalize_permissions(perms)
    unknown = unknown_permissions(perms)
    if unknown:
        validation_error("UNKNOWN_PERMISSION", f"Unknown permission(s): {', '.join(unknown)}")
    return perms


def _name_taken(session: Session, name: str, exclude_id: int | None = None) -> bool:
    stmt = select(Role.id).where(Role.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Role.id != exclude_id)
    return session.exec(stmt).first() is not None


def _save(session: Session, role: Role, before: dict | None, action: str, ctx: AuthContext, request: Request) -> Role:
    role.updated_at = utcnow()
    session.add(role)
    session.flush()
    audit.record(
        session,
        actor=ctx.user,
        entity="ROLE",
        entity_id=role.id,
        action=action,
        before=before,
        after=audit.snapshot(role, ROLE_FIELDS),
        request=request,
    )
    session.commit()
    session.refresh(role)
    return role


@router.get("", response_model=list[RoleRead])
def list_roles(
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.ROLES_VIEW)),
):
    return session.exec(select(Role).order_by(Role.name)).all()


@router.get("/permissions", response_model=PermissionCatalog)
def permission_catalog(_ctx: AuthContext = Depends(require_permission(Permission.ROLES_VIEW))):
    return {"version": CATALOG_VERSION, "permissions": ALL_PERMISSIONS}


@router.get("/{role_id}", response_model=RoleRead)
def get_role(
    role_id: int,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.ROLES_VIEW)),
):
    return _get_role(session, role_id)


@router.post("", response_model=RoleRead, status_code=201)
def create_role(
    data: RoleCreate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.ROLES_CREATE)),
):
    name = data.name.strip().upper()
    if _name_taken(session, name):
        conflict("ROLE_EXISTS", f"Role {name} already exists")
    role = Role(name=name, permissions=_clean_permissions(data.permissions))
    role = _save(session, role, None, "CREATE", ctx, request)
    logger.info("role %s created by user %s", role.name, ctx.user.id)
    return role


@router.put("/{role_id}", response_model=RoleRead)
def update_role(
    role_id: int,
    data: RoleUpdate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.ROLES_UPDATE)),
):
    role = _get_role(session, role_id)
    before = audit.snapshot(role, ROLE_FIELDS)
    if data.name is not None:
        name = data.name.strip().upper()
        if _name_taken(session, name, exclude_id=role.id):
            conflict("ROLE_EXISTS", f"Role {name} already exists")
        role.name = name
    if data.permissions is not None:
        role.permissions = _clean_permissions(data.permissions)
    return _save(session, role, before, "UPDATE", ctx, request)


@router.patch("/{role_id}/permissions", response_model=RoleRead)
def set_permissions(
    role_id: int,
    data: RolePermissionsUpdate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.ROLES_UPDATE)),
):
    role = _get_role(session, role_id)
    before = audit.snapshot(role, ROLE_FIELDS)
    # 新 list，JSON 列才会标记为 dirty
    role.permissions = _clean_permissions(data.permissions)
    role = _save(session, role, before, "UPDATE_PERMISSIONS", ctx, request)
    logger.info("role %s permissions set to %s by user %s", role.name, role.permissions, ctx.user.id)
    return role


@router.delete("/{role_id}", response_model=Message)
def delete_role(
    role_id: int,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.ROLES_DELETE)),
):
    role = _get_role(session, role_id)
    in_use = session.exec(select(func.count()).select_from(User).where(User.role_id == role.id)).one()
    if in_use:
        conflict("ROLE_IN_USE", f"Role {role.name} is assigned to {in_use} user(s)", users=in_use)

    before = audit.snapshot(role, ROLE_FIELDS)
    session.delete(role)
    audit.record(
        session,
        actor=ctx.user,
        entity="ROLE",
        entity_id=role_id,
        action="DELETE",
        before=before,
        request=request,
    )
    session.commit()
    return {"message": "Role deleted"}
