from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.models import AuditLog
from ftth_inventory.permissions import Permission
from ftth_inventory.routers.histories import paginate
from ftth_inventory.schemas import AuditLogPage

router = APIRouter(prefix="/api/audit", tags=["audit"])


def _page(session: Session, filters: list, page: int, limit: int) -> dict:
    stmt = select(AuditLog)
    count_stmt = select(func.count()).select_from(AuditLog)
    for cond in filters:
        stmt = stmt.where(cond)
        count_stmt = count_stmt.where(cond)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    rows, pagination = paginate(session, stmt, count_stmt, page, limit)
    return {"data": rows, "pagination": pagination}


@router.get("/logs", response_model=AuditLogPage)
def list_logs(
    entity: Optional[str] = Query(None, max_length=50),
    action: Optional[str] = Query(None, max_length=50),
    user_id: Optional[int] = Query(None, ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.ACTIVITY_LOG_VIEW)),
):
    filters = []
    if entity:
        filters.append(AuditLog.entity == entity.upper())
    if action:
        filters.append(AuditLog.action == action.upper())
    if user_id is not None:
        filters.append(AuditLog.user_id == user_id)
    return _page(session, filters, page, limit)


@router.get("/logs/{entity}/{entity_id}", response_model=AuditLogPage)
def entity_logs(
    entity: str,
    entity_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.ACTIVITY_LOG_VIEW)),
):
    filters = [AuditLog.entity == entity.upper(), AuditLog.entity_id == entity_id]
    return _page(session, filters, page, limit)


@router.get("/users/{user_id}/logs", response_model=AuditLogPage)
def user_logs(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.ACTIVITY_LOG_VIEW)),
):
    return _page(session, [AuditLog.user_id == user_id], page, limit)
