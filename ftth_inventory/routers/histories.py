import math
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.error import not_found
from ftth_inventory.models import ItemDetail, ItemHistory
from ftth_inventory.permissions import Permission
from ftth_inventory.schemas import ItemHistoryPage

router = APIRouter(prefix="/api/histories", tags=["histories"])


def paginate(session: Session, stmt, count_stmt, page: int, limit: int) -> tuple[list, dict]:
    total = session.exec(count_stmt).one()
    rows = session.exec(stmt.offset((page - 1) * limit).limit(limit)).all()
    return rows, {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0}


@router.get("/items/{item_id}/history", response_model=ItemHistoryPage)
def item_history(
    item_id: int,
    action: Optional[str] = Query(None, max_length=50),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    if not session.get(ItemDetail, item_id):
        not_found("Item")

    stmt = select(ItemHistory).where(ItemHistory.item_id == item_id)
    count_stmt = select(func.count()).select_from(ItemHistory).where(ItemHistory.item_id == item_id)
    if action:
        stmt = stmt.where(ItemHistory.action == action)
        count_stmt = count_stmt.where(ItemHistory.action == action)
    stmt = stmt.order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())

    rows, pagination = paginate(session, stmt, count_stmt, page, limit)
    return {"data": rows, "pagination": pagination}


@router.get("/histories", response_model=ItemHistoryPage)
def all_histories(
    action: Optional[str] = Query(None, max_length=50),
    item_id: Optional[int] = Query(None, ge=1),
    user_id: Optional[int] = Query(None, ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    stmt = select(ItemHistory)
    count_stmt = select(func.count()).select_from(ItemHistory)
    for column, value in ((ItemHistory.action, action), (ItemHistory.item_id, item_id), (ItemHistory.user_id, user_id)):
        if value is not None:
            stmt = stmt.where(column == value)
            count_stmt = count_stmt.where(column == value)
    stmt = stmt.order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())

    rows, pagination = paginate(session, stmt, count_stmt, page, limit)
    return {"data": rows, "pagination": pagination}
