import io
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_all_permissions, require_any_permission, require_permission
from ftth_inventory.error import abort, not_found, validation_error
from ftth_inventory.models import HistoryAction, ItemDetail, ItemHistory, ItemStatus, Product, utcnow
from ftth_inventory.permissions import Permission
from ftth_inventory.schemas import (
    ItemCreate,
    ItemHistoryRead,
    ItemImportRequest,
    ImportResult,
    ItemMove,
    ItemRead,
    ItemStatusUpdate,
    ItemUpdate,
    RecordError,
)
from ftth_inventory.services import audit, history

router = APIRouter(prefix="/api/items", tags=["items"])

ITEM_FIELDS = ("product_id", "serial_number", "mac_address", "status", "location", "purchase_date", "notes", "is_deleted")


def _get_item(session: Session, item_id: int, *, allow_deleted: bool = False) -> ItemDetail:
    item = session.get(ItemDetail, item_id)
    if not item or (item.is_deleted and not allow_deleted):
        not_found("Item")
    return item


def _check_unique(session: Session, serial_number: str | None, mac_address: str | None, exclude_id: int | None = None):
    if serial_number:
        stmt = select(ItemDetail.id).where(ItemDetail.serial_number == serial_number)
        if exclude_id is not None:
            stmt = stmt.where(ItemDetail.id != exclude_id)
        if session.exec(stmt).first():
            validation_error("SERIAL_NUMBER_EXISTS", f"Serial number {serial_number} already exists")
    if mac_address:
        stmt = select(ItemDetail.id).where(ItemDetail.mac_address == mac_address)
        if exclude_id is not None:
            stmt = stmt.where(ItemDetail.id != exclude_id)
        if session.exec(stmt).first():
            validation_error("MAC_ADDRESS_EXISTS", f"MAC address {mac_address} already exists")


def _create_item(session: Session, data: ItemCreate, ctx: AuthContext, request: Request) -> ItemDetail:
    if not session.get(Product, data.product_id):
        not_found("Product")
    sn = data.serial_number.strip()
    mac = (data.mac_address or "").strip() or None
    _check_unique(session, sn, mac)

    item = ItemDetail(
        product_id=data.product_id,
        serial_number=sn,
        mac_address=mac,
        status=data.status.value,
        location=data.location,
        purchase_date=data.purchase_date,
        notes=data.notes,
    )
    session.add(item)
    session.flush()

    history.record(
        session, item, HistoryAction.CREATE,
        field="status", new=item.status, notes="Item created", actor=ctx.user, request=request,
    )
    audit.record(
        session,
        actor=ctx.user,
        entity="ITEM",
        entity_id=item.id,
        action="CREATE",
        after=audit.snapshot(item, ITEM_FIELDS),
        request=request,
    )
    return item


@router.get("", response_model=list[ItemRead])
def list_items(
    status: Optional[ItemStatus] = None,
    product_id: Optional[int] = Query(None, ge=1),
    search: Optional[str] = Query(None, max_length=100),
    include_deleted: bool = False,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    stmt = select(ItemDetail)
    if not include_deleted:
        stmt = stmt.where(ItemDetail.is_deleted == False)  # noqa: E712
    if status is not None:
        stmt = stmt.where(ItemDetail.status == status.value)
    if product_id is not None:
        stmt = stmt.where(ItemDetail.product_id == product_id)
    if search:
        stmt = stmt.where(or_(ItemDetail.serial_number.contains(search), ItemDetail.mac_address.contains(search)))
    stmt = stmt.order_by(ItemDetail.created_at.desc(), ItemDetail.id.desc()).offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/export.xlsx")
def export_items_xlsx(
    status: Optional[ItemStatus] = None,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    stmt = (
        select(ItemDetail, Product)
        .join(Product, Product.id == ItemDetail.product_id)
        .where(ItemDetail.is_deleted == False)  # noqa: E712
        .order_by(ItemDetail.id.asc())
    )
    if status is not None:
        stmt = stmt.where(ItemDetail.status == status.value)
    rows = session.exec(stmt).all()

    header = ["ID", "SKU", "Product", "Serial Number", "MAC Address", "Status", "Location", "Purchase Date", "Notes", "Updated"]

    wb = Workbook()
    ws = wb.active
    ws.title = "Inventory"

    ws.append(header)
    for col in range(1, len(header) + 1):
        cell = ws.cell(row=1, column=col)
        cell.font = Font(bold=True)
        cell.fill = PatternFill("solid", fgColor="DDDDDD")
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for item, product in rows:
        ws.append([
            item.id,
            product.sku,
            product.name,
            item.serial_number,
            item.mac_address or "",
            item.status,
            item.location or "",
            item.purchase_date,
            item.notes or "",
            item.updated_at,
        ])

    ws.freeze_panes = "A2"
    for r in range(2, len(rows) + 2):
        ws.cell(row=r, column=8).number_format = "yyyy-mm-dd"
        ws.cell(row=r, column=10).number_format = "yyyy-mm-dd hh:mm:ss"
    for letter, width in zip("ABCDEFGHIJ", (8, 14, 24, 22, 20, 12, 20, 14, 30, 20)):
        ws.column_dimensions[letter].width = width

    buf = io.BytesIO()
    wb.save(buf)

    filename = f"inventory-{datetime.now().strftime('%Y%m%d')}.xlsx"
    headers = {"Content-Disposition": f"attachment; filename=\"{filename}\"; filename*=UTF-8''{quote(filename)}"}
    return Response(
        content=buf.getvalue(),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )


@router.get("/scan/{serial_number}", response_model=ItemRead)
def get_item_by_serial_number(
    serial_number: str,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    item = session.exec(
        select(ItemDetail).where(ItemDetail.serial_number == serial_number, ItemDetail.is_deleted == False)  # noqa: E712
    ).first()
    if not item:
        not_found("Item")
    return item


@router.get("/{item_id}", response_model=ItemRead)
def get_item(
    item_id: int,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    return _get_item(session, item_id)


@router.post("", response_model=ItemRead, status_code=201)
def create_item(
    data: ItemCreate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_any_permission(Permission.INVENTORY_STOCK_IN, Permission.INVENTORY_AUDIT)),
):
    item = _create_item(session, data, ctx, request)
    session.commit()
    session.refresh(item)
    return item


@router.post("/import", response_model=ImportResult)
def import_items(
    data: ItemImportRequest,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_all_permissions(Permission.PRODUCTS_VIEW, Permission.INVENTORY_STOCK_IN)),
):
    """Bulk register serial numbers. Good rows are kept even when others fail."""
    created = 0
    errors: list[RecordError] = []
    for index, row in enumerate(data.items):
        try:
            _create_item(session, row, ctx, request)
            session.commit()
        except HTTPException as e:
            session.rollback()
            message = e.detail.get("message") if isinstance(e.detail, dict) else str(e.detail)
            errors.append(RecordError(index=index, serial_number=row.serial_number, error=message))
            continue
        except SQLAlchemyError as e:
            session.rollback()
            message = str(e.orig) if getattr(e, "orig", None) else str(e)
            errors.append(RecordError(index=index, serial_number=row.serial_number, error=message))
            continue
        created += 1
    return {"created": created, "failed": len(errors), "errors": errors}


@router.put("/{item_id}", response_model=ItemRead)
def update_item(
    item_id: int,
    data: ItemUpdate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_AUDIT)),
):
    item = _get_item(session, item_id)
    before = item.model_dump()
    before_snap = audit.snapshot(item, ITEM_FIELDS)

    changes = data.model_dump(exclude_unset=True)
    if "serial_number" in changes:
        if not changes["serial_number"]:
            validation_error("SERIAL_NUMBER_REQUIRED", "Serial number cannot be empty")
        changes["serial_number"] = changes["serial_number"].strip()
    if "mac_address" in changes:
        changes["mac_address"] = (changes["mac_address"] or "").strip() or None
    if "status" in changes:
        if changes["status"] is None:
            validation_error("STATUS_REQUIRED", "Status cannot be empty")
        changes["status"] = ItemStatus(changes["status"]).value

    _check_unique(
        session,
        changes.get("serial_number") if changes.get("serial_number") != item.serial_number else None,
        changes.get("mac_address") if changes.get("mac_address") != item.mac_address else None,
        exclude_id=item.id,
    )

    for field, value in changes.items():
        setattr(item, field, value)

    rows = history.record_field_changes(session, item, before, actor=ctx.user, request=request)
    if not rows:
        abort(400, "NO_CHANGE", "Nothing changed")

    item.updated_at = utcnow()
    session.add(item)
    audit.record(
        session,
        actor=ctx.user,
        entity="ITEM",
        entity_id=item.id,
        action="UPDATE",
        before=before_snap,
        after=audit.snapshot(item, ITEM_FIELDS),
        request=request,
    )
    session.commit()
    session.refresh(item)
    return item


@router.put("/{item_id}/status", response_model=ItemRead)
def update_item_status(
    item_id: int,
    body: ItemStatusUpdate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_AUDIT)),
):
    item = _get_item(session, item_id)
    old_status = item.status
    new_status = body.status.value
    if old_status == new_status:
        abort(400, "NO_CHANGE", f"Item is already {new_status}")

    item.status = new_status
    item.updated_at = utcnow()
    session.add(item)

    history.record(
        session, item, HistoryAction.UPDATE_STATUS,
        field="status", old=old_status, new=new_status,
        notes=(body.notes or "").strip() or f"Status {old_status} -> {new_status}",
        actor=ctx.user, request=request,
    )
    audit.record(
        session,
        actor=ctx.user,
        entity="ITEM",
        entity_id=item.id,
        action="UPDATE_STATUS",
        before={"serial_number": item.serial_number, "status": old_status},
        after={"serial_number": item.serial_number, "status": new_status},
        request=request,
    )
    session.commit()
    session.refresh(item)
    return item


@router.post("/{item_id}/move", response_model=ItemHistoryRead, status_code=201)
def move_item(
    item_id: int,
    body: ItemMove,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_AUDIT)),
):
    """Hand an item to a technician, install it, bring it back... One MOVE row per call."""
    item = _get_item(session, item_id)
    old_status, old_location = item.status, item.location
    new_status = body.to_status.value if body.to_status else old_status
    new_location = body.to_location if body.to_location is not None else old_location

    if new_status == old_status and new_location == old_location:
        abort(400, "NO_CHANGE", "Move must change the status or the location")

    item.status = new_status
    item.location = new_location
    item.updated_at = utcnow()
    session.add(item)

    # field 记 status，位置变化放 metadata
    if new_status != old_status:
        field, old, new = "status", old_status, new_status
    else:
        field, old, new = "location", old_location, new_location
    row = history.record(
        session, item, HistoryAction.MOVE,
        field=field, old=old, new=new,
        notes=(body.notes or "").strip() or f"Moved from {old} to {new}",
        actor=ctx.user,
        metadata={"from_location": old_location, "to_location": new_location,
                  "from_status": old_status, "to_status": new_status},
        request=request,
    )
    audit.record(
        session,
        actor=ctx.user,
        entity="ITEM",
        entity_id=item.id,
        action="MOVE",
        before={"serial_number": item.serial_number, "status": old_status, "location": old_location},
        after={"serial_number": item.serial_number, "status": new_status, "location": new_location},
        request=request,
    )
    session.commit()
    session.refresh(row)
    return row


@router.get("/{item_id}/movements", response_model=list[ItemHistoryRead])
def item_movements(
    item_id: int,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.INVENTORY_VIEW)),
):
    item = _get_item(session, item_id, allow_deleted=True)
    stmt = (
        select(ItemHistory)
        .where(ItemHistory.item_id == item.id, ItemHistory.action == HistoryAction.MOVE.value)
        .order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())
    )
    return session.exec(stmt).all()


@router.delete("/{item_id}", response_model=ItemRead)
def delete_item(
    item_id: int,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.ITEMS_DELETE)),
):
    item = _get_item(session, item_id)
    item.is_deleted = True
    item.updated_at = utcnow()
    session.add(item)

    history.record(
        session, item, HistoryAction.DELETE,
        field="is_deleted", old=False, new=True, notes="Item deleted", actor=ctx.user, request=request,
    )
    audit.record(
        session,
        actor=ctx.user,
        entity="ITEM",
        entity_id=item.id,
        action="DELETE",
        before=audit.snapshot(item, ITEM_FIELDS) | {"is_deleted": False},
        request=request,
    )
    session.commit()
    session.refresh(item)
    return item


@router.post("/{item_id}/restore", response_model=ItemRead)
def restore_item(
    item_id: int,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.ITEMS_DELETE)),
):
    item = _get_item(session, item_id, allow_deleted=True)
    if not item.is_deleted:
        abort(400, "NO_CHANGE", "Item is not deleted")

    item.is_deleted = False
    item.updated_at = utcnow()
    session.add(item)

    history.record(
        session, item, HistoryAction.RESTORE,
        field="is_deleted", old=True, new=False, notes="Item restored", actor=ctx.user, request=request,
    )
    audit.record(
        session,
        actor=ctx.user,
        entity="ITEM",
        entity_id=item.id,
        action="RESTORE",
        after=audit.snapshot(item, ITEM_FIELDS),
        request=request,
    )
    session.commit()
    session.refresh(item)
    return item
