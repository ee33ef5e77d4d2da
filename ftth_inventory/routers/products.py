from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ftth_inventory.db import get_session
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.error import conflict, not_found, validation_error
from ftth_inventory.models import ItemDetail, ItemStatus, Product, ProductCategory, Stock, utcnow
from ftth_inventory.permissions import Permission
from ftth_inventory.schemas import (
    ImportResult,
    Message,
    ProductCreate,
    ProductImportRequest,
    ProductRead,
    ProductUpdate,
    ProductWithTotals,
    RecordError,
)
from ftth_inventory.services import audit

router = APIRouter(prefix="/api/products", tags=["products"])

PRODUCT_FIELDS = ("sku", "name", "category", "unit")


def _get_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if not product:
        not_found("Product")
    return product


def _sku_taken(session: Session, sku: str, exclude_id: int | None = None) -> bool:
    stmt = select(Product.id).where(Product.sku == sku)
    if exclude_id is not None:
        stmt = stmt.where(Product.id != exclude_id)
    return session.exec(stmt).first() is not None


def _is_referenced(session: Session, product_id: int) -> bool:
    has_item = session.exec(select(ItemDetail.id).where(ItemDetail.product_id == product_id)).first()
    has_stock = session.exec(select(Stock.id).where(Stock.product_id == product_id)).first()
    return has_item is not None or has_stock is not None


def _totals(session: Session, product_ids: list[int]) -> dict[int, dict]:
    out = {pid: {"total_stock": 0, "item_count": 0, "available_items": 0, "deployed_items": 0} for pid in product_ids}
    if not product_ids:
        return out

    stock_rows = session.exec(
        select(Stock.product_id, func.sum(Stock.quantity))
        .where(Stock.product_id.in_(product_ids))
        .group_by(Stock.product_id)
    ).all()
    for pid, total in stock_rows:
        out[pid]["total_stock"] = int(total or 0)

    item_rows = session.exec(
        select(ItemDetail.product_id, ItemDetail.status, func.count())
        .where(ItemDetail.product_id.in_(product_ids), ItemDetail.is_deleted == False)  # noqa: E712
        .group_by(ItemDetail.product_id, ItemDetail.status)
    ).all()
    for pid, status, n in item_rows:
        out[pid]["item_count"] += n
        if status == ItemStatus.GUDANG.value:
            out[pid]["available_items"] += n
        elif status == ItemStatus.TERPASANG.value:
            out[pid]["deployed_items"] += n
    return out


@router.get("", response_model=list[ProductWithTotals])
def list_products(
    search: Optional[str] = Query(None, max_length=100),
    category: Optional[ProductCategory] = None,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.PRODUCTS_VIEW)),
):
    stmt = select(Product)
    if category is not None:
        stmt = stmt.where(Product.category == category.value)
    if search:
        stmt = stmt.where(or_(Product.name.contains(search), Product.sku.contains(search)))
    products = session.exec(stmt.order_by(Product.name.asc())).all()

    totals = _totals(session, [p.id for p in products])
    return [{**p.model_dump(), **totals[p.id]} for p in products]


@router.get("/{product_id}", response_model=ProductWithTotals)
def get_product(
    product_id: int,
    session: Session = Depends(get_session),
    _ctx: AuthContext = Depends(require_permission(Permission.PRODUCTS_VIEW)),
):
    product = _get_product(session, product_id)
    return {**product.model_dump(), **_totals(session, [product.id])[product.id]}


def _create_product(session: Session, sku: str, name: str, category: ProductCategory, unit: str, ctx: AuthContext, request: Request) -> Product:
    if _sku_taken(session, sku):
        validation_error("SKU_EXISTS", f"SKU {sku} already exists")

    product = Product(sku=sku, name=name, category=category.value, unit=unit)
    session.add(product)
    try:
        session.flush()
    except IntegrityError:
        # 兜底：并发下 unique 冲突
        session.rollback()
        validation_error("SKU_EXISTS", f"SKU {sku} already exists")

    audit.record(
        session,
        actor=ctx.user,
        entity="PRODUCT",
        entity_id=product.id,
        action="CREATE",
        after=audit.snapshot(product, PRODUCT_FIELDS),
        request=request,
    )
    return product


@router.post("", response_model=ProductRead, status_code=201)
def create_product(
    data: ProductCreate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.PRODUCTS_CREATE)),
):
    product = _create_product(session, data.sku.strip(), data.name.strip(), data.category, data.unit, ctx, request)
    session.commit()
    session.refresh(product)
    return product


@router.post("/import", response_model=ImportResult)
def import_products(
    data: ProductImportRequest,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.PRODUCTS_CREATE)),
):
    """Bulk create products. Duplicate or incomplete rows are reported, the rest kept."""
    created = 0
    errors: list[RecordError] = []
    for index, row in enumerate(data.products):
        sku = (row.sku or "").strip()
        name = (row.name or "").strip()
        try:
            if not (sku and name and row.category):
                validation_error("FIELDS_REQUIRED", "SKU, name and category are required")
            try:
                category = ProductCategory(row.category.strip().capitalize())
            except ValueError:
                validation_error("INVALID_CATEGORY", f"Unknown category {row.category}")
            _create_product(session, sku, name, category, (row.unit or "").strip() or "Pcs", ctx, request)
            session.commit()
        except HTTPException as e:
            session.rollback()
            message = e.detail.get("message") if isinstance(e.detail, dict) else str(e.detail)
            errors.append(RecordError(index=index, sku=sku or None, error=message))
            continue
        created += 1
    return {"created": created, "failed": len(errors), "errors": errors}


@router.put("/{product_id}", response_model=ProductRead)
def update_product(
    product_id: int,
    data: ProductUpdate,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.PRODUCTS_UPDATE)),
):
    product = _get_product(session, product_id)
    before = audit.snapshot(product, PRODUCT_FIELDS)

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    new_sku = changes.get("sku")
    if new_sku is not None and new_sku.strip() != product.sku:
        new_sku = new_sku.strip()
        if _is_referenced(session, product.id):
            validation_error("SKU_LOCKED", "SKU cannot change once items or stock reference the product")
        if _sku_taken(session, new_sku, exclude_id=product.id):
            validation_error("SKU_EXISTS", f"SKU {new_sku} already exists")
        product.sku = new_sku
    if "name" in changes:
        product.name = changes["name"].strip()
    if "category" in changes:
        product.category = ProductCategory(changes["category"]).value
    if "unit" in changes:
        product.unit = changes["unit"]

    product.updated_at = utcnow()
    session.add(product)
    audit.record(
        session,
        actor=ctx.user,
        entity="PRODUCT",
        entity_id=product.id,
        action="UPDATE",
        before=before,
        after=audit.snapshot(product, PRODUCT_FIELDS),
        request=request,
    )
    session.commit()
    session.refresh(product)
    return product


@router.delete("/{product_id}", response_model=Message)
def delete_product(
    product_id: int,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AuthContext = Depends(require_permission(Permission.PRODUCTS_DELETE)),
):
    product = _get_product(session, product_id)
    if session.exec(select(ItemDetail.id).where(ItemDetail.product_id == product.id)).first():
        conflict("PRODUCT_HAS_ITEMS", "Product still has serialized items; delete them first")

    before = audit.snapshot(product, PRODUCT_FIELDS)
    session.exec(delete(Stock).where(Stock.product_id == product.id))
    session.delete(product)
    audit.record(
        session,
        actor=ctx.user,
        entity="PRODUCT",
        entity_id=product_id,
        action="DELETE",
        before=before,
        request=request,
    )
    session.commit()
    return {"message": "Product deleted"}
