from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    # naive UTC（和 SQLite 读回来的一致）
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProductCategory(str, Enum):
    ACTIVE = "Active"
    PASSIVE = "Passive"
    TOOL = "Tool"


class ItemStatus(str, Enum):
    GUDANG = "GUDANG"          # in warehouse
    TEKNISI = "TEKNISI"        # checked out to a field technician
    TERPASANG = "TERPASANG"    # installed at a customer site
    RUSAK = "RUSAK"            # damaged


class HistoryAction(str, Enum):
    CREATE = "CREATE"
    UPDATE_STATUS = "UPDATE_STATUS"
    UPDATE_SN = "UPDATE_SN"
    UPDATE_MAC = "UPDATE_MAC"
    UPDATE_NOTES = "UPDATE_NOTES"
    UPDATE_PURCHASE_DATE = "UPDATE_PURCHASE_DATE"
    UPDATE_LOCATION = "UPDATE_LOCATION"
    MOVE = "MOVE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"
    SYNC_UPDATE = "SYNC_UPDATE"


class Role(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    permissions: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    password_hash: str
    role_id: int = Field(foreign_key="role.id", index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RefreshToken(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    jti: str = Field(index=True, unique=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    sku: str = Field(index=True, unique=True)
    name: str = Field(index=True)
    category: str = Field(default=ProductCategory.ACTIVE.value, index=True)
    unit: str = Field(default="Pcs")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ItemDetail(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    serial_number: str = Field(index=True, unique=True)
    mac_address: Optional[str] = Field(default=None, index=True, unique=True)
    status: str = Field(default=ItemStatus.GUDANG.value, index=True)
    location: Optional[str] = None
    purchase_date: Optional[date] = None
    notes: Optional[str] = None
    is_deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Stock(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("product_id", "warehouse_id", name="uq_stock_product_warehouse"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    warehouse_id: str = Field(index=True)
    quantity: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utcnow)


class AuditLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)

    action: str = Field(index=True)   # CREATE / UPDATE / STOCK_OUT / LOGIN ...
    entity: str = Field(index=True)   # PRODUCT / ITEM / STOCK / USER / ROLE
    entity_id: Optional[str] = Field(default=None, index=True)

    description: str
    old_values: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    new_values: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class ItemHistory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: int = Field(foreign_key="itemdetail.id", index=True)

    action: str = Field(index=True)
    field: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    notes: Optional[str] = None

    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    # metadata 是保留名
    meta: Optional[dict[str, Any]] = Field(default=None, sa_column=Column("metadata", JSON))

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class SyncLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(default="ARTACOM_SYNC", index=True)
    status: str = Field(default="IN_PROGRESS", index=True)
    details: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    finished_at: Optional[datetime] = None
