from datetime import date, datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ftth_inventory.models import ItemStatus, ProductCategory


# --- auth -----------------------------------------------------------------

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class RoleBrief(BaseModel):
    id: int
    name: str
    permissions: list[str]


class UserRead(BaseModel):
    id: int
    email: str
    name: str
    is_active: bool
    role: RoleBrief
    created_at: datetime
    updated_at: datetime


class Token(BaseModel):
    # 对外字段名：accessToken / tokenType / expiresIn
    access_token: str = Field(..., serialization_alias="accessToken")
    token_type: str = Field("bearer", serialization_alias="tokenType")
    expires_in: int = Field(..., serialization_alias="expiresIn")


class LoginResponse(Token):
    user: UserRead


class Message(BaseModel):
    message: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


# --- users ----------------------------------------------------------------

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    password: str
    role_id: int


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    role_id: Optional[int] = None
    is_active: Optional[bool] = None


class PasswordReset(BaseModel):
    new_password: str


class UserListResponse(BaseModel):
    data: list[UserRead]
    pagination: Pagination


# --- roles ----------------------------------------------------------------

class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    permissions: list[str] = Field(default_factory=list)


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    permissions: Optional[list[str]] = None


class RolePermissionsUpdate(BaseModel):
    permissions: list[str]


class RoleRead(BaseModel):
    id: int
    name: str
    permissions: list[str]
    created_at: datetime
    updated_at: datetime


class PermissionCatalog(BaseModel):
    version: int
    permissions: list[str]


# --- products -------------------------------------------------------------

class ProductCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    category: ProductCategory = ProductCategory.ACTIVE
    unit: str = Field("Pcs", min_length=1, max_length=20)


class ProductUpdate(BaseModel):
    sku: Optional[str] = Field(None, min_length=1, max_length=64)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    category: Optional[ProductCategory] = None
    unit: Optional[str] = Field(None, min_length=1, max_length=20)


class ProductRead(BaseModel):
    id: int
    sku: str
    name: str
    category: ProductCategory
    unit: str
    created_at: datetime
    updated_at: datetime


class ProductWithTotals(ProductRead):
    total_stock: int = 0
    item_count: int = 0
    available_items: int = 0
    deployed_items: int = 0


class ProductImportRow(BaseModel):
    # 逐行校验（import_products）
    sku: Optional[str] = Field(None, max_length=64)
    name: Optional[str] = Field(None, max_length=200)
    category: Optional[str] = None
    unit: Optional[str] = Field(None, max_length=20)


class ProductImportRequest(BaseModel):
    products: list[ProductImportRow] = Field(..., min_length=1, max_length=1000)


# --- items ----------------------------------------------------------------

class ItemCreate(BaseModel):
    product_id: int
    serial_number: str = Field(..., min_length=1, max_length=100)
    mac_address: Optional[str] = Field(None, max_length=64)
    status: ItemStatus = ItemStatus.GUDANG
    location: Optional[str] = Field(None, max_length=200)
    purchase_date: Optional[date] = None
    notes: Optional[str] = None


class ItemUpdate(BaseModel):
    serial_number: Optional[str] = Field(None, min_length=1, max_length=100)
    mac_address: Optional[str] = Field(None, max_length=64)
    status: Optional[ItemStatus] = None
    location: Optional[str] = Field(None, max_length=200)
    purchase_date: Optional[date] = None
    notes: Optional[str] = None


class ItemStatusUpdate(BaseModel):
    status: ItemStatus
    notes: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"status": "TEKNISI", "notes": "dibawa teknisi"},
                {"status": "TERPASANG", "notes": "terpasang di pelanggan"},
            ]
        }
    }


class ItemMove(BaseModel):
    to_status: Optional[ItemStatus] = None
    to_location: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = None


class ItemRead(BaseModel):
    id: int
    product_id: int
    serial_number: str
    mac_address: Optional[str] = None
    status: ItemStatus
    location: Optional[str] = None
    purchase_date: Optional[date] = None
    notes: Optional[str] = None
    is_deleted: bool
    created_at: datetime
    updated_at: datetime


class ItemImportRequest(BaseModel):
    items: list[ItemCreate] = Field(..., min_length=1, max_length=1000)


class RecordError(BaseModel):
    index: int
    serial_number: Optional[str] = None
    sku: Optional[str] = None
    error: str


class ImportResult(BaseModel):
    created: int
    failed: int
    errors: list[RecordError]


# --- stock ----------------------------------------------------------------

class StockChange(BaseModel):
    product_id: int
    warehouse_id: Optional[str] = Field(None, min_length=1, max_length=50)
    quantity: int = Field(..., gt=0, le=100000)
    note: Optional[str] = None


class StockRead(BaseModel):
    id: int
    product_id: int
    warehouse_id: str
    quantity: int
    updated_at: datetime


# --- history / audit ------------------------------------------------------

class ItemHistoryRead(BaseModel):
    id: int
    item_id: int
    action: str
    field: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[int] = None
    metadata: Optional[dict[str, Any]] = Field(None, validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ItemHistoryPage(BaseModel):
    data: list[ItemHistoryRead]
    pagination: Pagination


class AuditLogRead(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    entity: str
    entity_id: Optional[str] = None
    description: str
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: datetime


class AuditLogPage(BaseModel):
    data: list[AuditLogRead]
    pagination: Pagination


# --- artacom --------------------------------------------------------------

class SyncResult(BaseModel):
    sync_id: int
    status: str
    created: int
    updated: int
    unchanged: int
    histories_imported: int
    errors: list[RecordError]
    message: str


class SyncStatus(BaseModel):
    connected: bool
    last_sync: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    api_endpoint: str


class SyncLogRead(BaseModel):
    id: int
    type: str
    status: str
    details: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class PartnerItem(BaseModel):
    serial_number: str
    mac_address: Optional[str] = None
    device_name: str
    status: ItemStatus
    location: Optional[str] = None
    notes: Optional[str] = None
    purchase_date: Optional[date] = None
    actor: Optional[str] = None


# --- dashboard ------------------------------------------------------------

class DashboardStats(BaseModel):
    total_products: int
    total_items: int
    items_by_status: dict[str, int]
    total_stock_quantity: int
    low_stock_count: int
    products_by_category: dict[str, int]


class LowStockRow(BaseModel):
    stock_id: int
    product_id: int
    sku: str
    name: str
    unit: str
    warehouse_id: str
    quantity: int


class CategorySummary(BaseModel):
    category: str
    product_count: int = 0
    total_stock: int = 0
    item_count: int = 0
    items_by_status: dict[str, int]


class StockTrendRow(BaseModel):
    id: int
    sku: str
    name: str
    category: str
    unit: str
    stock_level: int
    available_items: int
    deployed_items: int


class RecentActivity(BaseModel):
    type: str
    id: int
    description: str
    status: Optional[str] = None
    timestamp: datetime
