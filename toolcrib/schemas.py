from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserRole(str, Enum):
    admin = "admin"
    technician = "technician"


class ItemCondition(str, Enum):
    good = "good"
    fair = "fair"
    poor = "poor"
    damaged = "damaged"


class LocationType(str, Enum):
    warehouse = "warehouse"
    truck = "truck"


class RequestStatus(str, Enum):
    pending = "pending"
    fulfilled = "fulfilled"
    received = "received"


class RecordStatus(str, Enum):
    active = "active"
    used = "used"


class ActivityAction(str, Enum):
    added = "added"
    deleted = "deleted"
    transferred = "transferred"
    used = "used"
    received = "received"


class NotificationKind(str, Enum):
    stock_request_created = "stock_request_created"
    low_stock = "low_stock"
    tech_low_stock = "tech_low_stock"
    test = "test"


# forward-only transition tables
REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.pending: {RequestStatus.fulfilled},
    RequestStatus.fulfilled: {RequestStatus.received},
    RequestStatus.received: set(),
}

RECORD_TRANSITIONS: dict[RecordStatus, set[RecordStatus]] = {
    RecordStatus.active: {RecordStatus.used},
    RecordStatus.used: set(),
}


# ---------- auth / company ----------

class UserCreate(BaseModel):
    username: str
    password: str
    role: UserRole = UserRole.technician
    company_name: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class CompanySettingsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    admin_email: Optional[str] = None
    low_stock_alerts_enabled: bool


class CompanySettingsUpdate(BaseModel):
    admin_email: Optional[str] = None
    low_stock_alerts_enabled: Optional[bool] = None


# ---------- trucks / categories ----------

class TruckCreate(BaseModel):
    name: str
    identifier: str


class TruckUpdate(BaseModel):
    name: Optional[str] = None
    identifier: Optional[str] = None


class TruckRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    identifier: str
    company_id: int
    updated_at: datetime


class CategoryCreate(BaseModel):
    name: str
    description: Optional[str] = None
    color: str = "#6B7280"


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None


class CategoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    color: str
    company_id: int


# ---------- inventory items ----------

class ItemCreate(BaseModel):
    name: str = ""
    category_id: Optional[int] = None
    description: Optional[str] = None
    barcode: Optional[str] = None
    serial_number: Optional[str] = None
    condition: ItemCondition = ItemCondition.good
    location_type: LocationType = LocationType.warehouse
    assigned_truck_id: Optional[int] = None
    unit_price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=0)
    min_quantity: int = Field(0, ge=0)


class ItemUpdate(BaseModel):
    name: Optional[str] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    barcode: Optional[str] = None
    serial_number: Optional[str] = None
    condition: Optional[ItemCondition] = None
    location_type: Optional[LocationType] = None
    assigned_truck_id: Optional[int] = None
    unit_price: Optional[float] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)
    min_quantity: Optional[int] = Field(None, ge=0)


class ItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    category_id: int
    barcode: Optional[str] = None
    serial_number: Optional[str] = None
    condition: ItemCondition
    location_type: LocationType
    assigned_truck_id: Optional[int] = None
    company_id: int
    unit_price: float
    quantity: int
    min_quantity: int
    group_id: Optional[str] = None
    image_url: Optional[str] = None
    updated_at: datetime


class ItemListResponse(BaseModel):
    items: list[ItemRead]
    total: int
    limit: int
    offset: int
    q: str | None = None


class ItemGroupRead(BaseModel):
    group_id: str
    name: str
    category_id: int
    total: int
    in_warehouse: int
    on_trucks: int


class TransferRequest(BaseModel):
    # null/absent truck_id means "back to the warehouse"
    truck_id: Optional[int] = None
    model_config = {
        "json_schema_extra": {
            "examples": [{"truck_id": 3}, {"truck_id": None}],
        }
    }


# ---------- bulk import ----------

class ImportRow(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    serial_number: Optional[str] = None
    description: Optional[str] = None
    barcode: Optional[str] = None
    condition: Optional[ItemCondition] = None
    unit_price: Optional[float] = None
    quantity: Optional[int] = None
    min_quantity: Optional[int] = None
    image_base64: Optional[str] = None
    image_content_type: str = "image/png"


class ImportBatch(BaseModel):
    rows: list[ImportRow]


class ImportedRowRead(BaseModel):
    row: int
    name: str
    quantity: int
    group_id: Optional[str] = None
    item_ids: list[int]


class ImportResultRead(BaseModel):
    rows: list[ImportedRowRead]
    items_created: int


# ---------- stock requests ----------

class RequestLineCreate(BaseModel):
    item_id: int
    quantity_requested: int = Field(..., ge=0, le=100000)


class StockRequestCreate(BaseModel):
    job_number: str = ""
    notes: Optional[str] = None
    lines: list[RequestLineCreate] = []


class LineFulfillment(BaseModel):
    line_id: int
    quantity_fulfilled: int = Field(..., ge=0)


class FulfillBody(BaseModel):
    lines: list[LineFulfillment]


class ReceiptBody(BaseModel):
    line_ids: list[int]


class StockRequestLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    position: int
    item_id: int
    item_name: str
    quantity_requested: int
    quantity_fulfilled: int
    received: bool


class StockRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    requester_id: int
    company_id: int
    job_number: str
    notes: Optional[str] = None
    status: RequestStatus
    created_at: datetime
    fulfilled_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    lines: list[StockRequestLineRead]


class LineOutcomeRead(BaseModel):
    line_id: int
    item_id: int
    item_name: str
    quantity_requested: int
    quantity_fulfilled: int
    outcome: str
    reason: Optional[str] = None
    code: Optional[str] = None


class FulfillResultRead(BaseModel):
    request: StockRequestRead
    lines: list[LineOutcomeRead]
    warnings: list[str]


# ---------- technician inventory ----------

class UseBody(BaseModel):
    amount: int
    job_reference: Optional[str] = None
    notes: Optional[str] = None


class TechnicianInventoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    technician_id: int
    item_id: int
    item_name: str
    quantity: int
    used_quantity: int
    remaining_quantity: int
    job_number: Optional[str] = None
    request_id: Optional[int] = None
    status: RecordStatus
    notes: Optional[str] = None
    company_id: int
    updated_at: datetime


class TechnicianSummaryRead(BaseModel):
    item_id: int
    item_name: str
    total_received: int
    total_used: int
    total_remaining: int
    active_records: int


# ---------- activity ----------

class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    user_id: Optional[int] = None
    action: ActivityAction
    subject: str
    item_id: Optional[int] = None
    truck_id: Optional[int] = None
    details: dict[str, Any]
    timestamp: datetime


class ActivitySort(str, Enum):
    id_desc = "id_desc"
    id_asc = "id_asc"
    created_desc = "created_desc"
    created_asc = "created_asc"


class ActivityListResponse(BaseModel):
    items: list[ActivityRead]
    total: int
    limit: int
    offset: int
