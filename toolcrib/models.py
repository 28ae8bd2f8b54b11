from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, CheckConstraint, Column, Index, UniqueConstraint, text
from sqlmodel import Field, Relationship, SQLModel

from toolcrib.schemas import (
    ActivityAction,
    ItemCondition,
    LocationType,
    RecordStatus,
    RequestStatus,
    UserRole,
)


class Company(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    admin_email: Optional[str] = None
    low_stock_alerts_enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    role: UserRole = Field(default=UserRole.technician)
    company_id: int = Field(foreign_key="company.id", index=True)


class Truck(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("company_id", "identifier"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    identifier: str
    company_id: int = Field(foreign_key="company.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Category(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("company_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    color: str = Field(default="#6B7280")
    company_id: int = Field(foreign_key="company.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class InventoryItem(SQLModel, table=True):
    __tablename__ = "inventory_items"
    __table_args__ = (
        # truck location <=> assigned truck
        CheckConstraint(
            "(location_type = 'truck' AND assigned_truck_id IS NOT NULL) OR "
            "(location_type = 'warehouse' AND assigned_truck_id IS NULL)",
            name="ck_inventory_items_location",
        ),
        CheckConstraint("quantity >= 0", name="ck_inventory_items_quantity"),
        Index("uq_inventory_items_serial", "company_id", "serial_number", unique=True),
        Index("uq_inventory_items_barcode", "company_id", "barcode", unique=True),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    category_id: int = Field(foreign_key="category.id", index=True)
    barcode: Optional[str] = None
    serial_number: Optional[str] = None
    condition: ItemCondition = Field(default=ItemCondition.good)
    location_type: LocationType = Field(default=LocationType.warehouse, index=True)
    assigned_truck_id: Optional[int] = Field(default=None, foreign_key="truck.id", index=True)
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[int] = None
    company_id: int = Field(foreign_key="company.id", index=True)
    unit_price: float = Field(default=0)
    quantity: int = Field(default=1)
    min_quantity: int = Field(default=0)
    group_id: Optional[str] = Field(default=None, index=True)
    image_url: Optional[str] = None
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class StockRequest(SQLModel, table=True):
    __tablename__ = "stock_requests"

    id: Optional[int] = Field(default=None, primary_key=True)
    requester_id: int = Field(foreign_key="user.id", index=True)
    company_id: int = Field(foreign_key="company.id", index=True)
    job_number: str
    notes: Optional[str] = None
    status: RequestStatus = Field(default=RequestStatus.pending, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    fulfilled_at: Optional[datetime] = None
    received_at: Optional[datetime] = None

    lines: list["StockRequestLine"] = Relationship(
        back_populates="request",
        sa_relationship_kwargs={
            "order_by": "StockRequestLine.position",
            "cascade": "all, delete-orphan",
        },
    )


class StockRequestLine(SQLModel, table=True):
    __tablename__ = "stock_request_lines"
    __table_args__ = (
        CheckConstraint(
            "quantity_fulfilled >= 0 AND quantity_fulfilled <= quantity_requested",
            name="ck_stock_request_lines_fulfilled",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(foreign_key="stock_requests.id", index=True)
    position: int
    item_id: int = Field(index=True)
    item_name: str
    quantity_requested: int
    quantity_fulfilled: int = Field(default=0)
    received: bool = Field(default=False)

    request: Optional[StockRequest] = Relationship(back_populates="lines")


class TechnicianInventory(SQLModel, table=True):
    __tablename__ = "technician_inventory"
    __table_args__ = (
        # one active balance per technician and item
        Index(
            "uq_technician_inventory_active",
            "technician_id",
            "item_id",
            "company_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        CheckConstraint("remaining_quantity >= 0", name="ck_technician_inventory_remaining"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    technician_id: int = Field(foreign_key="user.id", index=True)
    item_id: int = Field(index=True)
    item_name: str
    quantity: int = Field(default=0)
    used_quantity: int = Field(default=0)
    remaining_quantity: int = Field(default=0)
    job_number: Optional[str] = None
    request_id: Optional[int] = None
    status: RecordStatus = Field(default=RecordStatus.active)
    notes: Optional[str] = None
    company_id: int = Field(foreign_key="company.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ActivityLog(SQLModel, table=True):
    __tablename__ = "activity_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(foreign_key="company.id", index=True)
    user_id: Optional[int] = Field(default=None, index=True)
    action: ActivityAction = Field(index=True)
    subject: str
    item_id: Optional[int] = Field(default=None, index=True)
    truck_id: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)
