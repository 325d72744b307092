from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    READY_FOR_QC = "ReadyForQC"
    READY_FOR_DELIVERY = "ReadyForDelivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class Urgency(str, Enum):
    NORMAL = "Normal"
    URGENT = "Urgent"


class RestorationType(str, Enum):
    ZIRCONIA = "Zirconia"
    EMAX = "E-max"
    PFM = "PFM"
    METAL = "Metal"
    ACRYLIC = "Acrylic"
    CROWN = "Crown"
    BRIDGE = "Bridge"
    ZIRCONIA_LAYER = "Zirconia Layer"
    ZIRCO_MAX = "Zirco-Max"


class Order(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    restoration_type: RestorationType
    urgency: Urgency = Urgency.NORMAL
    patient_name: str
    teeth_number: Optional[str] = None
    doctor_id: str = Field(index=True)
    assigned_lab_id: Optional[str] = Field(default=None, index=True)
    auto_assign_pending: bool = Field(default=False, index=True)
    delivery_pending_confirmation: bool = False
    target_budget: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    agreed_fee: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    expected_delivery_date: Optional[date] = None
    actual_delivery_date: Optional[date] = None
    delivery_confirmed_at: Optional[datetime] = None
    delivery_confirmed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    status_updated_at: datetime = Field(default_factory=utcnow)
    # bumped on every write; change-feed consumers dedupe on (id, version)
    version: int = 1

    @property
    def marketplace_visible(self) -> bool:
        return self.auto_assign_pending and self.assigned_lab_id is None


class OrderStatusHistory(SQLModel, table=True):
    __tablename__ = "order_status_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    old_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    changed_by: str
    changed_at: datetime = Field(default_factory=utcnow)
    notes: Optional[str] = None


class OrderNote(SQLModel, table=True):
    __tablename__ = "order_note"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    author_id: str
    body: str
    created_at: datetime = Field(default_factory=utcnow)


class OrderCreate(SQLModel):
    patient_name: str
    restoration_type: RestorationType
    urgency: Urgency = Urgency.NORMAL
    teeth_number: Optional[str] = None
    assigned_lab_id: Optional[str] = None
    auto_assign_pending: bool = False
    target_budget: Optional[Decimal] = None
    expected_delivery_date: Optional[date] = None
