from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from labflow.models.order import utcnow


class NotificationType(str, Enum):
    STATUS_CHANGE = "status_change"
    NEW_NOTE = "new_note"
    ASSIGNMENT = "assignment"
    LAB_REQUEST = "lab_request"
    REQUEST_ACCEPTED = "request_accepted"
    REQUEST_REFUSED = "request_refused"
    NEW_MARKETPLACE_ORDER = "new_marketplace_order"
    INVOICE_UPDATE = "invoice_update"


class NotificationRecord(SQLModel, table=True):
    __tablename__ = "notification"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    type: NotificationType
    title: str
    message: str
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
