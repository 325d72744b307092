from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from labflow.models.order import utcnow


class ApplicationStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    SUPERSEDED = "Superseded"


class MarketplaceApplication(SQLModel, table=True):
    __tablename__ = "marketplace_application"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    lab_id: str = Field(index=True)
    applied_by: str
    status: ApplicationStatus = Field(default=ApplicationStatus.PENDING, index=True)
    proposed_fee: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    applied_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None


class LabMember(SQLModel, table=True):
    """Lab staff account as known to the onboarding service."""

    __tablename__ = "lab_member"

    user_id: str = Field(primary_key=True)
    lab_id: str = Field(index=True)
    onboarding_completed: bool = False
