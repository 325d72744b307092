from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

from labflow.models.order import RestorationType, Urgency, utcnow


class RuleType(str, Enum):
    BASE_PRICE = "BasePrice"
    MULTIPLIER = "Multiplier"
    FLAT_FEE = "FlatFee"
    PENALTY = "Penalty"
    BONUS = "Bonus"


class SourceEvent(str, Enum):
    ORDER_CREATED = "OrderCreated"
    LAB_ACCEPTED = "LabAccepted"
    DELIVERY_CONFIRMED = "DeliveryConfirmed"
    FEEDBACK_APPROVED = "FeedbackApproved"
    ADMIN_OVERRIDE = "AdminOverride"
    REWORK_DETECTED = "ReworkDetected"
    SLA_CALCULATION = "SlaCalculation"


class InvoiceStatus(str, Enum):
    DRAFT = "Draft"
    GENERATED = "Generated"
    LOCKED = "Locked"
    FINALIZED = "Finalized"
    DISPUTED = "Disputed"


class PricingRule(SQLModel, table=True):
    __tablename__ = "pricing_rule"

    id: Optional[int] = Field(default=None, primary_key=True)
    rule_name: str = Field(unique=True)
    rule_type: RuleType
    restoration_type: Optional[RestorationType] = None
    urgency_level: Optional[Urgency] = None
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    is_percentage: bool = False
    priority: int = 100
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type.value,
            "restoration_type": self.restoration_type.value if self.restoration_type else None,
            "urgency_level": self.urgency_level.value if self.urgency_level else None,
            "amount": str(self.amount),
            "is_percentage": self.is_percentage,
            "priority": self.priority,
            "is_active": self.is_active,
        }


class PricingRuleUpsert(SQLModel):
    id: Optional[int] = None
    rule_name: str
    rule_type: RuleType
    restoration_type: Optional[RestorationType] = None
    urgency_level: Optional[Urgency] = None
    amount: Decimal
    is_percentage: bool = False
    priority: int = 100
    is_active: bool = True


class Invoice(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", unique=True)
    invoice_number: str = Field(unique=True)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    subtotal: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    final_total: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    generated_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    status_before_dispute: Optional[InvoiceStatus] = None
    dispute_resolved_at: Optional[datetime] = None
    dispute_resolved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1


class InvoiceLineItem(SQLModel, table=True):
    __tablename__ = "invoice_line_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoice.id", index=True)
    line_type: str
    description: str
    quantity: int = 1
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)
    total_price: Decimal = Field(max_digits=12, decimal_places=2)
    source_event: SourceEvent
    rule_applied: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
