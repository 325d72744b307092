from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from labflow.models.billing import SourceEvent
from labflow.models.order import OrderStatus, utcnow


class EventType(str, Enum):
    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"
    NOTE_ADDED = "note_added"
    SUBMITTED_TO_MARKETPLACE = "submitted_to_marketplace"
    APPLICATION_SUBMITTED = "application_submitted"
    APPLICATION_ACCEPTED = "application_accepted"
    APPLICATION_REJECTED = "application_rejected"
    APPLICATION_SUPERSEDED = "application_superseded"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    BILLING = "billing"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"


@dataclass(frozen=True)
class LifecycleEvent:
    order_id: int
    type: EventType
    actor_id: str
    old_status: Optional[OrderStatus] = None
    new_status: Optional[OrderStatus] = None
    # set when the event feeds the invoicing engine
    source_event: Optional[SourceEvent] = None
    lab_id: Optional[str] = None
    note: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def billable(self) -> bool:
        return self.source_event is not None and self.source_event != SourceEvent.ADMIN_OVERRIDE


def billing_event(order_id: int, actor_id: str, source_event: SourceEvent) -> LifecycleEvent:
    return LifecycleEvent(order_id=order_id, type=EventType.BILLING, actor_id=actor_id, source_event=source_event)
