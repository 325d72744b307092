"""Order state machine.

    Pending -> InProgress -> ReadyForQC -> ReadyForDelivery -> Delivered
    any non-terminal state -> Cancelled
    ReadyForQC / ReadyForDelivery -> InProgress   (rework, billable)

ReadyForQC -> ReadyForDelivery is guarded by the QC checklist. Delivered orders
wait for the doctor to confirm delivery before they are billed as delivered.
"""
from typing import List, Optional, Tuple
import logging

from sqlmodel import Session

from labflow.errors import AuthorizationError, GuardViolation, ValidationError
from labflow.models.actor import Actor, Role
from labflow.models.billing import SourceEvent
from labflow.models.order import Order, OrderCreate, OrderStatus, utcnow
from labflow.services.events import EventType, LifecycleEvent, billing_event
from labflow.services.qc import QCChecklist
from labflow.services.store import OrderStore
from labflow.services.validation import Validator

logger = logging.getLogger(__name__)

FORWARD = {
    OrderStatus.PENDING: OrderStatus.IN_PROGRESS,
    OrderStatus.IN_PROGRESS: OrderStatus.READY_FOR_QC,
    OrderStatus.READY_FOR_QC: OrderStatus.READY_FOR_DELIVERY,
    OrderStatus.READY_FOR_DELIVERY: OrderStatus.DELIVERED,
}

REWORK = {
    (OrderStatus.READY_FOR_QC, OrderStatus.IN_PROGRESS),
    (OrderStatus.READY_FOR_DELIVERY, OrderStatus.IN_PROGRESS),
}

TERMINAL = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}


def is_allowed(old: OrderStatus, new: OrderStatus) -> bool:
    if new == OrderStatus.CANCELLED:
        return old not in TERMINAL
    return FORWARD.get(old) == new or (old, new) in REWORK


Result = Tuple[Order, List[LifecycleEvent]]


class LifecycleEngine:
    def __init__(self, store: OrderStore, qc: QCChecklist, validator: Optional[Validator] = None):
        self.store = store
        self.qc = qc
        self.validator = validator or Validator()

    def create_order(self, session: Session, actor: Actor, data: OrderCreate) -> Result:
        self.store.require_role(actor, Role.DOCTOR)
        checked = self.validator.ensure(self.validator.validate_order(data))
        if checked["warnings"]:
            logger.info("Order for doctor=%s accepted with warnings=%s", actor.actor_id, checked["warnings"])

        now = utcnow()
        order = Order(
            status=OrderStatus.PENDING,
            restoration_type=data.restoration_type,
            urgency=data.urgency,
            patient_name=data.patient_name.strip(),
            teeth_number=data.teeth_number,
            doctor_id=actor.actor_id,
            assigned_lab_id=data.assigned_lab_id,
            auto_assign_pending=data.auto_assign_pending,
            target_budget=data.target_budget,
            expected_delivery_date=data.expected_delivery_date,
            created_at=now,
            status_updated_at=now,
        )
        self.store.save(session, order)
        self.store.append_history(session, order, None, actor.actor_id, "order created")

        events = [
            LifecycleEvent(
                order_id=order.id,
                type=EventType.ORDER_CREATED,
                actor_id=actor.actor_id,
                new_status=order.status,
                source_event=SourceEvent.ORDER_CREATED,
                lab_id=order.assigned_lab_id,
            )
        ]
        if order.marketplace_visible:
            events.append(LifecycleEvent(order_id=order.id, type=EventType.SUBMITTED_TO_MARKETPLACE, actor_id=actor.actor_id))
        logger.info("Created order id=%s doctor=%s lab=%s marketplace=%s", order.id, order.doctor_id, order.assigned_lab_id, order.auto_assign_pending)
        return order, events

    def _authorize_transition(self, session: Session, actor: Actor, order: Order, new_status: OrderStatus) -> None:
        if actor.is_admin:
            return
        if actor.role == Role.DOCTOR:
            self.store.require_owner(actor, order)
            if new_status != OrderStatus.CANCELLED:
                raise AuthorizationError("DoctorMayOnlyCancel", "doctors may only cancel their orders")
            return
        self.store.require_assigned_staff(session, actor, order)

    def update_status(
        self,
        session: Session,
        actor: Actor,
        order_id: int,
        new_status: OrderStatus,
        notes: Optional[str] = None,
    ) -> Result:
        order = self.store.get(session, order_id)
        self._authorize_transition(session, actor, order, new_status)

        old_status = order.status
        if not is_allowed(old_status, new_status):
            raise GuardViolation("InvalidTransition", f"cannot move order {order.id} from {old_status.value} to {new_status.value}")
        if new_status != OrderStatus.CANCELLED and order.assigned_lab_id is None:
            raise GuardViolation("NoLabAssigned", f"order {order.id} has no assigned lab")
        if old_status == OrderStatus.READY_FOR_QC and new_status == OrderStatus.READY_FOR_DELIVERY:
            if not self.qc.all_items_complete(order.id):
                logger.warning("QC incomplete, refusing ReadyForDelivery for order id=%s", order.id)
                raise GuardViolation("QCIncomplete", f"QC checklist for order {order.id} is not complete")

        order.status = new_status
        order.status_updated_at = utcnow()
        if new_status == OrderStatus.DELIVERED:
            order.delivery_pending_confirmation = True
        if new_status == OrderStatus.CANCELLED:
            order.auto_assign_pending = False
        self.store.save(session, order)
        self.store.append_history(session, order, old_status, actor.actor_id, notes)
        # open applications die with the order
        closed_labs = self.store.supersede_pending(session, order.id, actor.actor_id) if new_status == OrderStatus.CANCELLED else []

        events = [
            LifecycleEvent(
                order_id=order.id,
                type=EventType.STATUS_CHANGED,
                actor_id=actor.actor_id,
                old_status=old_status,
                new_status=new_status,
                lab_id=order.assigned_lab_id,
                note=notes,
            )
        ]
        events.extend(
            LifecycleEvent(order_id=order.id, type=EventType.APPLICATION_SUPERSEDED, actor_id=actor.actor_id, lab_id=lab_id) for lab_id in closed_labs
        )
        if (old_status, new_status) in REWORK:
            events.append(billing_event(order.id, actor.actor_id, SourceEvent.REWORK_DETECTED))
        logger.info("Order id=%s status %s -> %s by %s", order.id, old_status.value, new_status.value, actor.actor_id)
        return order, events

    def _require_awaiting_confirmation(self, order: Order) -> None:
        if order.status != OrderStatus.DELIVERED or not order.delivery_pending_confirmation:
            raise GuardViolation("NotAwaitingConfirmation", f"order {order.id} is not awaiting delivery confirmation")

    def confirm_delivery(self, session: Session, actor: Actor, order_id: int) -> Result:
        order = self.store.get(session, order_id)
        self.store.require_owner(actor, order)
        self._require_awaiting_confirmation(order)

        now = utcnow()
        order.delivery_pending_confirmation = False
        order.delivery_confirmed_at = now
        order.delivery_confirmed_by = actor.actor_id
        order.actual_delivery_date = now.date()
        self.store.save(session, order)

        events = [
            LifecycleEvent(
                order_id=order.id,
                type=EventType.DELIVERY_CONFIRMED,
                actor_id=actor.actor_id,
                new_status=order.status,
                source_event=SourceEvent.DELIVERY_CONFIRMED,
                lab_id=order.assigned_lab_id,
            )
        ]
        if order.expected_delivery_date is not None:
            events.append(billing_event(order.id, actor.actor_id, SourceEvent.SLA_CALCULATION))
        logger.info("Delivery confirmed order id=%s by %s", order.id, actor.actor_id)
        return order, events

    def report_delivery_issue(self, session: Session, actor: Actor, order_id: int, description: str) -> Result:
        # no state change: the order stays Delivered with confirmation pending
        order = self.store.get(session, order_id)
        self.store.require_owner(actor, order)
        self._require_awaiting_confirmation(order)
        if not description or not description.strip():
            raise ValidationError("missing_description", "describe the delivery issue")

        body = f"Delivery issue reported: {description.strip()}"
        self.store.add_note(session, order, actor.actor_id, body)
        logger.warning("Delivery issue reported for order id=%s by %s", order.id, actor.actor_id)
        return order, [
            LifecycleEvent(order_id=order.id, type=EventType.NOTE_ADDED, actor_id=actor.actor_id, lab_id=order.assigned_lab_id, note=body)
        ]

    def add_note(self, session: Session, actor: Actor, order_id: int, body: str) -> Result:
        order = self.store.get(session, order_id)
        self.store.require_party(session, actor, order)
        if not body or not body.strip():
            raise ValidationError("empty_note", "note body is empty")
        self.store.add_note(session, order, actor.actor_id, body.strip())
        return order, [
            LifecycleEvent(order_id=order.id, type=EventType.NOTE_ADDED, actor_id=actor.actor_id, lab_id=order.assigned_lab_id, note=body.strip())
        ]
