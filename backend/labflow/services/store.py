from typing import List, Optional
import logging

from sqlalchemy import update
from sqlmodel import Session, select

from labflow.errors import AuthorizationError, NotFoundError, ValidationError
from labflow.models.actor import Actor, Role
from labflow.models.marketplace import ApplicationStatus, LabMember, MarketplaceApplication
from labflow.models.order import Order, OrderNote, OrderStatus, OrderStatusHistory, utcnow

logger = logging.getLogger(__name__)


class OrderStore:
    """Reads and writes order rows; enforces the order invariants at the write boundary."""

    def get(self, session: Session, order_id: int) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError("OrderNotFound", f"order {order_id} not found")
        return order

    def check_invariants(self, order: Order) -> None:
        if order.assigned_lab_id is not None and order.auto_assign_pending:
            raise ValidationError("AssignedOrderInMarketplace", f"order {order.id} is assigned and still marked for marketplace")
        if order.delivery_pending_confirmation and order.status != OrderStatus.DELIVERED:
            raise ValidationError("PendingConfirmationNotDelivered", f"order {order.id} awaits confirmation but is {order.status.value}")

    def save(self, session: Session, order: Order) -> Order:
        self.check_invariants(order)
        if order.id is not None:
            order.version += 1
        session.add(order)
        session.flush()
        return order

    def supersede_pending(self, session: Session, order_id: int, decided_by: str, keep_id: Optional[int] = None) -> List[str]:
        """Close every Pending application of an order except ``keep_id``; returns the affected lab ids."""
        conditions = [MarketplaceApplication.order_id == order_id, MarketplaceApplication.status == ApplicationStatus.PENDING]
        if keep_id is not None:
            conditions.append(MarketplaceApplication.id != keep_id)
        lab_ids = session.exec(select(MarketplaceApplication.lab_id).where(*conditions)).all()
        session.exec(
            update(MarketplaceApplication)
            .where(*conditions)
            .values(status=ApplicationStatus.SUPERSEDED, decided_at=utcnow(), decided_by=decided_by)
            .execution_options(synchronize_session=False)
        )
        return sorted(set(lab_ids))

    def append_history(
        self,
        session: Session,
        order: Order,
        old_status: Optional[OrderStatus],
        changed_by: str,
        notes: Optional[str] = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order.id,
            old_status=old_status,
            new_status=order.status,
            changed_by=changed_by,
            changed_at=utcnow(),
            notes=notes,
        )
        session.add(entry)
        return entry

    def history(self, session: Session, order_id: int) -> List[OrderStatusHistory]:
        stmt = select(OrderStatusHistory).where(OrderStatusHistory.order_id == order_id).order_by(OrderStatusHistory.id)
        return list(session.exec(stmt).all())

    def add_note(self, session: Session, order: Order, author_id: str, body: str) -> OrderNote:
        note = OrderNote(order_id=order.id, author_id=author_id, body=body)
        session.add(note)
        session.flush()
        return note

    def notes(self, session: Session, order_id: int) -> List[OrderNote]:
        stmt = select(OrderNote).where(OrderNote.order_id == order_id).order_by(OrderNote.id)
        return list(session.exec(stmt).all())

    # lab membership (facts owned by the onboarding service)

    def member(self, session: Session, user_id: str) -> Optional[LabMember]:
        return session.get(LabMember, user_id)

    def lab_staff_ids(self, session: Session, lab_id: Optional[str]) -> List[str]:
        if lab_id is None:
            return []
        stmt = select(LabMember.user_id).where(LabMember.lab_id == lab_id).order_by(LabMember.user_id)
        return list(session.exec(stmt).all())

    def all_lab_staff_ids(self, session: Session) -> List[str]:
        stmt = select(LabMember.user_id).where(LabMember.onboarding_completed == True).order_by(LabMember.user_id)  # noqa: E712
        return list(session.exec(stmt).all())

    # row-level authorization

    def require_role(self, actor: Actor, *roles: Role) -> None:
        if actor.role not in roles:
            raise AuthorizationError("RoleNotAllowed", f"role {actor.role.value} may not perform this action")

    def require_owner(self, actor: Actor, order: Order) -> None:
        if actor.is_admin:
            return
        if actor.role != Role.DOCTOR or order.doctor_id != actor.actor_id:
            raise AuthorizationError("NotOrderOwner", f"actor {actor.actor_id} does not own order {order.id}")

    def require_assigned_staff(self, session: Session, actor: Actor, order: Order) -> LabMember:
        member = self.member(session, actor.actor_id) if actor.role == Role.LAB_STAFF else None
        if member is None or order.assigned_lab_id is None or member.lab_id != order.assigned_lab_id:
            raise AuthorizationError("NotAssignedLab", f"actor {actor.actor_id} is not staff of the lab assigned to order {order.id}")
        return member

    def require_party(self, session: Session, actor: Actor, order: Order) -> None:
        """Doctor owner, assigned lab staff or admin."""
        if actor.is_admin or (actor.role == Role.DOCTOR and order.doctor_id == actor.actor_id):
            return
        self.require_assigned_staff(session, actor, order)
