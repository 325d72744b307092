from decimal import Decimal
from typing import List, Optional, Tuple
import logging

from sqlalchemy import update
from sqlmodel import Session, col, select

from labflow.errors import ConflictError, GuardViolation, NotFoundError, ValidationError
from labflow.models.actor import Actor, Role
from labflow.models.billing import SourceEvent
from labflow.models.marketplace import ApplicationStatus, LabMember, MarketplaceApplication
from labflow.models.order import Order, OrderStatus, utcnow
from labflow.services.events import EventType, LifecycleEvent
from labflow.services.store import OrderStore

logger = logging.getLogger(__name__)


class MarketplaceMatcher:
    """Open-marketplace matching: labs apply for unassigned orders, the doctor picks one.

    Accepting is the only compare-and-swap in the system. The order assignment and
    the application status flip are two conditional UPDATEs in the caller's
    transaction; if either matches no row the caller gets ConflictError(AlreadyAssigned)
    and the transaction is rolled back.
    """

    def __init__(self, store: OrderStore):
        self.store = store

    def _eligible_member(self, session: Session, actor: Actor) -> LabMember:
        self.store.require_role(actor, Role.LAB_STAFF)
        member = self.store.member(session, actor.actor_id)
        if member is None or not member.onboarding_completed:
            raise GuardViolation("NotOnboarded", f"lab staff {actor.actor_id} has not completed onboarding")
        return member

    def _get_application(self, session: Session, application_id: int) -> MarketplaceApplication:
        application = session.get(MarketplaceApplication, application_id)
        if application is None:
            raise NotFoundError("ApplicationNotFound", f"application {application_id} not found")
        return application

    def was_rejected(self, session: Session, order_id: int, lab_id: str) -> bool:
        stmt = select(MarketplaceApplication.id).where(
            MarketplaceApplication.order_id == order_id,
            MarketplaceApplication.lab_id == lab_id,
            MarketplaceApplication.status == ApplicationStatus.REJECTED,
        )
        return session.exec(stmt).first() is not None

    def list_visible(self, session: Session, actor: Actor) -> List[Order]:
        member = self._eligible_member(session, actor)
        rejected = select(MarketplaceApplication.order_id).where(
            MarketplaceApplication.lab_id == member.lab_id,
            MarketplaceApplication.status == ApplicationStatus.REJECTED,
        )
        stmt = (
            select(Order)
            .where(
                Order.auto_assign_pending == True,  # noqa: E712
                col(Order.assigned_lab_id).is_(None),
                Order.status == OrderStatus.PENDING,
                col(Order.id).not_in(rejected),
            )
            .order_by(Order.created_at, Order.id)
        )
        return list(session.exec(stmt).all())

    def applications(self, session: Session, actor: Actor, order_id: int) -> List[MarketplaceApplication]:
        order = self.store.get(session, order_id)
        stmt = select(MarketplaceApplication).where(MarketplaceApplication.order_id == order.id)
        if actor.role == Role.LAB_STAFF:
            member = self._eligible_member(session, actor)
            stmt = stmt.where(MarketplaceApplication.lab_id == member.lab_id)
        else:
            self.store.require_owner(actor, order)
        return list(session.exec(stmt.order_by(MarketplaceApplication.id)).all())

    def submit(self, session: Session, actor: Actor, order_id: int) -> Tuple[Order, List[LifecycleEvent]]:
        order = self.store.get(session, order_id)
        self.store.require_owner(actor, order)
        if order.assigned_lab_id is not None:
            raise ConflictError("AlreadyAssigned", f"order {order.id} is already assigned to lab {order.assigned_lab_id}")
        if order.status != OrderStatus.PENDING:
            raise GuardViolation("NotPending", f"order {order.id} is {order.status.value}")
        if order.auto_assign_pending:
            return order, []

        order.auto_assign_pending = True
        self.store.save(session, order)
        logger.info("Order id=%s submitted to marketplace", order.id)
        return order, [LifecycleEvent(order_id=order.id, type=EventType.SUBMITTED_TO_MARKETPLACE, actor_id=actor.actor_id)]

    def apply(
        self,
        session: Session,
        actor: Actor,
        order_id: int,
        proposed_fee: Optional[Decimal] = None,
    ) -> Tuple[MarketplaceApplication, List[LifecycleEvent]]:
        member = self._eligible_member(session, actor)
        order = self.store.get(session, order_id)

        # rejection is permanent; checked before anything else touches storage
        if self.was_rejected(session, order.id, member.lab_id):
            logger.warning("Lab %s re-applied to order id=%s after rejection", member.lab_id, order.id)
            raise ConflictError("AlreadyRejected", f"lab {member.lab_id} was rejected for order {order.id}")
        if not order.marketplace_visible or order.status != OrderStatus.PENDING:
            raise GuardViolation("NotVisible", f"order {order.id} is not open in the marketplace")

        pending = select(MarketplaceApplication.id).where(
            MarketplaceApplication.order_id == order.id,
            MarketplaceApplication.lab_id == member.lab_id,
            MarketplaceApplication.status == ApplicationStatus.PENDING,
        )
        if session.exec(pending).first() is not None:
            raise ConflictError("AlreadyApplied", f"lab {member.lab_id} already has a pending application for order {order.id}")
        if proposed_fee is not None and proposed_fee < 0:
            raise ValidationError("negative_proposed_fee", "proposed fee must not be negative")

        application = MarketplaceApplication(
            order_id=order.id,
            lab_id=member.lab_id,
            applied_by=actor.actor_id,
            proposed_fee=proposed_fee,
        )
        session.add(application)
        session.flush()
        logger.info("Lab %s applied to order id=%s application=%s", member.lab_id, order.id, application.id)
        return application, [
            LifecycleEvent(order_id=order.id, type=EventType.APPLICATION_SUBMITTED, actor_id=actor.actor_id, lab_id=member.lab_id)
        ]

    def accept(self, session: Session, actor: Actor, application_id: int) -> Tuple[MarketplaceApplication, Order, List[LifecycleEvent]]:
        application = self._get_application(session, application_id)
        order = self.store.get(session, application.order_id)
        self.store.require_owner(actor, order)
        now = utcnow()

        values = {"assigned_lab_id": application.lab_id, "auto_assign_pending": False, "version": Order.version + 1}
        if application.proposed_fee is not None:
            values["agreed_fee"] = application.proposed_fee
        assigned = session.exec(
            update(Order)
            .where(
                Order.id == order.id,
                col(Order.assigned_lab_id).is_(None),
                Order.status == OrderStatus.PENDING,
                Order.auto_assign_pending == True,  # noqa: E712
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if assigned.rowcount != 1:
            logger.warning("Accept lost the race: order id=%s already assigned or no longer open", order.id)
            raise ConflictError("AlreadyAssigned", f"order {order.id} is already assigned")

        flipped = session.exec(
            update(MarketplaceApplication)
            .where(MarketplaceApplication.id == application.id, MarketplaceApplication.status == ApplicationStatus.PENDING)
            .values(status=ApplicationStatus.ACCEPTED, decided_at=now, decided_by=actor.actor_id)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            logger.warning("Accept refused: application id=%s is no longer pending", application.id)
            raise ConflictError("AlreadyAssigned", f"application {application.id} is no longer pending")

        losers = self.store.supersede_pending(session, order.id, actor.actor_id, keep_id=application.id)
        session.refresh(order)
        session.refresh(application)
        self.store.check_invariants(order)

        events = [
            LifecycleEvent(
                order_id=order.id,
                type=EventType.APPLICATION_ACCEPTED,
                actor_id=actor.actor_id,
                lab_id=application.lab_id,
                source_event=SourceEvent.LAB_ACCEPTED,
            )
        ]
        events.extend(
            LifecycleEvent(order_id=order.id, type=EventType.APPLICATION_SUPERSEDED, actor_id=actor.actor_id, lab_id=lab_id)
            for lab_id in losers
        )
        logger.info("Order id=%s assigned to lab %s via application %s, superseded=%s", order.id, application.lab_id, application.id, len(losers))
        return application, order, events

    def reject(self, session: Session, actor: Actor, application_id: int) -> Tuple[MarketplaceApplication, List[LifecycleEvent]]:
        application = self._get_application(session, application_id)
        order = self.store.get(session, application.order_id)
        self.store.require_owner(actor, order)

        result = session.exec(
            update(MarketplaceApplication)
            .where(MarketplaceApplication.id == application.id, MarketplaceApplication.status == ApplicationStatus.PENDING)
            .values(status=ApplicationStatus.REJECTED, decided_at=utcnow(), decided_by=actor.actor_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("AlreadyDecided", f"application {application.id} is {application.status.value}")
        session.refresh(application)
        logger.info("Rejected application id=%s lab=%s order=%s", application.id, application.lab_id, order.id)
        return application, [
            LifecycleEvent(order_id=order.id, type=EventType.APPLICATION_REJECTED, actor_id=actor.actor_id, lab_id=application.lab_id)
        ]
