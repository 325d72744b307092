"""Command surface of the order core.

Every command runs in one database transaction. The lifecycle events a command
produces are billed and turned into notification rows inside that transaction;
push delivery and change-feed publication happen only after it commits.
"""
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
import logging

from sqlmodel import Session

from labflow.db.session import Database
from labflow.errors import AuthorizationError, LabflowError, ValidationError
from labflow.models.actor import Actor, Role
from labflow.models.audit import AuditLogEntry
from labflow.models.billing import Invoice, InvoiceLineItem, PricingRule, PricingRuleUpsert, SourceEvent
from labflow.models.marketplace import LabMember, MarketplaceApplication
from labflow.models.notification import NotificationRecord
from labflow.models.order import Order, OrderCreate, OrderNote, OrderStatus, OrderStatusHistory
from labflow.services.audit import AuditLog
from labflow.services.changefeed import ChangeFeed, ChangeRecord
from labflow.services.events import EventType, LifecycleEvent
from labflow.services.invoicing import InvoiceService
from labflow.services.lifecycle import LifecycleEngine
from labflow.services.marketplace import MarketplaceMatcher
from labflow.services.notifications import NotificationDispatcher, PushMessage, PushTransport
from labflow.services.pricing import PriceEngine
from labflow.services.qc import HttpQCChecklist, QCChecklist
from labflow.services.store import OrderStore
from labflow.services.validation import Validator

logger = logging.getLogger(__name__)

# events a caller may record explicitly; AdminOverride has its own command
EXPLICIT_BILLING_EVENTS = {
    SourceEvent.ORDER_CREATED,
    SourceEvent.LAB_ACCEPTED,
    SourceEvent.DELIVERY_CONFIRMED,
    SourceEvent.FEEDBACK_APPROVED,
    SourceEvent.REWORK_DETECTED,
    SourceEvent.SLA_CALCULATION,
}


def _invoice_change(invoice: Invoice) -> ChangeRecord:
    return ChangeRecord("invoice", invoice.id, invoice.version, {"status": invoice.status.value, "final_total": str(invoice.final_total)})


class OrderDesk:
    def __init__(
        self,
        database: Database,
        qc: QCChecklist,
        transport: Optional[PushTransport] = None,
        feed: Optional[ChangeFeed] = None,
        engine: Optional[PriceEngine] = None,
    ):
        self.db = database
        self.store = OrderStore()
        self.validator = Validator()
        self.audit = AuditLog()
        self.lifecycle = LifecycleEngine(self.store, qc, self.validator)
        self.marketplace = MarketplaceMatcher(self.store)
        self.invoices = InvoiceService(self.store, self.audit, engine, self.validator)
        self.notifications = NotificationDispatcher(self.store, transport)
        self.feed = feed or ChangeFeed()

    @classmethod
    def create(
        cls,
        database: Optional[Database] = None,
        qc: Optional[QCChecklist] = None,
        transport: Optional[PushTransport] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> "OrderDesk":
        database = database or Database.from_url()
        database.create_all()
        desk = cls(database, qc or HttpQCChecklist(), transport, feed)
        logger.info("OrderDesk ready on %s", database.engine.url)
        return desk

    def close(self) -> None:
        self.feed.close()
        self.db.dispose()
        logger.info("OrderDesk closed")

    # plumbing

    def _process(self, session: Session, order: Order, events: List[LifecycleEvent]) -> Tuple[List[PushMessage], List[ChangeRecord]]:
        messages: List[PushMessage] = []
        changes: List[ChangeRecord] = []
        for event in events:
            if event.billable:
                invoice, _ = self.invoices.apply_event(session, order, event.source_event, event.actor_id)
                changes.append(_invoice_change(invoice))
            messages.extend(self.notifications.dispatch(session, order, event))
        changes.append(
            ChangeRecord(
                "order",
                order.id,
                order.version,
                {"status": order.status.value, "assigned_lab_id": order.assigned_lab_id, "auto_assign_pending": order.auto_assign_pending},
            )
        )
        changes.extend(ChangeRecord("notification", m.notification_id, 1, {"user_id": m.recipient_id}) for m in messages)
        return messages, changes

    def _run(self, work: Callable[[Session], tuple], audit: Optional[Tuple[Actor, str, str, Optional[object]]] = None):
        """Run ``work`` in a transaction.

        ``work`` returns (result, order, events); order may be None for commands
        without order events. ``audit`` marks a privileged command: (actor, action,
        entity_type, entity_id) is recorded with outcome=failed when it fails.
        """
        try:
            with self.db.transaction() as session:
                result, order, events = work(session)
                messages, changes = self._process(session, order, events) if order is not None else ([], [])
                if isinstance(result, Invoice):
                    changes.append(_invoice_change(result))
        except LabflowError as e:
            if audit is not None:
                self._audit_failure(audit, e)
            raise
        self.notifications.deliver(messages)
        for change in changes:
            self.feed.publish(change)
        return result

    def _audit_failure(self, audit: Tuple[Actor, str, str, Optional[object]], error: LabflowError) -> None:
        actor, action, entity_type, entity_id = audit
        try:
            with self.db.transaction() as session:
                self.audit.record(session, actor.actor_id, action, entity_type, entity_id, reason=f"{error.kind}: {error.reason}", outcome="failed")
        except LabflowError:
            logger.exception("Could not record failed %s on %s:%s by %s", action, entity_type, entity_id, actor.actor_id)

    # order lifecycle

    def create_order(self, actor: Actor, data: OrderCreate) -> Order:
        def work(session):
            order, events = self.lifecycle.create_order(session, actor, data)
            return order, order, events

        return self._run(work)

    def update_status(self, actor: Actor, order_id: int, new_status: OrderStatus, notes: Optional[str] = None) -> Order:
        def work(session):
            order, events = self.lifecycle.update_status(session, actor, order_id, new_status, notes)
            return order, order, events

        return self._run(work)

    def confirm_delivery(self, actor: Actor, order_id: int) -> Order:
        def work(session):
            order, events = self.lifecycle.confirm_delivery(session, actor, order_id)
            return order, order, events

        return self._run(work)

    def report_delivery_issue(self, actor: Actor, order_id: int, description: str) -> Order:
        def work(session):
            order, events = self.lifecycle.report_delivery_issue(session, actor, order_id, description)
            return order, order, events

        return self._run(work)

    def add_note(self, actor: Actor, order_id: int, body: str) -> Order:
        def work(session):
            order, events = self.lifecycle.add_note(session, actor, order_id, body)
            return order, order, events

        return self._run(work)

    # marketplace

    def submit_to_marketplace(self, actor: Actor, order_id: int) -> Order:
        def work(session):
            order, events = self.marketplace.submit(session, actor, order_id)
            return order, order, events

        return self._run(work)

    def apply_to_order(self, actor: Actor, order_id: int, proposed_fee: Optional[Decimal] = None) -> MarketplaceApplication:
        def work(session):
            application, events = self.marketplace.apply(session, actor, order_id, proposed_fee)
            return application, self.store.get(session, order_id), events

        return self._run(work)

    def accept_application(self, actor: Actor, application_id: int) -> MarketplaceApplication:
        def work(session):
            application, order, events = self.marketplace.accept(session, actor, application_id)
            return application, order, events

        return self._run(work)

    def reject_application(self, actor: Actor, application_id: int) -> MarketplaceApplication:
        def work(session):
            application, events = self.marketplace.reject(session, actor, application_id)
            return application, self.store.get(session, application.order_id), events

        return self._run(work)

    # invoicing

    def record_billing_event(self, actor: Actor, order_id: int, source_event: SourceEvent) -> Invoice:
        def work(session):
            self.store.require_role(actor, Role.ADMIN)
            if source_event not in EXPLICIT_BILLING_EVENTS:
                raise ValidationError("unsupported_source_event", f"{source_event.value} cannot be recorded directly")
            order = self.store.get(session, order_id)
            invoice, _ = self.invoices.apply_event(session, order, source_event, actor.actor_id)
            return invoice, order, []

        return self._run(work)

    def raise_dispute(self, actor: Actor, invoice_id: int, reason: str) -> Invoice:
        def work(session):
            invoice = self.invoices.raise_dispute(session, actor, invoice_id, reason)
            order = self.store.get(session, invoice.order_id)
            return invoice, order, [LifecycleEvent(order_id=order.id, type=EventType.DISPUTE_RAISED, actor_id=actor.actor_id, note=invoice.dispute_reason)]

        return self._run(work, audit=(actor, "disputed", "invoice", invoice_id))

    def resolve_dispute(
        self,
        actor: Actor,
        invoice_id: int,
        resolution_action: str,
        notes: Optional[str] = None,
        adjustment_amount: Optional[Decimal] = None,
    ) -> Invoice:
        def work(session):
            invoice = self.invoices.resolve_dispute(session, actor, invoice_id, resolution_action, notes, adjustment_amount)
            order = self.store.get(session, invoice.order_id)
            return invoice, order, [LifecycleEvent(order_id=order.id, type=EventType.DISPUTE_RESOLVED, actor_id=actor.actor_id, note=notes)]

        return self._run(work, audit=(actor, "dispute_resolved", "invoice", invoice_id))

    def admin_override(self, actor: Actor, invoice_id: int, description: str, amount: Decimal, quantity: int = 1) -> InvoiceLineItem:
        def work(session):
            item = self.invoices.admin_override(session, actor, invoice_id, description, amount, quantity)
            return item, None, []

        return self._run(work, audit=(actor, "line_added", "invoice", invoice_id))

    def lock_invoice(self, actor: Actor, invoice_id: int) -> Invoice:
        return self._run(lambda session: (self.invoices.lock(session, actor, invoice_id), None, []), audit=(actor, "locked", "invoice", invoice_id))

    def finalize_invoice(self, actor: Actor, invoice_id: int) -> Invoice:
        return self._run(lambda session: (self.invoices.finalize(session, actor, invoice_id), None, []), audit=(actor, "finalized", "invoice", invoice_id))

    def upsert_pricing_rule(self, actor: Actor, data: PricingRuleUpsert) -> PricingRule:
        action = "rule_updated" if data.id is not None else "rule_created"
        return self._run(lambda session: (self.invoices.upsert_rule(session, actor, data), None, []), audit=(actor, action, "pricing_rule", data.id))

    def delete_pricing_rule(self, actor: Actor, rule_id: int) -> None:
        return self._run(lambda session: (self.invoices.delete_rule(session, actor, rule_id), None, []), audit=(actor, "rule_deleted", "pricing_rule", rule_id))

    # lab membership

    def upsert_lab_member(self, actor: Actor, lab_id: str, user_id: str, onboarding_completed: bool) -> LabMember:
        def work(session):
            self.store.require_role(actor, Role.ADMIN)
            if not lab_id or not user_id:
                raise ValidationError("missing_lab_or_user", "lab id and user id are required")
            member = self.store.member(session, user_id)
            old_values = None
            if member is None:
                member = LabMember(user_id=user_id, lab_id=lab_id)
            else:
                old_values = {"lab_id": member.lab_id, "onboarding_completed": member.onboarding_completed}
            member.lab_id = lab_id
            member.onboarding_completed = onboarding_completed
            session.add(member)
            session.flush()
            self.audit.record(
                session,
                actor.actor_id,
                "member_upserted",
                "lab_member",
                user_id,
                old_values=old_values,
                new_values={"lab_id": lab_id, "onboarding_completed": onboarding_completed},
            )
            return member, None, []

        return self._run(work, audit=(actor, "member_upserted", "lab_member", user_id))

    # queries

    def get_order(self, actor: Actor, order_id: int) -> Order:
        with self.db.transaction() as session:
            order = self.store.get(session, order_id)
            self._require_viewer(session, actor, order)
            return order

    def _require_viewer(self, session: Session, actor: Actor, order: Order) -> None:
        try:
            self.store.require_party(session, actor, order)
        except AuthorizationError:
            # onboarded labs may look at orders open in the marketplace, unless rejected for it
            member = self.store.member(session, actor.actor_id) if actor.role == Role.LAB_STAFF else None
            if not (order.marketplace_visible and member is not None and member.onboarding_completed):
                raise
            if self.marketplace.was_rejected(session, order.id, member.lab_id):
                raise

    def order_history(self, actor: Actor, order_id: int) -> List[OrderStatusHistory]:
        with self.db.transaction() as session:
            self.store.require_party(session, actor, self.store.get(session, order_id))
            return self.store.history(session, order_id)

    def order_notes(self, actor: Actor, order_id: int) -> List[OrderNote]:
        with self.db.transaction() as session:
            self.store.require_party(session, actor, self.store.get(session, order_id))
            return self.store.notes(session, order_id)

    def marketplace_orders(self, actor: Actor) -> List[Order]:
        with self.db.transaction() as session:
            return self.marketplace.list_visible(session, actor)

    def order_applications(self, actor: Actor, order_id: int) -> List[MarketplaceApplication]:
        with self.db.transaction() as session:
            return self.marketplace.applications(session, actor, order_id)

    def invoice_for_order(self, actor: Actor, order_id: int) -> Tuple[Optional[Invoice], List[InvoiceLineItem]]:
        with self.db.transaction() as session:
            self.store.require_party(session, actor, self.store.get(session, order_id))
            invoice = self.invoices.for_order(session, order_id)
            if invoice is None:
                return None, []
            return invoice, self.invoices.line_items(session, invoice.id)

    def pricing_rules(self, actor: Actor) -> List[PricingRule]:
        self.store.require_role(actor, Role.ADMIN)
        with self.db.transaction() as session:
            return self.invoices.list_rules(session)

    def audit_entries(self, actor: Actor, entity_type: Optional[str] = None, entity_id: Optional[str] = None) -> List[AuditLogEntry]:
        self.store.require_role(actor, Role.ADMIN)
        with self.db.transaction() as session:
            return self.audit.entries(session, entity_type, entity_id)

    def notifications_for(self, actor: Actor, unread_only: bool = False) -> List[NotificationRecord]:
        with self.db.transaction() as session:
            return self.notifications.inbox(session, actor.actor_id, unread_only)

    def mark_notification_read(self, actor: Actor, notification_id: int) -> NotificationRecord:
        with self.db.transaction() as session:
            return self.notifications.mark_read(session, actor.actor_id, notification_id)
