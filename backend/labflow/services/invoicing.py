from dataclasses import asdict
from decimal import Decimal
from typing import List, Optional, Tuple
import logging

from sqlalchemy import delete
from sqlmodel import Session, select

from labflow.errors import ConflictError, GuardViolation, NotFoundError
from labflow.models.actor import Actor, Role
from labflow.models.billing import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    PricingRule,
    PricingRuleUpsert,
    SourceEvent,
)
from labflow.models.order import Order, utcnow
from labflow.services.audit import AuditLog
from labflow.services.pricing import PriceBreakdown, PriceEngine, money
from labflow.services.store import OrderStore
from labflow.services.validation import Validator

logger = logging.getLogger(__name__)


class InvoiceService:
    """Invoice rows, billing on lifecycle events, disputes and pricing-rule administration.

    Line items come from two places only: the price engine (one recomputation per
    billable event, replacing the previous rule-derived lines) and AdminOverride.
    A disputed invoice accepts neither until an admin resolves the dispute.
    """

    def __init__(self, store: OrderStore, audit: AuditLog, engine: Optional[PriceEngine] = None, validator: Optional[Validator] = None):
        self.store = store
        self.audit = audit
        self.engine = engine or PriceEngine()
        self.validator = validator or Validator()

    # lookups

    def get(self, session: Session, invoice_id: int) -> Invoice:
        invoice = session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("InvoiceNotFound", f"invoice {invoice_id} not found")
        return invoice

    def for_order(self, session: Session, order_id: int) -> Optional[Invoice]:
        return session.exec(select(Invoice).where(Invoice.order_id == order_id)).first()

    def line_items(self, session: Session, invoice_id: int) -> List[InvoiceLineItem]:
        stmt = select(InvoiceLineItem).where(InvoiceLineItem.invoice_id == invoice_id).order_by(InvoiceLineItem.id)
        return list(session.exec(stmt).all())

    def _number_for(self, order: Order) -> str:
        # one invoice per order, so the order id keeps numbers unique without a counter
        return f"INV-{utcnow():%Y%m}-{order.id:06d}"

    def _open(self, session: Session, order: Order, actor_id: str) -> Invoice:
        invoice = Invoice(order_id=order.id, invoice_number=self._number_for(order))
        session.add(invoice)
        session.flush()
        self.audit.record(session, actor_id, "created", "invoice", invoice.id, new_values={"order_id": order.id, "invoice_number": invoice.invoice_number})
        logger.info("Opened invoice %s for order id=%s", invoice.invoice_number, order.id)
        return invoice

    def _require_mutable(self, invoice: Invoice) -> None:
        if invoice.status == InvoiceStatus.DISPUTED:
            raise GuardViolation("InvoiceFrozen", f"invoice {invoice.id} is disputed and frozen")
        if invoice.status in (InvoiceStatus.LOCKED, InvoiceStatus.FINALIZED):
            raise GuardViolation("InvoiceLocked", f"invoice {invoice.id} is {invoice.status.value}")

    def _touch(self, session: Session, invoice: Invoice) -> None:
        invoice.version += 1
        invoice.updated_at = utcnow()
        session.add(invoice)

    def _recalculate(self, session: Session, invoice: Invoice) -> None:
        session.flush()
        total = sum((item.total_price for item in self.line_items(session, invoice.id)), Decimal("0.00"))
        invoice.subtotal = money(total)
        invoice.final_total = money(total)
        self._touch(session, invoice)
        session.flush()

    # billing

    def active_rules(self, session: Session) -> List[PricingRule]:
        return list(session.exec(select(PricingRule).where(PricingRule.is_active == True)).all())  # noqa: E712

    def apply_event(self, session: Session, order: Order, source_event: SourceEvent, actor_id: str) -> Tuple[Invoice, PriceBreakdown]:
        invoice = self.for_order(session, order.id)
        if invoice is None:
            invoice = self._open(session, order, actor_id)
        else:
            self._require_mutable(invoice)

        breakdown = self.engine.estimate(self.active_rules(session), order, source_event)
        session.exec(
            delete(InvoiceLineItem)
            .where(InvoiceLineItem.invoice_id == invoice.id, InvoiceLineItem.source_event != SourceEvent.ADMIN_OVERRIDE)
            .execution_options(synchronize_session=False)
        )
        for draft in breakdown.line_items:
            session.add(InvoiceLineItem(invoice_id=invoice.id, **asdict(draft)))

        if source_event == SourceEvent.DELIVERY_CONFIRMED and invoice.status == InvoiceStatus.DRAFT:
            invoice.status = InvoiceStatus.GENERATED
            invoice.generated_at = utcnow()
        self._recalculate(session, invoice)
        logger.info("Billed order id=%s event=%s lines=%s subtotal=%s", order.id, source_event.value, len(breakdown.line_items), breakdown.subtotal)
        return invoice, breakdown

    def admin_override(
        self,
        session: Session,
        actor: Actor,
        invoice_id: int,
        description: str,
        amount: Decimal,
        quantity: int = 1,
    ) -> InvoiceLineItem:
        self.store.require_role(actor, Role.ADMIN)
        invoice = self.get(session, invoice_id)
        self._require_mutable(invoice)
        self.validator.ensure(self.validator.validate_amount(amount))

        item = self._override_line(session, invoice, description or "Manual adjustment", amount, quantity)
        self._recalculate(session, invoice)
        self.audit.record(
            session,
            actor.actor_id,
            "line_added",
            "invoice",
            invoice.id,
            new_values={"description": item.description, "quantity": item.quantity, "total_price": str(item.total_price)},
        )
        return item

    def _override_line(self, session: Session, invoice: Invoice, description: str, amount: Decimal, quantity: int = 1) -> InvoiceLineItem:
        unit = money(amount)
        item = InvoiceLineItem(
            invoice_id=invoice.id,
            line_type="adjustment",
            description=description,
            quantity=quantity,
            unit_price=unit,
            total_price=money(unit * quantity),
            source_event=SourceEvent.ADMIN_OVERRIDE,
            rule_applied=None,
        )
        session.add(item)
        return item

    # disputes

    def raise_dispute(self, session: Session, actor: Actor, invoice_id: int, reason: str) -> Invoice:
        invoice = self.get(session, invoice_id)
        order = self.store.get(session, invoice.order_id)
        self.store.require_party(session, actor, order)
        self.validator.ensure(self.validator.validate_dispute_reason(reason))
        if invoice.status == InvoiceStatus.DISPUTED:
            raise GuardViolation("InvoiceFrozen", f"invoice {invoice.id} is already disputed")
        if invoice.status == InvoiceStatus.DRAFT:
            raise GuardViolation("InvoiceNotGenerated", f"invoice {invoice.id} is still a draft")

        previous = invoice.status
        invoice.status_before_dispute = previous
        invoice.status = InvoiceStatus.DISPUTED
        invoice.disputed_at = utcnow()
        invoice.dispute_reason = reason.strip()
        self._touch(session, invoice)
        self.audit.record(
            session,
            actor.actor_id,
            "disputed",
            "invoice",
            invoice.id,
            old_values={"status": previous.value},
            new_values={"status": InvoiceStatus.DISPUTED.value},
            reason=invoice.dispute_reason,
        )
        logger.warning("Invoice %s disputed by %s, frozen", invoice.invoice_number, actor.actor_id)
        return invoice

    def resolve_dispute(
        self,
        session: Session,
        actor: Actor,
        invoice_id: int,
        resolution_action: str,
        notes: Optional[str] = None,
        adjustment_amount: Optional[Decimal] = None,
    ) -> Invoice:
        self.store.require_role(actor, Role.ADMIN)
        invoice = self.get(session, invoice_id)
        if invoice.status != InvoiceStatus.DISPUTED:
            raise GuardViolation("NotDisputed", f"invoice {invoice.id} is not disputed")

        restored = invoice.status_before_dispute or InvoiceStatus.GENERATED
        invoice.status = restored
        invoice.status_before_dispute = None
        invoice.dispute_resolved_at = utcnow()
        invoice.dispute_resolved_by = actor.actor_id
        if adjustment_amount is not None and adjustment_amount != 0:
            self._override_line(session, invoice, f"Dispute resolution: {resolution_action}", adjustment_amount)
        self._recalculate(session, invoice)
        self.audit.record(
            session,
            actor.actor_id,
            "dispute_resolved",
            "invoice",
            invoice.id,
            old_values={"status": InvoiceStatus.DISPUTED.value},
            new_values={
                "status": restored.value,
                "resolution_action": resolution_action,
                "adjustment": str(adjustment_amount) if adjustment_amount is not None else None,
            },
            reason=notes,
        )
        logger.info("Invoice %s dispute resolved by %s -> %s", invoice.invoice_number, actor.actor_id, restored.value)
        return invoice

    def lock(self, session: Session, actor: Actor, invoice_id: int) -> Invoice:
        self.store.require_role(actor, Role.ADMIN)
        invoice = self.get(session, invoice_id)
        if invoice.status == InvoiceStatus.DISPUTED:
            raise GuardViolation("InvoiceFrozen", f"invoice {invoice.id} is disputed")
        if invoice.status not in (InvoiceStatus.DRAFT, InvoiceStatus.GENERATED):
            raise GuardViolation("InvalidInvoiceStatus", f"invoice {invoice.id} cannot be locked from {invoice.status.value}")
        return self._move(session, actor, invoice, InvoiceStatus.LOCKED, "locked")

    def finalize(self, session: Session, actor: Actor, invoice_id: int) -> Invoice:
        self.store.require_role(actor, Role.ADMIN)
        invoice = self.get(session, invoice_id)
        if invoice.status != InvoiceStatus.LOCKED:
            raise GuardViolation("InvalidInvoiceStatus", f"invoice {invoice.id} must be locked before finalizing")
        return self._move(session, actor, invoice, InvoiceStatus.FINALIZED, "finalized")

    def _move(self, session: Session, actor: Actor, invoice: Invoice, status: InvoiceStatus, action: str) -> Invoice:
        previous = invoice.status
        now = utcnow()
        invoice.status = status
        if status == InvoiceStatus.LOCKED:
            invoice.locked_at = now
        elif status == InvoiceStatus.FINALIZED:
            invoice.finalized_at = now
        self._touch(session, invoice)
        self.audit.record(session, actor.actor_id, action, "invoice", invoice.id, old_values={"status": previous.value}, new_values={"status": status.value})
        return invoice

    # pricing rule administration

    def list_rules(self, session: Session) -> List[PricingRule]:
        return list(session.exec(select(PricingRule).order_by(PricingRule.priority, PricingRule.id)).all())

    def upsert_rule(self, session: Session, actor: Actor, data: PricingRuleUpsert) -> PricingRule:
        self.store.require_role(actor, Role.ADMIN)
        self.validator.ensure(self.validator.validate_rule(data))

        same_name = session.exec(select(PricingRule).where(PricingRule.rule_name == data.rule_name)).first()
        if same_name is not None and same_name.id != data.id:
            raise ConflictError("DuplicateRuleName", f"a rule named {data.rule_name!r} already exists")

        if data.id is not None:
            rule = session.get(PricingRule, data.id)
            if rule is None:
                raise NotFoundError("RuleNotFound", f"pricing rule {data.id} not found")
            old_values = rule.snapshot()
            action = "rule_updated"
        else:
            rule = PricingRule(rule_name=data.rule_name, rule_type=data.rule_type, amount=data.amount)
            old_values = None
            action = "rule_created"

        for field in ("rule_name", "rule_type", "restoration_type", "urgency_level", "is_percentage", "priority", "is_active"):
            setattr(rule, field, getattr(data, field))
        rule.amount = money(data.amount)
        rule.updated_at = utcnow()
        session.add(rule)
        session.flush()
        self.audit.record(session, actor.actor_id, action, "pricing_rule", rule.id, old_values=old_values, new_values=rule.snapshot())
        return rule

    def delete_rule(self, session: Session, actor: Actor, rule_id: int) -> None:
        self.store.require_role(actor, Role.ADMIN)
        rule = session.get(PricingRule, rule_id)
        if rule is None:
            raise NotFoundError("RuleNotFound", f"pricing rule {rule_id} not found")
        old_values = rule.snapshot()
        session.delete(rule)
        session.flush()
        self.audit.record(session, actor.actor_id, "rule_deleted", "pricing_rule", rule_id, old_values=old_values)
