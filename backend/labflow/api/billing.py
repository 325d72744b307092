from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from labflow.api.deps import get_actor, get_desk
from labflow.errors import NotFoundError
from labflow.models.actor import Actor
from labflow.models.billing import PricingRuleUpsert, SourceEvent
from labflow.services.commands import OrderDesk

router = APIRouter()
rules_router = APIRouter()


class BillingEvent(BaseModel):
    source_event: SourceEvent


class DisputeCreate(BaseModel):
    reason: str


class DisputeResolution(BaseModel):
    resolution_action: str
    notes: Optional[str] = None
    adjustment_amount: Optional[Decimal] = None


class OverrideCreate(BaseModel):
    description: str
    amount: Decimal
    quantity: int = 1


@router.get("/orders/{order_id}")
def get_invoice(order_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    invoice, items = desk.invoice_for_order(actor, order_id)
    if invoice is None:
        raise NotFoundError("InvoiceNotFound", f"order {order_id} has no invoice yet")
    return {"invoice": invoice, "line_items": items}


@router.post("/orders/{order_id}/events")
def record_billing_event(order_id: int, event: BillingEvent, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.record_billing_event(actor, order_id, event.source_event)


@router.post("/{invoice_id}/dispute")
def raise_dispute(invoice_id: int, body: DisputeCreate, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.raise_dispute(actor, invoice_id, body.reason)


@router.post("/{invoice_id}/dispute/resolve")
def resolve_dispute(invoice_id: int, body: DisputeResolution, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.resolve_dispute(actor, invoice_id, body.resolution_action, body.notes, body.adjustment_amount)


@router.post("/{invoice_id}/overrides", status_code=201)
def admin_override(invoice_id: int, body: OverrideCreate, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.admin_override(actor, invoice_id, body.description, body.amount, body.quantity)


@router.post("/{invoice_id}/lock")
def lock_invoice(invoice_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.lock_invoice(actor, invoice_id)


@router.post("/{invoice_id}/finalize")
def finalize_invoice(invoice_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.finalize_invoice(actor, invoice_id)


@rules_router.get("")
def list_rules(actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.pricing_rules(actor)


@rules_router.put("")
def upsert_rule(data: PricingRuleUpsert, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.upsert_pricing_rule(actor, data)


@rules_router.delete("/{rule_id}", status_code=204)
def delete_rule(rule_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    desk.delete_pricing_rule(actor, rule_id)
