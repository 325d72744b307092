from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from labflow.api.deps import get_actor, get_desk
from labflow.models.actor import Actor
from labflow.models.order import OrderCreate, OrderStatus
from labflow.services.commands import OrderDesk

router = APIRouter()


class StatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class NoteCreate(BaseModel):
    body: str


class DeliveryIssue(BaseModel):
    description: str


@router.post("", status_code=201)
def create_order(data: OrderCreate, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    """Create an order, either pre-assigned to a lab or open for the marketplace."""
    return desk.create_order(actor, data)


@router.get("/{order_id}")
def get_order(order_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.get_order(actor, order_id)


@router.get("/{order_id}/history")
def get_history(order_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.order_history(actor, order_id)


@router.post("/{order_id}/status")
def update_status(order_id: int, upd: StatusUpdate, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.update_status(actor, order_id, upd.status, upd.notes)


@router.post("/{order_id}/marketplace")
def submit_to_marketplace(order_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.submit_to_marketplace(actor, order_id)


@router.post("/{order_id}/delivery/confirm")
def confirm_delivery(order_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.confirm_delivery(actor, order_id)


@router.post("/{order_id}/delivery/issue")
def report_delivery_issue(order_id: int, issue: DeliveryIssue, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    # the order keeps waiting for confirmation; only a note is added
    return desk.report_delivery_issue(actor, order_id, issue.description)


@router.get("/{order_id}/notes")
def list_notes(order_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.order_notes(actor, order_id)


@router.post("/{order_id}/notes", status_code=201)
def add_note(order_id: int, note: NoteCreate, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.add_note(actor, order_id, note.body)
