from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from labflow.api.deps import get_actor, get_desk
from labflow.models.actor import Actor
from labflow.services.commands import OrderDesk

router = APIRouter()


class ApplicationCreate(BaseModel):
    proposed_fee: Optional[Decimal] = None


@router.get("/orders")
def list_marketplace(actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    """Orders open for applications, minus those that rejected the caller's lab."""
    return desk.marketplace_orders(actor)


@router.get("/orders/{order_id}/applications")
def list_applications(order_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.order_applications(actor, order_id)


@router.post("/orders/{order_id}/applications", status_code=201)
def apply_to_order(
    order_id: int,
    body: Optional[ApplicationCreate] = None,
    actor: Actor = Depends(get_actor),
    desk: OrderDesk = Depends(get_desk),
):
    fee = body.proposed_fee if body is not None else None
    return desk.apply_to_order(actor, order_id, fee)


@router.post("/applications/{application_id}/accept")
def accept_application(application_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.accept_application(actor, application_id)


@router.post("/applications/{application_id}/reject")
def reject_application(application_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.reject_application(actor, application_id)
