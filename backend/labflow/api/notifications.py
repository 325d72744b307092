from fastapi import APIRouter, Depends

from labflow.api.deps import get_actor, get_desk
from labflow.models.actor import Actor
from labflow.services.commands import OrderDesk

router = APIRouter()


@router.get("")
def inbox(unread_only: bool = False, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.notifications_for(actor, unread_only)


@router.post("/{notification_id}/read")
def mark_read(notification_id: int, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.mark_notification_read(actor, notification_id)
