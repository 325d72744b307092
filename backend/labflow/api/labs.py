from fastapi import APIRouter, Depends
from pydantic import BaseModel

from labflow.api.deps import get_actor, get_desk
from labflow.models.actor import Actor
from labflow.services.commands import OrderDesk

router = APIRouter()
audit_router = APIRouter()


class MembershipUpdate(BaseModel):
    onboarding_completed: bool = False


@router.put("/{lab_id}/members/{user_id}")
def upsert_member(lab_id: str, user_id: str, body: MembershipUpdate, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    """Mirror of the onboarding service: which lab a staff account belongs to and whether it may use the marketplace."""
    return desk.upsert_lab_member(actor, lab_id, user_id, body.onboarding_completed)


@audit_router.get("")
def audit_log(entity_type: str = None, entity_id: str = None, actor: Actor = Depends(get_actor), desk: OrderDesk = Depends(get_desk)):
    return desk.audit_entries(actor, entity_type, entity_id)
