from fastapi import Header, Request

from labflow.errors import AuthorizationError
from labflow.models.actor import Actor, Role
from labflow.services.commands import OrderDesk


def get_desk(request: Request) -> OrderDesk:
    return request.app.state.desk


def get_actor(
    x_actor_id: str = Header(None),
    x_actor_role: str = Header(None),
) -> Actor:
    """Identity is asserted by the gateway in front of us and trusted as-is."""
    if not x_actor_id or not x_actor_role:
        raise AuthorizationError("MissingIdentity", "X-Actor-Id and X-Actor-Role headers are required")
    try:
        role = Role(x_actor_role)
    except ValueError:
        raise AuthorizationError("UnknownRole", f"unknown role {x_actor_role!r}")
    return Actor(actor_id=x_actor_id, role=role)
