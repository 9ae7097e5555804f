from fastapi import Header, Request

from order_engine.domain import Actor
from order_engine.service import Service


def get_service(request: Request) -> Service:
    return request.app.state.service


def get_actor(
    x_actor_id: str = Header(..., description="Authenticated user id from the session collaborator"),
    x_actor_role: str = Header(..., description="Role of the authenticated user"),
    x_company_id: str | None = Header(default=None, description="Company the user belongs to"),
    x_actor_name: str | None = Header(default=None, description="Display name for the activity log"),
) -> Actor:
    return Actor(
        actor_id=x_actor_id,
        role=x_actor_role,
        company_id=x_company_id,
        name=x_actor_name,
    )
