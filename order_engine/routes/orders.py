from datetime import date
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from order_engine.domain import Actor
from order_engine.order_state import Command, OrderStatus
from order_engine.permissions import scope_for
from order_engine.routes.deps import get_actor, get_service
from order_engine.service import Service

router = APIRouter(prefix="/orders", tags=["orders"])
notifications_router = APIRouter(tags=["notifications"])
activity_router = APIRouter(tags=["activity"])


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateOrderBody(CamelModel):
    product_id: str = Field(..., alias="productId")
    product_name: str = Field(..., alias="productName", description="Snapshot at order time")
    unit_price: Decimal = Field(..., alias="unitPrice", ge=0)
    quantity: int = Field(..., gt=0)
    total_price: Decimal | None = Field(default=None, alias="totalPrice", description="Must equal unitPrice * quantity")
    company_id: str | None = Field(default=None, alias="companyId")
    message: str = ""
    delivery_date: date | None = Field(default=None, alias="deliveryDate")
    order_id: str | None = Field(default=None, alias="orderId")


class TransitionBody(CamelModel):
    command: Command
    expected_version: int = Field(..., alias="expectedVersion", ge=1)
    note: str | None = None
    request_id: str | None = Field(default=None, alias="requestId", description="Idempotency key for retries")


class EditNoteBody(CamelModel):
    expected_version: int = Field(..., alias="expectedVersion", ge=1)
    message: str | None = None
    delivery_date: date | None = Field(default=None, alias="deliveryDate")


class ManagerApprovalBody(CamelModel):
    manager_approval: Literal["Pending", "Yes", "No"] = Field(..., alias="managerApproval")


class DeliveryVerificationBody(CamelModel):
    delivery_verified: bool = Field(..., alias="deliveryVerified")


def _order_response(order, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": True, "order": order.to_dict()})


@router.post("")
async def create_order(
    body: CreateOrderBody,
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    order = await service.engine.create_order(
        actor,
        product_id=body.product_id,
        product_name=body.product_name,
        unit_price=body.unit_price,
        quantity=body.quantity,
        total_price=body.total_price,
        company_id=body.company_id,
        message=body.message,
        delivery_date=body.delivery_date,
        order_id=body.order_id,
    )
    return _order_response(order, status_code=201)


@router.get("")
async def list_orders(
    status: OrderStatus | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    orders = await service.engine.list_orders(actor, status=status)
    return JSONResponse(content={"status": True, "orders": [o.to_dict() for o in orders]})


@router.get("/summary")
async def order_summary(
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    """Counts per status; order_processing folds order_confirm and order_in_progress."""
    return JSONResponse(content={"status": True, "counts": await service.engine.order_summary(actor)})


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    return _order_response(await service.engine.get_order(order_id, actor))


@router.post("/{order_id}/transitions")
async def apply_transition(
    order_id: str,
    body: TransitionBody,
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    """
    Approve | Reject | StartProgress | Deliver. expectedVersion is the version
    the caller last read; on 409 version_conflict reload and re-issue.
    """
    order = await service.engine.apply_transition(
        order_id,
        body.command,
        body.expected_version,
        actor,
        note=body.note,
        request_id=body.request_id,
    )
    return _order_response(order)


@router.patch("/{order_id}/note")
async def edit_note(
    order_id: str,
    body: EditNoteBody,
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    order = await service.engine.edit_note(
        order_id,
        body.expected_version,
        actor,
        message=body.message,
        delivery_date=body.delivery_date,
    )
    return _order_response(order)


@router.put("/{order_id}/manager-approval")
async def set_manager_approval(
    order_id: str,
    body: ManagerApprovalBody,
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    order = await service.engine.set_manager_approval(order_id, body.manager_approval, actor)
    return _order_response(order)


@router.put("/{order_id}/delivery-verification")
async def verify_delivery(
    order_id: str,
    body: DeliveryVerificationBody,
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    order = await service.engine.verify_delivery(order_id, body.delivery_verified, actor)
    return _order_response(order)


@router.delete("/{order_id}")
async def delete_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    await service.engine.delete_order(order_id, actor)
    return JSONResponse(content={"status": True, "order_id": order_id})


@notifications_router.get("/notifications/pending")
async def pending_count(
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    """
    Orders in new_request for the caller's scope. Not real-time: the count is
    refreshed every notification_poll_seconds or after a commit.
    """
    scope = scope_for(actor)
    count = 0 if scope is None else await service.notifications.count_pending(scope)
    return JSONResponse(
        content={
            "status": True,
            "scope": scope,
            "newOrdersCount": count,
            "computedAt": service.notifications.computed_at,
        }
    )


@activity_router.get("/activity-logs")
async def activity_logs(
    item_id: str | None = Query(default=None, alias="itemId"),
    limit: int = Query(default=100, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    service: Service = Depends(get_service),
) -> JSONResponse:
    entries = await service.engine.list_activity(actor, item_id=item_id, limit=limit)
    return JSONResponse(content={"status": True, "logs": [e.to_dict() for e in entries]})
