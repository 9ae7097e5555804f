"""
Domain records: Order, InventoryRecord, AuditEntry and the actor context
supplied by the session collaborator with every command.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal

from order_engine.order_state import OrderStatus

ManagerApproval = Literal["Pending", "Yes", "No"]

SCOPE_ALL = "all"


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: str
    company_id: str | None = None
    name: str | None = None


@dataclass
class Order:
    """
    One order row. version starts at 1 and is bumped by every committed
    transition or note edit; delivery_verified and manager_approval are owned
    by external actors and written without touching version.
    """

    id: str
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    total_price: Decimal
    company_id: str | None
    created_by: str
    status: OrderStatus = OrderStatus.NEW_REQUEST
    delivery_verified: bool = False
    manager_approval: ManagerApproval = "Pending"
    message: str = ""
    delivery_date: date | None = None
    version: int = 1
    last_transitioned_by: str | None = None
    last_request_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["unit_price"] = str(self.unit_price)
        data["total_price"] = str(self.total_price)
        data["delivery_date"] = self.delivery_date.isoformat() if self.delivery_date else None
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass
class InventoryRecord:
    product_id: str
    available: int


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    actor: dict
    category: str
    action_type: str
    item_id: str
    company_id: str | None = None

    @classmethod
    def for_order(cls, actor: Actor, action_type: str, order_id: str, global_roles: list[str]) -> AuditEntry:
        return cls(
            timestamp=datetime.now(timezone.utc),
            actor={"id": actor.actor_id, "role": actor.role, "name": actor.name},
            category="Order",
            action_type=action_type,
            item_id=order_id,
            company_id=None if actor.role in global_roles else actor.company_id,
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "category": self.category,
            "actionType": self.action_type,
            "itemId": self.item_id,
            "companyId": self.company_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AuditEntry:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data.get("actor") or {},
            category=data.get("category", "Order"),
            action_type=data["actionType"],
            item_id=data["itemId"],
            company_id=data.get("companyId"),
        )
