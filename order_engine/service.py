"""
Wires stores, audit log, aggregator and engine together for one process.
"""
from dataclasses import dataclass

from order_engine.audit import AuditLog
from order_engine.engine import WorkflowEngine
from order_engine.notifications import NotificationAggregator
from order_engine.stores import Stores, build_stores, close_stores


@dataclass
class Service:
    stores: Stores
    audit: AuditLog
    notifications: NotificationAggregator
    engine: WorkflowEngine


def build_service(stores: Stores) -> Service:
    audit = AuditLog(stores.audit, stores.dead_letters)
    notifications = NotificationAggregator(stores.orders)
    engine = WorkflowEngine(
        stores.orders,
        stores.ledger,
        audit,
        listeners=[notifications.notify_committed],
    )
    return Service(stores=stores, audit=audit, notifications=notifications, engine=engine)


async def start_service(stores: Stores | None = None) -> Service:
    service = build_service(stores or await build_stores())
    service.notifications.start()
    return service


async def stop_service(service: Service) -> None:
    await service.notifications.stop()
    await service.engine.drain()
    await service.audit.drain()
    await close_stores()
