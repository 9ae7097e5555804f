"""
Worker: drain the audit dead-letter queue back into the audit log.
- Every worker_replay_interval_seconds, replay up to 100 dead-lettered entries.
- Prometheus /metrics on worker_metrics_port.
- Graceful shutdown on SIGTERM.
Run: python -m order_engine.worker
"""
import asyncio
import logging
import signal
import sys
import threading

from order_engine.audit import AuditLog
from order_engine.config import settings
from order_engine.stores import build_stores, close_stores

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

REPLAY_BATCH = 100


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.worker_metrics_port)


async def replay_once(audit: AuditLog) -> int:
    try:
        replayed = await audit.replay_dead_letters(limit=REPLAY_BATCH)
    except Exception as e:
        logger.exception("Audit DLQ replay failed: %s", e)
        return 0
    if replayed:
        remaining = await audit.dead_letters.length()
        logger.info("Replayed %d audit entr%s from DLQ (%d remaining)", replayed, "y" if replayed == 1 else "ies", remaining)
    return replayed


async def run_worker(shutdown_event: asyncio.Event) -> None:
    stores = await build_stores()
    audit = AuditLog(stores.audit, stores.dead_letters)
    logger.info(
        "Audit DLQ worker ready. Backend=%s, interval=%ss ...",
        settings.storage_backend,
        settings.worker_replay_interval_seconds,
    )
    try:
        while not shutdown_event.is_set():
            await replay_once(audit)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=settings.worker_replay_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await close_stores()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.worker_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
