"""
Append-only activity log. Writes are scheduled after the order write commits
and never block or fail the caller:
- each entry is retried with exponential backoff (audit_retry_base_ms * 2**attempt);
- after audit_max_retries it goes to the dead-letter queue for later replay;
- entries for the same order are written in the order they were appended.
"""
import asyncio
import logging
import time

from order_engine.config import settings
from order_engine.domain import AuditEntry
from order_engine.metrics import audit_writes_dlq_total, audit_writes_failed_total
from order_engine.stores import AuditSink, DeadLetterQueue

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(
        self,
        sink: AuditSink,
        dead_letters: DeadLetterQueue,
        max_retries: int | None = None,
        retry_base_ms: int | None = None,
    ):
        self.sink = sink
        self.dead_letters = dead_letters
        self.max_retries = max_retries if max_retries is not None else settings.audit_max_retries
        self.retry_base_ms = retry_base_ms if retry_base_ms is not None else settings.audit_retry_base_ms
        self._tasks: set[asyncio.Task] = set()
        # item_id -> most recently scheduled write for that item
        self._tails: dict[str, asyncio.Task] = {}

    def append(self, entry: AuditEntry) -> asyncio.Task:
        previous = self._tails.get(entry.item_id)
        t = asyncio.create_task(self._write_after(previous, entry))
        self._tails[entry.item_id] = t
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)
        t.add_done_callback(lambda done: self._forget_tail(entry.item_id, done))
        return t

    def _forget_tail(self, item_id: str, task: asyncio.Task) -> None:
        if self._tails.get(item_id) is task:
            del self._tails[item_id]

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _write_after(self, previous: asyncio.Task | None, entry: AuditEntry) -> bool:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        return await self._write_with_retry(entry)

    async def _write_with_retry(self, entry: AuditEntry) -> bool:
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                await self.sink.write(entry)
                return True
            except Exception as e:
                last_error = e
                audit_writes_failed_total.inc()
                logger.warning(
                    "Audit write failed for item_id=%s action=%r (attempt %d/%d): %s",
                    entry.item_id,
                    entry.action_type,
                    attempt + 1,
                    self.max_retries,
                    e,
                )
                if attempt + 1 < self.max_retries:
                    await asyncio.sleep(self.retry_base_ms * (2 ** attempt) / 1000)
        await self._dead_letter(entry, last_error)
        return False

    async def _dead_letter(self, entry: AuditEntry, error: Exception | None) -> None:
        body = {
            "entry": entry.to_dict(),
            "attempts": self.max_retries,
            "last_error": str(error) if error else None,
            "failed_at": time.time(),
        }
        try:
            await self.dead_letters.push(body)
        except Exception:
            logger.exception("Audit DLQ unavailable, entry lost: %s", body)
            return
        audit_writes_dlq_total.inc()
        logger.error(
            "Moved audit entry item_id=%s action=%r to DLQ after %d attempts",
            entry.item_id,
            entry.action_type,
            self.max_retries,
        )

    async def replay_dead_letters(self, limit: int = 100) -> int:
        """
        Re-append dead-lettered entries straight to the sink.
        Stops at the first failure and puts that entry back. Returns number replayed.
        """
        replayed = 0
        while replayed < limit:
            batch = await self.dead_letters.pop(min(10, limit - replayed))
            if not batch:
                break
            for i, body in enumerate(batch):
                try:
                    entry = AuditEntry.from_dict(body["entry"])
                except (KeyError, TypeError, ValueError):
                    logger.warning("Dropping malformed audit DLQ message: %s", body)
                    replayed += 1
                    continue
                try:
                    await self.sink.write(entry)
                except Exception as e:
                    logger.warning("Audit replay stopped, sink still failing: %s", e)
                    await self.dead_letters.push_back(batch[i:])
                    return replayed
                replayed += 1
        return replayed

    async def list(self, company_id: str | None = None, item_id: str | None = None, limit: int = 100):
        return await self.sink.list(company_id=company_id, item_id=item_id, limit=limit)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight writes; cancel whatever is still pending after timeout."""
        if not self._tasks:
            return
        timeout = settings.shutdown_grace_seconds if timeout is None else timeout
        logger.info("Waiting for %d in-flight audit write(s) (max %ss) ...", len(self._tasks), timeout)
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout, return_when=asyncio.ALL_COMPLETED)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
