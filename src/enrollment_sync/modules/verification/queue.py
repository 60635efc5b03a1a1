"""
Offline Verification Queue

Durable local store of verification attempts made while the backend was
unreachable. Every mutation is serialized through one asyncio lock and
written to the StateStore before it returns.

Lifecycle of an item:
    pending --increment_retry (retry_count < max)--> pending
    pending --increment_retry (retry_count >= max)--> abandoned
    pending --remove--> gone (processed successfully or removed by an operator)

Abandoned items are moved to their own namespace, never dropped.
"""

import asyncio
import logging

from enrollment_sync.core.clock import Clock, utc_now
from enrollment_sync.modules.local_state import StateStore
from enrollment_sync.modules.verification.helpers import generate_queue_id
from enrollment_sync.modules.verification.schemas import (
    CodeType,
    QueuedVerification,
    QueueItemStatus,
)

logger = logging.getLogger(__name__)

QUEUE_NAMESPACE = "verification_queue"
ABANDONED_NAMESPACE = "verification_abandoned"

DEFAULT_MAX_RETRIES = 3


class OfflineQueue:
    """FIFO queue of pending verifications on top of a StateStore."""

    def __init__(
        self,
        store: StateStore,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Clock = utc_now,
    ):
        self._store = store
        self.max_retries = max_retries
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _write(self, item: QueuedVerification) -> None:
        await self._store.put(QUEUE_NAMESPACE, item.id, item.model_dump_json(), item.queued_at)

    async def _move_to_abandoned(self, item: QueuedVerification) -> None:
        await self._store.move(
            QUEUE_NAMESPACE, ABANDONED_NAMESPACE, item.id, item.model_dump_json(), item.queued_at
        )

    async def enqueue(
        self,
        code: str,
        code_type: CodeType | None = None,
        target_entity_id: str | None = None,
        applicant_name: str = "Unknown",
        grade: str = "Unknown",
    ) -> QueuedVerification:
        """
        Add a verification attempt to the queue.

        The item is durable once this returns.

        Returns:
            The queued item, including its generated id

        Raises:
            StateStoreError: If the durable store could not be written
        """
        now = self._clock()
        item = QueuedVerification(
            id=generate_queue_id(now),
            code=code,
            code_type=code_type,
            target_entity_id=target_entity_id,
            applicant_name=applicant_name,
            grade=grade,
            queued_at=now,
            retry_count=0,
            max_retries=self.max_retries,
        )

        async with self._lock:
            await self._write(item)

        logger.info(f"Queued verification {item.id} for code {code}")
        return item

    async def get(self, queue_id: str) -> QueuedVerification | None:
        payload = await self._store.get(QUEUE_NAMESPACE, queue_id)
        return QueuedVerification.model_validate_json(payload) if payload else None

    async def find_pending_by_code(self, code: str) -> QueuedVerification | None:
        for item in await self.list():
            if item.code == code:
                return item
        return None

    async def count(self) -> int:
        return await self._store.count(QUEUE_NAMESPACE)

    async def remove(self, queue_id: str) -> bool:
        """
        Remove an item. Removing an unknown id is a no-op.

        Returns:
            True if the item was queued
        """
        async with self._lock:
            removed = await self._store.delete(QUEUE_NAMESPACE, queue_id)

        if removed:
            logger.info(f"Removed queued verification {queue_id}")
        return removed

    async def increment_retry(self, queue_id: str, error: str) -> QueuedVerification | None:
        """
        Record a failed attempt.

        The retry counter is incremented first. If it has reached
        max_retries the item is moved to the abandoned records and returned
        with status ABANDONED; otherwise it stays queued.

        Returns:
            The updated item, or None if the id is not queued

        Raises:
            StateStoreError: If the durable store could not be written
        """
        async with self._lock:
            payload = await self._store.get(QUEUE_NAMESPACE, queue_id)
            if payload is None:
                logger.warning(f"Cannot record retry for unknown queue item {queue_id}")
                return None

            item = QueuedVerification.model_validate_json(payload)
            item = item.model_copy(
                update={"retry_count": item.retry_count + 1, "last_error": error}
            )

            if item.retry_count >= item.max_retries:
                item = item.model_copy(
                    update={"status": QueueItemStatus.ABANDONED, "abandoned_at": self._clock()}
                )
                await self._move_to_abandoned(item)
                logger.warning(
                    f"Abandoned queued verification {queue_id} "
                    f"after {item.retry_count} attempts: {error}"
                )
            else:
                await self._write(item)
                logger.info(
                    f"Retry {item.retry_count}/{item.max_retries} recorded "
                    f"for queued verification {queue_id}"
                )

        return item

    async def abandon(self, queue_id: str, error: str) -> QueuedVerification | None:
        """
        Move an item straight to the abandoned records.

        Used when retrying cannot help, for example an expired code.
        """
        async with self._lock:
            payload = await self._store.get(QUEUE_NAMESPACE, queue_id)
            if payload is None:
                return None

            item = QueuedVerification.model_validate_json(payload).model_copy(
                update={
                    "status": QueueItemStatus.ABANDONED,
                    "abandoned_at": self._clock(),
                    "last_error": error,
                }
            )
            await self._move_to_abandoned(item)

        logger.warning(f"Abandoned queued verification {queue_id}: {error}")
        return item

    async def list_abandoned(self) -> list[QueuedVerification]:
        """Abandoned items, oldest first."""
        payloads = await self._store.list_records(ABANDONED_NAMESPACE)
        return [QueuedVerification.model_validate_json(payload) for payload in payloads]

    async def clear(self) -> int:
        """
        Remove every pending item.

        Returns:
            Number of items removed
        """
        async with self._lock:
            removed = await self._store.clear(QUEUE_NAMESPACE)
        logger.info(f"Cleared {removed} queued verification(s)")
        return removed

    # Keep last: shadows the builtin `list` for the rest of the class body
    async def list(self) -> list[QueuedVerification]:
        """Pending items, oldest first."""
        payloads = await self._store.list_records(QUEUE_NAMESPACE)
        return [QueuedVerification.model_validate_json(payload) for payload in payloads]
