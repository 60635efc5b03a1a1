"""
Verification Audit Log

Append-only, size-bounded record of every verification attempt. Entries are
persisted locally first; mirroring to the backend happens afterwards in a
background task and can never fail an append.

Eviction keeps at most `max_entries` entries, dropping the oldest by
verified_at.
"""

import asyncio
import logging

from enrollment_sync.core.backend import BackendClient
from enrollment_sync.core.errors import format_error
from enrollment_sync.modules.local_state import StateStore, StateStoreError
from enrollment_sync.modules.verification.schemas import AuditLogEntry

logger = logging.getLogger(__name__)

AUDIT_NAMESPACE = "verification_audit"

DEFAULT_MAX_ENTRIES = 1000


class AuditLog:
    """Local audit trail with best-effort backend mirroring."""

    def __init__(
        self,
        store: StateStore,
        backend: BackendClient | None = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        mirror_enabled: bool = True,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._store = store
        self._backend = backend
        self.max_entries = max_entries
        self.mirror_enabled = mirror_enabled and backend is not None
        self._lock = asyncio.Lock()
        self._pending_mirrors: set[asyncio.Task] = set()

    async def append(self, entry: AuditLogEntry, mirror: bool = True) -> AuditLogEntry:
        """
        Persist an entry locally, then schedule its mirror.

        Args:
            entry: Entry to record
            mirror: Whether to push this entry to the backend

        Raises:
            StateStoreError: If the entry could not be written locally
        """
        async with self._lock:
            await self._store.put(
                AUDIT_NAMESPACE, entry.id, entry.model_dump_json(), entry.verified_at
            )
            try:
                evicted = await self._store.evict_oldest(AUDIT_NAMESPACE, self.max_entries)
            except StateStoreError as e:
                # The entry itself is durable; trimming retries on the next append
                logger.warning(f"Audit eviction failed: {e}")
                evicted = 0

        if evicted:
            logger.debug(f"Evicted {evicted} audit entr{'y' if evicted == 1 else 'ies'}")

        logger.info(
            f"Audit: code={entry.code} result={entry.result.value}"
            + (f" error={entry.error_message}" if entry.error_message else "")
        )

        if mirror and self.mirror_enabled:
            task = asyncio.create_task(self.mirror(entry))
            self._pending_mirrors.add(task)
            task.add_done_callback(self._pending_mirrors.discard)

        return entry

    async def mirror(self, entry: AuditLogEntry) -> bool:
        """
        Push one entry to the backend.

        Returns:
            True if the backend accepted it. Failures are logged, never raised.
        """
        if self._backend is None:
            return False
        try:
            await self._backend.insert_verification_log(
                {
                    "local_id": entry.id,
                    "code": entry.code,
                    "code_type": entry.code_type.value if entry.code_type else None,
                    "target_entity_id": entry.target_entity_id,
                    "result": entry.result.value,
                    "error_message": entry.error_message,
                    "verified_at": entry.verified_at.isoformat(),
                }
            )
            return True
        except Exception as e:
            logger.warning(f"Audit mirror failed for entry {entry.id}: {format_error(e)}")
            return False

    async def flush(self) -> None:
        """Wait for every scheduled mirror to finish."""
        if self._pending_mirrors:
            await asyncio.gather(*list(self._pending_mirrors), return_exceptions=True)

    async def count(self) -> int:
        return await self._store.count(AUDIT_NAMESPACE)

    # Keep last: shadows the builtin `list` for the rest of the class body
    async def list(self, limit: int | None = None) -> list[AuditLogEntry]:
        """Entries, newest first."""
        payloads = await self._store.list_records(AUDIT_NAMESPACE, newest_first=True, limit=limit)
        return [AuditLogEntry.model_validate_json(payload) for payload in payloads]
