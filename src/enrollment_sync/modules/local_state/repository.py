"""
Local State Repository

Database operations for the local_state table. Every write commits before
returning, so a record is durable once the call succeeds.

Design Principles:
- All queries are parameterized
- Async operations for non-blocking I/O
- Only database operations, no business logic
"""

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import LocalStateRecord


async def get(db: AsyncSession, namespace: str, key: str) -> LocalStateRecord | None:
    """Get a record by namespace and key."""
    result = await db.execute(
        select(LocalStateRecord).where(
            LocalStateRecord.namespace == namespace,
            LocalStateRecord.key == key,
        )
    )
    return result.scalar_one_or_none()


async def upsert(
    db: AsyncSession,
    namespace: str,
    key: str,
    payload: str,
    sort_key: datetime,
) -> LocalStateRecord:
    """
    Insert or replace a record in one transaction.

    The payload is replaced as a whole; the surrogate id is kept so the
    record's position among equal sort keys does not change.
    """
    record = await get(db, namespace, key)

    if record is None:
        record = LocalStateRecord(namespace=namespace, key=key, payload=payload, sort_key=sort_key)
        db.add(record)
    else:
        record.payload = payload
        record.sort_key = sort_key

    await db.commit()
    await db.refresh(record)
    return record


async def delete_record(db: AsyncSession, namespace: str, key: str) -> bool:
    """Delete a record. Returns True if a row was removed."""
    result = await db.execute(
        delete(LocalStateRecord).where(
            LocalStateRecord.namespace == namespace,
            LocalStateRecord.key == key,
        )
    )
    await db.commit()
    return result.rowcount > 0


async def move_record(
    db: AsyncSession,
    source: str,
    target: str,
    key: str,
    payload: str,
    sort_key: datetime,
) -> bool:
    """
    Move a record between namespaces in one transaction.

    The target row is written with `payload` whether or not the source row
    existed. Returns True if a source row was removed.
    """
    await db.execute(
        delete(LocalStateRecord).where(
            LocalStateRecord.namespace == target,
            LocalStateRecord.key == key,
        )
    )
    result = await db.execute(
        delete(LocalStateRecord).where(
            LocalStateRecord.namespace == source,
            LocalStateRecord.key == key,
        )
    )
    db.add(LocalStateRecord(namespace=target, key=key, payload=payload, sort_key=sort_key))
    await db.commit()
    return result.rowcount > 0


async def list_namespace(
    db: AsyncSession,
    namespace: str,
    newest_first: bool = False,
    limit: int | None = None,
) -> list[LocalStateRecord]:
    """List records in a namespace ordered by sort key."""
    query = select(LocalStateRecord).where(LocalStateRecord.namespace == namespace)

    if newest_first:
        query = query.order_by(LocalStateRecord.sort_key.desc(), LocalStateRecord.id.desc())
    else:
        query = query.order_by(LocalStateRecord.sort_key.asc(), LocalStateRecord.id.asc())

    if limit is not None:
        query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())


async def count_namespace(db: AsyncSession, namespace: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(LocalStateRecord)
        .where(LocalStateRecord.namespace == namespace)
    )
    return int(result.scalar_one())


async def delete_oldest(db: AsyncSession, namespace: str, keep: int) -> int:
    """
    Delete the oldest records so that at most `keep` remain.

    Returns:
        Number of records deleted
    """
    keep_ids = (
        select(LocalStateRecord.id)
        .where(LocalStateRecord.namespace == namespace)
        .order_by(LocalStateRecord.sort_key.desc(), LocalStateRecord.id.desc())
        .limit(keep)
    )
    result = await db.execute(
        delete(LocalStateRecord).where(
            LocalStateRecord.namespace == namespace,
            LocalStateRecord.id.not_in(keep_ids),
        )
    )
    await db.commit()
    return result.rowcount


async def clear_namespace(db: AsyncSession, namespace: str) -> int:
    result = await db.execute(
        delete(LocalStateRecord).where(LocalStateRecord.namespace == namespace)
    )
    await db.commit()
    return result.rowcount
