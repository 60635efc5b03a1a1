"""
Local State Models

A single key-value table holding every piece of client-resident state:
queued verifications, abandoned records, audit entries and the cached
health status. Payloads are JSON documents replaced as a whole.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from enrollment_sync.core.database import Base


class LocalStateRecord(Base):
    """One JSON document addressed by (namespace, key)."""

    __tablename__ = "local_state"

    # Surrogate id also breaks ties between records with the same sort key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    namespace: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    # Ordering key: queued_at for queue items, verified_at for audit entries
    sort_key: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("namespace", "key", name="uq_local_state_namespace_key"),
        Index("ix_local_state_namespace_sort", "namespace", "sort_key"),
    )
