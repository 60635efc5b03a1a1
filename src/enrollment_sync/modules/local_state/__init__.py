"""
Local State Module

Durable, client-resident storage for the verification subsystem.
"""

from .store import RedisStateStore, SqlStateStore, StateStore, StateStoreError

__all__ = ["StateStore", "SqlStateStore", "RedisStateStore", "StateStoreError"]
