"""
Synchronization module.

This module provides the components that keep tags in step with the backend:
- SyncEngine: routes operations online or into the offline queue
- OfflineQueue: SQLite-based ordered log of pending writes
- RemoteStore: backend adapter interface, with in-memory and HTTP adapters
"""

from .http_remote_store import HttpRemoteStore
from .offline_queue import DrainStats, OfflineQueue
from .remote_store import ChangeEvent, ChangeStream, MemoryRemoteStore, RemoteStore
from .sync_engine import SyncEngine

__all__ = [
    'ChangeEvent',
    'ChangeStream',
    'DrainStats',
    'HttpRemoteStore',
    'MemoryRemoteStore',
    'OfflineQueue',
    'RemoteStore',
    'SyncEngine',
]
