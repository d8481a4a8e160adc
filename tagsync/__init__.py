"""
TagSync: tag/value synchronization with a realtime backend.

Typical use:
    engine = SyncEngine(SyncConfig(project_bucket="game"), HttpRemoteStore(url), sink=my_sink)
    engine.connect().result()
    engine.append_value("events", {"kind": "login"})
"""

from tagsync.app.callbacks import HostCallbackSink
from tagsync.config.app_config import AppConfig, SyncConfig
from tagsync.errors import (
    AuthError,
    ConflictExceeded,
    EmptyListError,
    NetworkError,
    QueuePersistenceError,
    TagSyncError,
)
from tagsync.sync.http_remote_store import HttpRemoteStore
from tagsync.sync.remote_store import MemoryRemoteStore, RemoteStore
from tagsync.sync.sync_engine import SyncEngine

__version__ = "0.1.0"

__all__ = [
    'AppConfig',
    'AuthError',
    'ConflictExceeded',
    'EmptyListError',
    'HostCallbackSink',
    'HttpRemoteStore',
    'MemoryRemoteStore',
    'NetworkError',
    'QueuePersistenceError',
    'RemoteStore',
    'SyncConfig',
    'SyncEngine',
    'TagSyncError',
]
