"""
Exception hierarchy for the tag synchronization layer.

Transient conditions (NetworkError) are absorbed by the engine and turned into
queued or deferred work. Everything else is surfaced to the host sink.
"""


class TagSyncError(Exception):
    """Base class for all synchronization errors."""


class AuthError(TagSyncError):
    """Fetching or refreshing a credential failed."""


class CredentialRejected(AuthError):
    """The backend refused a credential that was presented to it."""


class ConflictExceeded(TagSyncError):
    """Optimistic-concurrency retries were exhausted for a transaction."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"gave up on '{key}' after {attempts} conflicting attempts")
        self.key = key
        self.attempts = attempts


class EmptyListError(TagSyncError):
    """RemoveFirst found no element to remove."""

    def __init__(self, tag: str):
        super().__init__(f"list at tag '{tag}' is empty")
        self.tag = tag


class NotAListError(TagSyncError):
    """A list operation found a non-list value stored under the tag."""

    def __init__(self, tag: str, value):
        super().__init__(f"value at tag '{tag}' is a {type(value).__name__}, not a list")
        self.tag = tag


class NetworkError(TagSyncError):
    """The backend could not be reached."""


class QueuePersistenceError(TagSyncError):
    """A write could not be recorded in the offline queue."""


class RemoteStoreError(TagSyncError):
    """The backend rejected a request permanently."""


class InvalidTagError(TagSyncError, ValueError):
    """The tag cannot be used as a backend key."""
