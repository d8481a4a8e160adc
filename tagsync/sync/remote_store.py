"""
Remote store adapter interface and an in-process implementation.

The synchronization layer talks to the backend only through RemoteStore.
Adapters provide two data-plane primitives, ``read_versioned`` and
``compare_and_set``; the transaction primitive is built once on top of them as
a bounded read-version / compare-and-set loop, so every adapter gets the same
optimistic-concurrency discipline.
"""

import copy
import logging
import queue
import random
import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

from tagsync.errors import AuthError, ConflictExceeded, CredentialRejected, NetworkError
from tagsync.models.credential import Credential
from tagsync.models.values import ABSENT, is_absent

logger = logging.getLogger(__name__)


class ChangeEvent(NamedTuple):
    key: str
    value: Any
    version: Any


class ChangeStream(ABC):
    """A live, blocking stream of ChangeEvents. Iteration ends after close()."""

    @abstractmethod
    def __iter__(self) -> Iterator[ChangeEvent]:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class RemoteStore(ABC):
    """
    Adapter interface to the networked tag/value backend.

    Data-plane methods accept the bearer token as the ``token`` keyword.
    Adapters raise NetworkError for transient connectivity loss,
    CredentialRejected when the token is refused and RemoteStoreError for
    permanent rejections.
    """

    CONFLICT_BACKOFF = 0.005  # seconds, scaled by attempt number

    @abstractmethod
    def read_versioned(self, key: str, token: Optional[str] = None) -> Tuple[Any, Any]:
        """Return ``(value, version)``; ``(ABSENT, version)`` when the key is unset."""

    @abstractmethod
    def compare_and_set(self, key: str, expected_version: Any, value: Any,
                        token: Optional[str] = None) -> Optional[Any]:
        """
        Write ``value`` only if the key is still at ``expected_version``.

        Returns:
            The new version, or None if another writer got there first
        """

    @abstractmethod
    def write(self, key: str, value: Any, token: Optional[str] = None) -> Any:
        """Unconditional write. Writing ABSENT deletes the key."""

    @abstractmethod
    def list_keys(self, prefix: str, token: Optional[str] = None) -> List[str]:
        """Full keys of every value stored directly under ``prefix``."""

    @abstractmethod
    def subscribe(self, prefix: str, token: Optional[str] = None) -> ChangeStream:
        ...

    @abstractmethod
    def authenticate(self, developer_token: Optional[str], issued_for: str) -> Credential:
        ...

    def read(self, key: str, token: Optional[str] = None) -> Any:
        return self.read_versioned(key, token=token)[0]

    def ping(self, token: Optional[str] = None) -> None:
        """Raise if the backend is unreachable or the token is refused."""
        self.list_keys("", token=token)

    def close(self) -> None:
        """Release connections held by the adapter."""

    def transact(self, key: str, fn: Callable[[Any], Any], max_retries: int = 25,
                 token: Optional[str] = None) -> Any:
        """
        Apply ``fn`` to the current value of ``key`` atomically.

        ``fn`` receives a private copy of the current value (ABSENT when unset)
        and returns the value to store. If another writer changes the key
        between the read and the write, the whole read-modify-write is retried.
        Exceptions raised by ``fn`` abort the transaction and propagate.

        Args:
            key: Backend key
            fn: Pure function from current value to new value
            max_retries: Number of attempts before giving up
            token: Bearer token

        Returns:
            The committed value

        Raises:
            ConflictExceeded: If every attempt lost a race
        """
        for attempt in range(1, max_retries + 1):
            current, version = self.read_versioned(key, token=token)
            new_value = fn(copy.deepcopy(current))
            if self.compare_and_set(key, version, new_value, token=token) is not None:
                if attempt > 1:
                    logger.debug(f"Transaction on '{key}' committed after {attempt} attempts")
                return new_value

            if attempt < max_retries:
                time.sleep(random.uniform(0, self.CONFLICT_BACKOFF * attempt))

        logger.warning(f"Transaction on '{key}' exhausted {max_retries} attempts")
        raise ConflictExceeded(key, max_retries)


class _MemoryChangeStream(ChangeStream):

    _CLOSED = object()

    def __init__(self, store: 'MemoryRemoteStore', prefix: str):
        self.store = store
        self.prefix = prefix
        self._events: "queue.Queue[Any]" = queue.Queue()
        self._error: Optional[Exception] = None
        self._closed = threading.Event()

    def push(self, event: ChangeEvent) -> None:
        if not self._closed.is_set():
            self._events.put(event)

    def fail(self, error: Exception) -> None:
        self._error = error
        self._closed.set()
        self._events.put(self._CLOSED)

    def close(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._events.put(self._CLOSED)
        self.store._unsubscribe(self)

    def next_event(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """
        Block for the next event.

        Returns:
            The event, or None once the stream is closed

        Raises:
            queue.Empty: If nothing arrived within ``timeout``
        """
        event = self._events.get(timeout=timeout)
        if event is self._CLOSED:
            # Stay closed for later calls
            self._events.put(self._CLOSED)
            if self._error is not None:
                raise self._error
            return None
        return event

    def __iter__(self) -> Iterator[ChangeEvent]:
        while True:
            event = self.next_event()
            if event is None:
                return
            yield event


class MemoryRemoteStore(RemoteStore):
    """
    Thread-safe in-process backend.

    Serves as the storage of the mock HTTP server and as a stand-in backend
    for tests. Every committed write bumps a global version counter and is
    pushed to matching subscribers. ``set_online(False)`` simulates an outage:
    every call raises NetworkError and open streams fail.
    """

    def __init__(self, token_ttl: float = 3600.0, developer_tokens: Optional[Iterable[str]] = None,
                 require_auth: bool = False):
        self.token_ttl = token_ttl
        self.developer_tokens: Optional[Set[str]] = set(developer_tokens) if developer_tokens else None
        self.require_auth = require_auth
        self.auth_calls = 0
        self._data: Dict[str, Any] = {}
        self._versions: Dict[str, int] = {}
        self._clock = 0
        self._tokens: Dict[str, datetime] = {}
        self._subscribers: List[_MemoryChangeStream] = []
        self._online = True
        self._lock = threading.RLock()

    # Simulation controls

    def set_online(self, online: bool) -> None:
        with self._lock:
            self._online = online
            streams = list(self._subscribers) if not online else []
        for stream in streams:
            stream.fail(NetworkError("connection to backend lost"))

    @property
    def online(self) -> bool:
        return self._online

    def revoke_tokens(self) -> None:
        """Forget every issued token, as a backend does after a key rotation."""
        with self._lock:
            self._tokens.clear()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    # Internals

    def _check(self, token: Optional[str]) -> None:
        if not self._online:
            raise NetworkError("backend unreachable")
        if not self.require_auth:
            return
        expires = self._tokens.get(token) if token else None
        if expires is None or expires <= datetime.now(timezone.utc):
            raise CredentialRejected("token is unknown or expired")

    def _commit(self, key: str, value: Any) -> int:
        self._clock += 1
        self._versions[key] = self._clock
        if is_absent(value):
            self._data.pop(key, None)
        else:
            self._data[key] = copy.deepcopy(value)
        event = ChangeEvent(key, copy.deepcopy(value), self._clock)
        for stream in self._subscribers:
            if key.startswith(stream.prefix):
                stream.push(event)
        return self._clock

    def _unsubscribe(self, stream: _MemoryChangeStream) -> None:
        with self._lock:
            if stream in self._subscribers:
                self._subscribers.remove(stream)

    # RemoteStore

    def read_versioned(self, key: str, token: Optional[str] = None) -> Tuple[Any, Any]:
        with self._lock:
            self._check(token)
            value = copy.deepcopy(self._data[key]) if key in self._data else ABSENT
            return value, self._versions.get(key, 0)

    def compare_and_set(self, key: str, expected_version: Any, value: Any,
                        token: Optional[str] = None) -> Optional[Any]:
        with self._lock:
            self._check(token)
            if self._versions.get(key, 0) != expected_version:
                return None
            return self._commit(key, value)

    def write(self, key: str, value: Any, token: Optional[str] = None) -> Any:
        with self._lock:
            self._check(token)
            return self._commit(key, value)

    def list_keys(self, prefix: str, token: Optional[str] = None) -> List[str]:
        with self._lock:
            self._check(token)
            return sorted(k for k in self._data if k.startswith(prefix))

    def subscribe(self, prefix: str, token: Optional[str] = None) -> ChangeStream:
        with self._lock:
            self._check(token)
            stream = _MemoryChangeStream(self, prefix)
            self._subscribers.append(stream)
            return stream

    def authenticate(self, developer_token: Optional[str], issued_for: str) -> Credential:
        with self._lock:
            self.auth_calls += 1
            if not self._online:
                raise NetworkError("backend unreachable")
            if self.developer_tokens is not None and developer_token not in self.developer_tokens:
                raise AuthError("developer token was not accepted")
            token = f"tok-{uuid.uuid4().hex}"
            valid_until = datetime.now(timezone.utc) + timedelta(seconds=self.token_ttl)
            self._tokens[token] = valid_until
            return Credential(token=token, issued_for=issued_for, valid_until=valid_until)
