"""
Synchronization engine between the host application and the remote store.

Every public operation returns a Future immediately and completes on the
worker pool. Outcomes also go to the host sink through the callback
dispatcher. Mutations issued while the backend is not connected are recorded
in the offline queue and replayed, in order, when the connection returns.
List mutations run as backend transactions, so concurrent clients on the same
tag never lose or duplicate an element.
"""

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Set, Tuple

from tagsync.app.callbacks import CallbackDispatcher, HostCallbackSink
from tagsync.app.connectivity import ConnectivityMonitor, ConnectivityState
from tagsync.auth.token_manager import TokenManager
from tagsync.config.app_config import SyncConfig
from tagsync.errors import (
    AuthError,
    CredentialRejected,
    EmptyListError,
    InvalidTagError,
    NetworkError,
    NotAListError,
    TagSyncError,
)
from tagsync.models.credential import Credential
from tagsync.models.operation_result import OperationResult, OperationStatus
from tagsync.models.pending_write import PendingWrite, WriteKind
from tagsync.models.values import ABSENT, FORBIDDEN_TAG_CHARS, dumps, is_absent, to_host
from tagsync.sync.change_listener import ChangeListener, Subscription
from tagsync.sync.offline_queue import DrainStats, OfflineQueue
from tagsync.sync.remote_store import ChangeEvent, RemoteStore

logger = logging.getLogger(__name__)

OPERATION_NAMES = {
    WriteKind.STORE: "StoreValue",
    WriteKind.APPEND_VALUE: "AppendValue",
    WriteKind.REMOVE_FIRST: "RemoveFirst",
    WriteKind.CLEAR_TAG: "ClearTag",
}


class SyncEngine:
    """
    Routes tag operations to the backend or the offline queue.

    This class manages:
    - Connectivity and credential state for the shared backend connection
    - The atomic list protocol (append, remove-first) over store transactions
    - Offline queuing and ordered replay of writes
    - Change notifications, minus echoes of this engine's own writes
    """

    def __init__(
        self,
        config: SyncConfig,
        store: RemoteStore,
        sink: Optional[HostCallbackSink] = None,
        max_workers: int = 10,
        token_manager: Optional[TokenManager] = None,
        queue: Optional[OfflineQueue] = None,
        cached_credential: Optional[Credential] = None
    ):
        """
        Initialize the engine.

        Args:
            config: Synchronization configuration
            store: Backend adapter
            sink: Receiver of host callbacks
            max_workers: Size of the worker pool
            token_manager: Credential owner; built from config when omitted
            queue: Offline queue; built from config when omitted
            cached_credential: Credential the host cached from a previous run
        """
        self.config = config
        self.store = store
        self.namespace = config.namespace
        self.token_manager = token_manager or TokenManager(
            store,
            config.developer_token,
            issued_for=self.namespace,
            cached_credential=cached_credential
        )
        self.queue = queue or OfflineQueue(config.effective_queue_path)
        self.connectivity = ConnectivityMonitor()
        self.connectivity.add_listener(self._on_connectivity_change)
        self.dispatcher = CallbackDispatcher(sink)
        self.dispatcher.start()
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="TagSyncWorker")
        self.subscription = Subscription(prefix=self.namespace)

        self._listener: Optional[ChangeListener] = None
        self._listener_lock = threading.Lock()
        self._echoes: Counter = Counter()
        self._echo_lock = threading.Lock()
        self._deferred: List[Tuple[str, Callable[[Future], Any], Future]] = []
        self._deferred_lock = threading.Lock()
        self._known_tags: Optional[Set[str]] = None
        self._tags_lock = threading.Lock()
        self._draining = threading.local()
        self._closed = False

        if self.queue.persistent:
            pending = self.queue.count_pending()
            if pending:
                logger.info(f"Offline queue holds {pending} writes from a previous run")

    # Keys and tags

    def _key(self, tag: str) -> str:
        if not isinstance(tag, str) or not tag:
            raise InvalidTagError("tag must be a non-empty string")
        bad = FORBIDDEN_TAG_CHARS.intersection(tag)
        if bad:
            raise InvalidTagError(f"tag '{tag}' contains forbidden characters {''.join(sorted(bad))}")
        return self.namespace + tag

    def _tag(self, key: str) -> str:
        return key[len(self.namespace):]

    # Public operations

    def store_value(self, tag: str, value: Any) -> Future:
        """Store ``value`` under ``tag``. Storing None clears the tag."""
        self._key(tag)
        if value is None:
            return self.clear_tag(tag)
        return self._submit_write(PendingWrite(tag=tag, kind=WriteKind.STORE, value=value))

    def append_value(self, tag: str, value: Any) -> Future:
        """Append ``value`` to the list stored under ``tag``."""
        self._key(tag)
        return self._submit_write(PendingWrite(tag=tag, kind=WriteKind.APPEND_VALUE, value=value))

    def remove_first(self, tag: str) -> Future:
        """Remove and return the head of the list stored under ``tag``."""
        self._key(tag)
        return self._submit_write(PendingWrite(tag=tag, kind=WriteKind.REMOVE_FIRST))

    def clear_tag(self, tag: str) -> Future:
        self._key(tag)
        return self._submit_write(PendingWrite(tag=tag, kind=WriteKind.CLEAR_TAG))

    def get_value(self, tag: str, default: Any = None) -> Future:
        """
        Fetch the value stored under ``tag``.

        An unset tag is not an error: the future resolves to ``default`` and
        GotValue carries ``default``.
        """
        key = self._key(tag)

        def run(future: Future) -> Optional[OperationResult]:
            if not self._ready_online():
                return self._defer("GetValue", run, future)
            if self.queue.has_pending(tag):
                self._drain()
            try:
                value = self._call_with_token(lambda token: self.store.read(key, token=token))
            except NetworkError as e:
                logger.warning(f"GetValue for '{tag}' deferred: {e}")
                self.connectivity.mark_lost()
                return self._defer("GetValue", run, future)
            result = default if is_absent(value) else value
            self.dispatcher.got_value(tag, result)
            return OperationResult("GetValue", tag, value=result)

        return self._submit("GetValue", run)

    def get_tag_list(self) -> Future:
        """
        Snapshot of the tags defined in this project's namespace.

        With ``tag_list_includes_queued`` the snapshot also reflects writes
        still waiting in the offline queue, and is answered from the last
        known listing while disconnected.
        """

        def run(future: Future) -> Optional[OperationResult]:
            include_queued = self.config.tag_list_includes_queued
            if not self._ready_online():
                known = self._known_snapshot()
                if include_queued and known is not None:
                    return self._finish_tag_list(known, include_queued)
                return self._defer("GetTagList", run, future)
            try:
                keys = self._call_with_token(lambda token: self.store.list_keys(self.namespace, token=token))
            except NetworkError as e:
                logger.warning(f"GetTagList deferred: {e}")
                self.connectivity.mark_lost()
                return self._defer("GetTagList", run, future)
            tags = {self._tag(key) for key in keys}
            with self._tags_lock:
                self._known_tags = set(tags)
            return self._finish_tag_list(tags, include_queued)

        return self._submit("GetTagList", run)

    def _finish_tag_list(self, tags: Set[str], include_queued: bool) -> OperationResult:
        if include_queued:
            for write in self.queue.pending():
                if write.kind is WriteKind.CLEAR_TAG:
                    tags.discard(write.tag)
                elif write.kind in (WriteKind.STORE, WriteKind.APPEND_VALUE):
                    tags.add(write.tag)
        result = sorted(tags)
        self.dispatcher.tag_list(result)
        return OperationResult("GetTagList", None, value=result)

    def connect(self) -> Future:
        """
        Connect to the backend, replaying queued writes once connected.

        The future resolves to an OperationResult whose value tells whether
        the engine ended up connected.
        """
        return self._submit("Connect", lambda future: OperationResult("Connect", None, value=self._connect()))

    def notify_connectivity_restored(self) -> Future:
        return self.connect()

    def notify_connectivity_lost(self) -> None:
        self.connectivity.mark_lost()

    def unauthenticate(self) -> None:
        """Discard the credential. The next operation authenticates afresh."""
        self.token_manager.invalidate()
        self.connectivity.transition(ConnectivityState.UNAUTHENTICATED)

    def flush_queue(self) -> Future:
        """Replay the offline queue now. Resolves to DrainStats."""
        return self.executor.submit(self._drain)

    def get_status(self) -> dict:
        credential = self.token_manager.last_credential
        return {
            'state': self.connectivity.state.value,
            'pending_writes': self.queue.count_pending(),
            'persistent_queue': self.queue.persistent,
            'namespace': self.namespace,
            'credential_valid_until': credential.valid_until.isoformat() if credential else None,
            'subscribed': self._listener is not None and self._listener.is_alive(),
        }

    def close(self) -> None:
        """Stop the listener and worker pool, then release the queue."""
        if self._closed:
            return
        self._closed = True
        self._stop_listener()
        self.executor.shutdown(wait=True)
        with self._deferred_lock:
            deferred, self._deferred = self._deferred, []
        for operation, _, future in deferred:
            if future.cancel():
                logger.warning(f"{operation} was waiting for connectivity and has been cancelled")
        self.dispatcher.flush(timeout=5.0)
        self.dispatcher.stop()
        self.queue.close()

    # Execution plumbing

    def _submit(self, operation: str, run: Callable[[Future], Any]) -> Future:
        future: Future = Future()
        if self._closed:
            future.set_exception(RuntimeError("engine is closed"))
            return future
        try:
            self.executor.submit(self._execute, operation, run, future)
        except RuntimeError as e:
            future.set_exception(e)
        return future

    def _execute(self, operation: str, run: Callable[[Future], Any], future: Future) -> None:
        try:
            result = run(future)
        except AuthError as e:
            self.connectivity.transition(ConnectivityState.UNAUTHENTICATED)
            self._fail(operation, future, e)
        except TagSyncError as e:
            self._fail(operation, future, e)
        except Exception as e:
            logger.exception(f"Unexpected error in {operation}: {e}")
            self._fail(operation, future, e)
        else:
            if result is not None:
                future.set_result(result)

    def _fail(self, operation: str, future: Future, error: Exception) -> None:
        self.dispatcher.error(operation, str(error))
        if not future.done():
            future.set_exception(error)

    def _defer(self, operation: str, run: Callable[[Future], Any], future: Future) -> None:
        with self._deferred_lock:
            self._deferred.append((operation, run, future))
        logger.debug(f"{operation} deferred until connected")
        # A connect that finished meanwhile has already resumed its batch
        if self.connectivity.is_connected:
            self._resume_deferred()
        return None

    def _resume_deferred(self) -> None:
        with self._deferred_lock:
            deferred, self._deferred = self._deferred, []
        for operation, run, future in deferred:
            try:
                self.executor.submit(self._execute, operation, run, future)
            except RuntimeError:
                future.cancel()

    # Connectivity

    def _ready_online(self) -> bool:
        """True if the backend is usable now; reconnects if unauthenticated."""
        state = self.connectivity.state
        if state is ConnectivityState.UNAUTHENTICATED:
            self._connect()
            state = self.connectivity.state
        return state is ConnectivityState.CONNECTED

    def _connect(self) -> bool:
        if not self.connectivity.begin_connect():
            return self.connectivity.is_connected
        try:
            try:
                credential = self.token_manager.current_token()
                self.store.ping(token=credential.token)
            except CredentialRejected:
                logger.warning("Backend rejected the cached credential, requesting a new one")
                self.token_manager.invalidate()
                credential = self.token_manager.current_token()
                self.store.ping(token=credential.token)
        except AuthError:
            self.token_manager.invalidate()
            self.connectivity.transition(ConnectivityState.UNAUTHENTICATED)
            raise
        except NetworkError as e:
            logger.warning(f"Connect failed: {e}")
            self.connectivity.transition(ConnectivityState.DISCONNECTED)
            return False
        return self.connectivity.transition(ConnectivityState.CONNECTED) or self.connectivity.is_connected

    def _on_connectivity_change(self, old: ConnectivityState, new: ConnectivityState) -> None:
        if new is ConnectivityState.CONNECTED:
            self._on_connected()
        elif old is ConnectivityState.CONNECTED:
            self._stop_listener()

    def _on_connected(self) -> None:
        if self._closed:
            return
        try:
            self._resubscribe()
        except TagSyncError as e:
            logger.warning(f"Could not subscribe to changes: {e}")
        if not getattr(self._draining, 'active', False):
            self._drain()
        self._resume_deferred()

    def _call_with_token(self, fn: Callable[[Optional[str]], Any]) -> Any:
        """Run ``fn(token)``; on rejection re-authenticate once and retry."""
        credential = self.token_manager.current_token()
        try:
            return fn(credential.token)
        except CredentialRejected:
            logger.warning("Backend rejected the credential, re-authenticating")
            self.token_manager.invalidate()
            self.connectivity.transition(ConnectivityState.UNAUTHENTICATED)
            if not self._connect():
                raise NetworkError("backend unreachable while re-authenticating")
            return fn(self.token_manager.current_token().token)

    # Change notifications

    def _resubscribe(self) -> None:
        self._stop_listener()
        with self._echo_lock:
            self._echoes.clear()
        token = self.token_manager.current_token().token
        listener = ChangeListener(
            self.store,
            self.subscription,
            token,
            on_event=self._on_change,
            on_lost=self._on_stream_lost
        )
        with self._listener_lock:
            self._listener = listener
        listener.start()
        # Writes made before the stream is open would leave unmatched echo markers
        while not listener.subscribed.wait(0.05):
            if not listener.is_alive():
                break

    def _stop_listener(self) -> None:
        with self._listener_lock:
            listener, self._listener = self._listener, None
        if listener is not None:
            listener.stop()

    def _on_stream_lost(self, error: Exception) -> None:
        if isinstance(error, CredentialRejected):
            self.token_manager.invalidate()
            self.connectivity.transition(ConnectivityState.UNAUTHENTICATED)
        else:
            self.connectivity.mark_lost()

    def _listening(self) -> bool:
        listener = self._listener
        return listener is not None and listener.subscribed.is_set() and listener.is_alive()

    def _expect_echo(self, key: str, value: Any) -> Tuple[str, str]:
        marker = (key, dumps(to_host(value)))
        with self._echo_lock:
            self._echoes[marker] += 1
        return marker

    def _forget_echo(self, marker: Tuple[str, str]) -> None:
        with self._echo_lock:
            if self._echoes[marker] > 0:
                self._echoes[marker] -= 1
            if self._echoes[marker] <= 0:
                del self._echoes[marker]

    def _consume_echo(self, key: str, value: Any) -> bool:
        marker = (key, dumps(to_host(value)))
        with self._echo_lock:
            if self._echoes.get(marker, 0) > 0:
                self._echoes[marker] -= 1
                if self._echoes[marker] == 0:
                    del self._echoes[marker]
                return True
        return False

    def _on_change(self, event: ChangeEvent) -> None:
        if not event.key.startswith(self.namespace):
            return
        delivered = self.subscription.last_delivered_version
        if event.version is not None and delivered.get(event.key) == event.version:
            return
        delivered[event.key] = event.version

        tag = self._tag(event.key)
        self._track_tag(tag, event.value)
        if self._consume_echo(event.key, event.value):
            return
        self.dispatcher.data_changed(tag, to_host(event.value))

    def _known_snapshot(self) -> Optional[Set[str]]:
        with self._tags_lock:
            return set(self._known_tags) if self._known_tags is not None else None

    def _track_tag(self, tag: str, value: Any) -> None:
        with self._tags_lock:
            if self._known_tags is None:
                return
            if is_absent(value):
                self._known_tags.discard(tag)
            else:
                self._known_tags.add(tag)

    # Writes

    def _submit_write(self, write: PendingWrite) -> Future:
        operation = OPERATION_NAMES[write.kind]
        state = self.connectivity.state
        if state is not ConnectivityState.CONNECTED and not self._closed:
            # Queue on the caller's thread so back-to-back writes keep their issue order
            future: Future = Future()
            try:
                future.set_result(self._enqueue(write))
            except TagSyncError as e:
                self._fail(operation, future, e)
            if state is ConnectivityState.UNAUTHENTICATED:
                # Re-authenticates in the background; a successful connect replays the queue
                self.connect()
            self._flush_if_connected()
            return future
        return self._submit(operation, lambda future: self._run_write(write))

    def _run_write(self, write: PendingWrite) -> OperationResult:
        operation = OPERATION_NAMES[write.kind]
        if not self._ready_online():
            return self._enqueue(write, flush=True)

        if self.queue.has_pending(write.tag):
            self._drain()
            if self.queue.has_pending(write.tag):
                return self._enqueue(write)

        try:
            value = self._call_with_token(lambda token: self._apply(write, token))
        except NetworkError as e:
            logger.warning(f"{operation} on '{write.tag}' queued after network failure: {e}")
            self.connectivity.mark_lost()
            return self._enqueue(write, flush=True)
        return OperationResult(operation, write.tag, value=value)

    def _enqueue(self, write: PendingWrite, flush: bool = False) -> OperationResult:
        queued = self.queue.enqueue(write)
        operation = OPERATION_NAMES[write.kind]
        logger.info(f"{operation} on '{write.tag}' queued as #{queued.sequence}")
        if flush:
            self._flush_if_connected()
        return OperationResult(operation, write.tag, OperationStatus.QUEUED, sequence=queued.sequence)

    def _flush_if_connected(self) -> None:
        """Replay now if a connect finished after the drain it triggered had already run."""
        if self.connectivity.is_connected and not self._closed:
            self.flush_queue()

    def _apply(self, write: PendingWrite, token: Optional[str]) -> Any:
        """Apply one write to the backend and deliver its events."""
        key = self._key(write.tag)

        if write.kind in (WriteKind.STORE, WriteKind.CLEAR_TAG):
            value = write.value if write.kind is WriteKind.STORE else ABSENT
            marker = self._expect_echo(key, value) if self._listening() else None
            try:
                self.store.write(key, value, token=token)
            except Exception:
                if marker:
                    self._forget_echo(marker)
                raise
            self._committed(write.tag, value)
            return to_host(value)

        if write.kind is WriteKind.APPEND_VALUE:
            committed = self._transact(key, lambda current: self._appended(write.tag, current, write.value), token)
            self._committed(write.tag, committed)
            return committed

        removed = []

        def pop_head(current: Any) -> Any:
            items = self._as_list(write.tag, current)
            if not items:
                raise EmptyListError(write.tag)
            removed[:] = [items.pop(0)]
            return items if items else ABSENT

        committed = self._transact(key, pop_head, token)
        self._committed(write.tag, committed)
        self.dispatcher.first_removed(removed[0])
        return removed[0]

    def _transact(self, key: str, fn: Callable[[Any], Any], token: Optional[str]) -> Any:
        """Store transaction that keeps exactly one echo marker for the committed value."""
        if not self._listening():
            return self.store.transact(key, fn, max_retries=self.config.max_transaction_retries, token=token)

        markers = []

        def tracked(current: Any) -> Any:
            new_value = fn(current)
            markers.append(self._expect_echo(key, new_value))
            return new_value

        try:
            committed = self.store.transact(key, tracked, max_retries=self.config.max_transaction_retries, token=token)
        except Exception:
            for marker in markers:
                self._forget_echo(marker)
            raise
        for marker in markers[:-1]:
            self._forget_echo(marker)
        return committed

    def _appended(self, tag: str, current: Any, value: Any) -> List[Any]:
        items = self._as_list(tag, current)
        items.append(value)
        return items

    @staticmethod
    def _as_list(tag: str, current: Any) -> List[Any]:
        if is_absent(current):
            return []
        if not isinstance(current, list):
            raise NotAListError(tag, current)
        return current

    def _committed(self, tag: str, value: Any) -> None:
        self._track_tag(tag, value)
        self.dispatcher.data_changed(tag, to_host(value))

    # Offline replay

    def _drain(self) -> DrainStats:
        self._draining.active = True
        try:
            stats = self.queue.drain(self._replay, on_failure=self._replay_failed)
        finally:
            self._draining.active = False

        if stats.halted_by == NetworkError.__name__:
            self.connectivity.mark_lost()
        elif stats.halted_by is not None:
            self.connectivity.transition(ConnectivityState.UNAUTHENTICATED)
            self.dispatcher.error("Replay", f"queued writes are waiting for authentication ({stats.remaining} pending)")
        if stats.applied or stats.failed:
            logger.info(f"Replay finished: {stats.applied} applied, {stats.failed} dropped, {stats.remaining} remaining")
        return stats

    def _replay(self, write: PendingWrite) -> Any:
        return self._call_with_token(lambda token: self._apply(write, token))

    def _replay_failed(self, write: PendingWrite, error: Exception) -> None:
        self.dispatcher.error(
            OPERATION_NAMES[write.kind],
            f"{error} (queued write #{write.sequence} for tag '{write.tag}')"
        )
