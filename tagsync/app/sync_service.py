"""
Background sync service.

Owns a SyncEngine for the lifetime of a host process. A supervisor thread
builds the engine, keeps reconnecting it while the backend is unreachable,
and publishes a ServiceState snapshot whenever connectivity changes.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Optional, Tuple

from tagsync.app.callbacks import HostCallbackSink
from tagsync.app.connectivity import ConnectivityState
from tagsync.config.app_config import AppConfig
from tagsync.errors import AuthError, TagSyncError
from tagsync.sync.remote_store import RemoteStore
from tagsync.sync.sync_engine import SyncEngine

RECENT_ERRORS = 10


@dataclass
class ServiceState:
    """Snapshot of the service as last reported."""
    connectivity: ConnectivityState = ConnectivityState.DISCONNECTED
    message: str = ""
    last_connected: Optional[datetime] = None
    pending_writes: int = 0
    error_count: int = 0
    recent_errors: Deque[Tuple[datetime, str]] = field(
        default_factory=lambda: deque(maxlen=RECENT_ERRORS)
    )


class SyncService:
    """
    Keeps a SyncEngine connected in the background.

    The supervisor retries the connection every ``reconnect_interval``
    seconds while the engine is DISCONNECTED. Losing an established
    connection wakes it immediately. An UNAUTHENTICATED engine is left alone:
    it re-authenticates on the next operation that needs a token.
    """

    def __init__(
        self,
        config: AppConfig,
        store: RemoteStore,
        sink: Optional[HostCallbackSink] = None,
        on_status_change: Optional[Callable[[ServiceState], None]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            config: Application configuration
            store: Backend adapter handed to the engine
            sink: Receiver of host callbacks
            on_status_change: Called with the ServiceState after every change
            logger: Logger to use instead of the module logger
        """
        self.config = config
        self.store = store
        self.sink = sink
        self.on_status_change = on_status_change
        self.logger = logger or logging.getLogger(__name__)

        self._state = ServiceState()
        self._state_lock = threading.Lock()
        self._engine: Optional[SyncEngine] = None
        self._supervisor: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._wake = threading.Event()

    @property
    def engine(self) -> Optional[SyncEngine]:
        return self._engine

    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        supervisor = self._supervisor
        return supervisor is not None and supervisor.is_alive()

    def _report(
        self,
        connectivity: ConnectivityState,
        message: str = "",
        error: Optional[Exception] = None
    ) -> None:
        """Record a status change and pass the new state to the host."""
        now = datetime.now()
        with self._state_lock:
            state = self._state
            state.connectivity = connectivity
            state.message = message
            if connectivity is ConnectivityState.CONNECTED:
                state.last_connected = now
            if error is not None:
                state.error_count += 1
                state.recent_errors.append((now, str(error)))

        self.logger.info(f"Sync service {connectivity.value}: {message}")

        if self.on_status_change is None:
            return
        try:
            self.on_status_change(state)
        except Exception as e:
            self.logger.error(f"Status callback raised: {e}")

    def _on_connectivity_change(self, old: ConnectivityState, new: ConnectivityState) -> None:
        self._report(new, f"{old.value} -> {new.value}")
        if old is ConnectivityState.CONNECTED:
            self._wake.set()

    def _refresh_pending(self) -> None:
        engine = self._engine
        if engine is None:
            return
        pending = engine.queue.count_pending()
        with self._state_lock:
            self._state.pending_writes = pending

    def _try_connect(self) -> None:
        try:
            connected = self._engine.connect().result().value
        except AuthError as e:
            # The engine already told the sink; the next operation retries
            self._report(ConnectivityState.UNAUTHENTICATED, str(e), error=e)
            return
        except TagSyncError as e:
            self._report(self._engine.connectivity.state, str(e), error=e)
            return
        if not connected:
            self.logger.debug("Backend still unreachable")

    def _supervise(self) -> None:
        interval = self.config.sync.reconnect_interval
        try:
            self._engine = SyncEngine(
                self.config.sync,
                self.store,
                sink=self.sink,
                max_workers=self.config.workers.max_workers
            )
            self._engine.connectivity.add_listener(self._on_connectivity_change)
            self._try_connect()

            while not self._stopping.is_set():
                self._refresh_pending()
                if self._engine.connectivity.state is ConnectivityState.DISCONNECTED:
                    self._try_connect()

                self._wake.wait(timeout=interval)
                self._wake.clear()
                # Let a backend that just dropped us settle before reconnecting
                self._stopping.wait(timeout=min(1.0, interval))
        except Exception as e:
            self.logger.exception(f"Sync supervisor failed: {e}")
            self._report(ConnectivityState.DISCONNECTED, str(e), error=e)
        finally:
            self._close_engine()

    def _close_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.close()
        except Exception as e:
            self.logger.error(f"Engine did not close cleanly: {e}")

    def start(self) -> bool:
        """Start the supervisor. Returns False if it is already running."""
        if self.is_running:
            self.logger.warning("Sync service already started")
            return False

        self._stopping.clear()
        self._supervisor = threading.Thread(target=self._supervise, name="TagSyncService", daemon=True)
        self._supervisor.start()
        return True

    def wait_until_ready(self, timeout: float = 10.0) -> bool:
        """Wait until the engine exists. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._engine is None and time.monotonic() < deadline:
            if not self.is_running:
                return False
            self._stopping.wait(0.01)
        return self._engine is not None

    def stop(self, timeout: float = 10.0) -> bool:
        """
        Stop the supervisor and close the engine.

        Returns:
            False if the supervisor was still running after ``timeout``
        """
        if not self.is_running:
            return True

        self.logger.info("Stopping sync service")
        self._stopping.set()
        self._wake.set()
        self._supervisor.join(timeout=timeout)
        if self._supervisor.is_alive():
            self.logger.warning(f"Sync service still running after {timeout}s")
            return False

        self._report(ConnectivityState.DISCONNECTED, "stopped")
        return True

    def get_status_summary(self) -> dict:
        state = self.state
        with self._state_lock:
            recent = [{'time': when.isoformat(), 'error': text} for when, text in list(state.recent_errors)[-3:]]
        return {
            'connectivity': state.connectivity.value,
            'message': state.message,
            'running': self.is_running,
            'last_connected': state.last_connected.isoformat() if state.last_connected else None,
            'pending_writes': state.pending_writes,
            'error_count': state.error_count,
            'recent_errors': recent,
        }
