"""
Connectivity state machine shared by the engine and the background service.
"""

import logging
import threading
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ConnectivityState(Enum):
    """Connection states to the backend."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNAUTHENTICATED = "unauthenticated"


# Transitions allowed by the cycle; UNAUTHENTICATED is reachable from anywhere.
_ALLOWED = {
    ConnectivityState.DISCONNECTED: {ConnectivityState.CONNECTING},
    ConnectivityState.CONNECTING: {ConnectivityState.CONNECTED, ConnectivityState.DISCONNECTED},
    ConnectivityState.CONNECTED: {ConnectivityState.DISCONNECTED},
    ConnectivityState.UNAUTHENTICATED: {ConnectivityState.CONNECTING},
}

Listener = Callable[[ConnectivityState, ConnectivityState], None]


class ConnectivityMonitor:
    """
    Tracks the connection state and notifies listeners of every transition.

    Listeners are called outside the lock with ``(old, new)`` on the thread
    that caused the transition.
    """

    def __init__(self, initial: ConnectivityState = ConnectivityState.DISCONNECTED):
        self._state = initial
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    @property
    def state(self) -> ConnectivityState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectivityState.CONNECTED

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def transition(self, new: ConnectivityState,
                   expected: Optional[ConnectivityState] = None) -> bool:
        """
        Move to ``new`` if the transition is legal.

        Args:
            new: Target state
            expected: Only transition if the current state is this one

        Returns:
            True if the state changed
        """
        with self._lock:
            old = self._state
            if expected is not None and old is not expected:
                return False
            if old is new:
                return False
            if new is not ConnectivityState.UNAUTHENTICATED and new not in _ALLOWED[old]:
                logger.debug(f"Ignoring transition {old.value} -> {new.value}")
                return False
            self._state = new

        logger.info(f"Connectivity: {old.value} -> {new.value}")
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"Error in connectivity listener: {e}")
        return True

    def begin_connect(self) -> bool:
        """Claim the right to connect. Only one caller wins while connecting."""
        current = self.state
        if current not in (ConnectivityState.DISCONNECTED, ConnectivityState.UNAUTHENTICATED):
            return False
        return self.transition(ConnectivityState.CONNECTING, expected=current)

    def mark_lost(self) -> bool:
        """Connection dropped. From CONNECTED or CONNECTING only."""
        current = self.state
        if current in (ConnectivityState.CONNECTED, ConnectivityState.CONNECTING):
            return self.transition(ConnectivityState.DISCONNECTED, expected=current)
        return False
