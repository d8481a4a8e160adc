import logging
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, Optional

from tagsync.errors import TagSyncError
from tagsync.sync.remote_store import ChangeEvent, ChangeStream, RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """Live registration for change notifications under a key prefix."""
    prefix: str
    last_delivered_version: Dict[str, Any] = field(default_factory=dict)


class ChangeListener(Thread):
    """Consumes a store's change stream and hands each event to the engine."""

    def __init__(
        self,
        store: RemoteStore,
        subscription: Subscription,
        token: Optional[str],
        on_event: Callable[[ChangeEvent], None],
        on_lost: Callable[[Exception], None]
    ):
        super(ChangeListener, self).__init__(name=f"TagSyncListener[{subscription.prefix}]", daemon=True)
        self.store = store
        self.subscription = subscription
        self.token = token
        self.on_event = on_event
        self.on_lost = on_lost
        self._stream: Optional[ChangeStream] = None
        self._stream_lock = Lock()
        self._stop_event = Event()
        self.subscribed = Event()

    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()
        with self._stream_lock:
            if self._stream is not None:
                try:
                    self._stream.close()
                except Exception as e:
                    logger.error(f"Error closing change stream: {e}")

    def run(self) -> None:
        logger.info(f"Subscribing to changes under '{self.subscription.prefix}'")
        try:
            stream = self.store.subscribe(self.subscription.prefix, token=self.token)
            with self._stream_lock:
                self._stream = stream
            self.subscribed.set()
            if self.stopped():
                stream.close()
                return

            for event in stream:
                if self.stopped():
                    break
                try:
                    self.on_event(event)
                except Exception as e:
                    logger.error(f"Error handling change on '{event.key}': {e}")
        except TagSyncError as e:
            if not self.stopped():
                logger.warning(f"Change stream lost: {e}")
                self.on_lost(e)
            return
        except Exception as e:
            if not self.stopped():
                logger.error(f"Unexpected error in change stream: {e}")
                self.on_lost(e)
            return

        if not self.stopped():
            logger.warning("Change stream ended unexpectedly")
            self.on_lost(ConnectionError("change stream ended"))
        logger.info("Stopping change listener")
