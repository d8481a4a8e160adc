"""
Delivery of terminal results to the host application.

The host implements HostCallbackSink. The engine never calls the sink
directly: events go through CallbackDispatcher, a single daemon thread fed by
a queue, so a slow or failing sink never holds up a worker.
"""

import logging
from queue import Queue
from threading import Event, Thread
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


class HostCallbackSink:
    """
    Receiver of engine outcomes. Every method is fire-and-forget.

    Subclass and override the events of interest; the defaults do nothing.
    """

    def on_data_changed(self, tag: str, value: Any) -> None:
        pass

    def on_got_value(self, tag: str, value: Any) -> None:
        pass

    def on_first_removed(self, value: Any) -> None:
        pass

    def on_tag_list(self, tags: List[str]) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class LoggingSink(HostCallbackSink):
    """Sink that writes every event to the log."""

    def __init__(self, logger_name: str = "tagsync.events"):
        self.log = logging.getLogger(logger_name)

    def on_data_changed(self, tag, value):
        self.log.info(f"DataChanged {tag} = {value!r}")

    def on_got_value(self, tag, value):
        self.log.info(f"GotValue {tag} = {value!r}")

    def on_first_removed(self, value):
        self.log.info(f"FirstRemoved {value!r}")

    def on_tag_list(self, tags):
        self.log.info(f"TagList {tags}")

    def on_error(self, message):
        self.log.error(f"FirebaseError {message}")


class CallbackDispatcher(Thread):

    _STOP = None
    _FLUSH = "_flush"

    def __init__(self, sink: Optional[HostCallbackSink] = None):
        super(CallbackDispatcher, self).__init__(name="TagSyncCallbacks", daemon=True)
        self.sink = sink or HostCallbackSink()
        self._events: "Queue[Optional[Tuple[str, tuple]]]" = Queue()
        self._stop_event = Event()

    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def post(self, method: str, *args: Any) -> None:
        """Queue a call to ``sink.<method>(*args)``."""
        if self.stopped():
            logger.warning(f"Dropping {method} posted after dispatcher stopped")
            return
        self._events.put((method, args))

    def data_changed(self, tag: str, value: Any) -> None:
        self.post("on_data_changed", tag, value)

    def got_value(self, tag: str, value: Any) -> None:
        self.post("on_got_value", tag, value)

    def first_removed(self, value: Any) -> None:
        self.post("on_first_removed", value)

    def tag_list(self, tags: List[str]) -> None:
        self.post("on_tag_list", tags)

    def error(self, operation: str, message: str) -> None:
        self.post("on_error", f"{operation}: {message}")

    def run(self) -> None:
        while True:
            item = self._events.get()
            if item is self._STOP:
                break
            method, args = item
            if method == self._FLUSH:
                args[0].set()
                continue
            try:
                getattr(self.sink, method)(*args)
            except Exception as e:
                logger.error(f"Error in host callback {method}: {e}")

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued event has been delivered."""
        if not self.is_alive():
            return
        done = Event()
        self._events.put((self._FLUSH, (done,)))
        done.wait(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._events.put(self._STOP)
        if self.is_alive():
            self.join(timeout=timeout)
