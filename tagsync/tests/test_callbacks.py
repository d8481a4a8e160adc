"""
Tests for host callback delivery.
"""
import logging
import threading
from unittest.mock import Mock

import pytest

from tagsync.app.callbacks import CallbackDispatcher, HostCallbackSink, LoggingSink


@pytest.fixture
def dispatcher_factory():
    dispatchers = []

    def factory(sink):
        dispatcher = CallbackDispatcher(sink)
        dispatcher.start()
        dispatchers.append(dispatcher)
        return dispatcher

    yield factory

    for dispatcher in dispatchers:
        dispatcher.stop()


class TestCallbackDispatcher:
    """Test cases for CallbackDispatcher."""

    @pytest.mark.unit
    def test_events_reach_sink(self, dispatcher_factory):
        sink = Mock(spec=HostCallbackSink)
        dispatcher = dispatcher_factory(sink)

        dispatcher.data_changed("score", 1)
        dispatcher.got_value("score", 1)
        dispatcher.first_removed("a")
        dispatcher.tag_list(["a", "b"])
        dispatcher.error("RemoveFirst", "list at tag 'q' is empty")
        dispatcher.flush(timeout=5)

        sink.on_data_changed.assert_called_once_with("score", 1)
        sink.on_got_value.assert_called_once_with("score", 1)
        sink.on_first_removed.assert_called_once_with("a")
        sink.on_tag_list.assert_called_once_with(["a", "b"])
        sink.on_error.assert_called_once_with("RemoveFirst: list at tag 'q' is empty")

    @pytest.mark.unit
    def test_events_keep_order(self, dispatcher_factory):
        received = []
        sink = HostCallbackSink()
        sink.on_data_changed = lambda tag, value: received.append(value)
        dispatcher = dispatcher_factory(sink)

        for i in range(100):
            dispatcher.data_changed("t", i)
        dispatcher.flush(timeout=5)

        assert received == list(range(100))

    @pytest.mark.unit
    def test_failing_sink_does_not_stop_delivery(self, dispatcher_factory):
        sink = Mock(spec=HostCallbackSink)
        sink.on_data_changed.side_effect = [Exception("host bug"), None]
        dispatcher = dispatcher_factory(sink)

        dispatcher.data_changed("a", 1)
        dispatcher.data_changed("b", 2)
        dispatcher.flush(timeout=5)

        assert sink.on_data_changed.call_count == 2

    @pytest.mark.unit
    def test_slow_sink_does_not_block_poster(self, dispatcher_factory):
        release = threading.Event()
        sink = HostCallbackSink()
        sink.on_error = lambda message: release.wait(5)
        dispatcher = dispatcher_factory(sink)

        dispatcher.error("Op", "first")
        dispatcher.error("Op", "second")

        assert dispatcher.is_alive()
        release.set()
        dispatcher.flush(timeout=5)

    @pytest.mark.unit
    def test_posts_after_stop_are_dropped(self):
        sink = Mock(spec=HostCallbackSink)
        dispatcher = CallbackDispatcher(sink)
        dispatcher.start()
        dispatcher.stop()

        dispatcher.data_changed("a", 1)

        assert not dispatcher.is_alive()
        sink.on_data_changed.assert_not_called()

    @pytest.mark.unit
    def test_default_sink_ignores_events(self, dispatcher_factory):
        dispatcher = dispatcher_factory(None)

        dispatcher.data_changed("a", 1)
        dispatcher.flush(timeout=5)

        assert isinstance(dispatcher.sink, HostCallbackSink)


class TestLoggingSink:
    """Test cases for LoggingSink."""

    @pytest.mark.unit
    def test_logs_events(self, caplog):
        sink = LoggingSink()

        with caplog.at_level(logging.INFO, logger="tagsync.events"):
            sink.on_data_changed("score", 1)
            sink.on_error("StoreValue: failed")

        assert "DataChanged score = 1" in caplog.text
        assert "StoreValue: failed" in caplog.text
