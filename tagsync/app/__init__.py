from .callbacks import CallbackDispatcher, HostCallbackSink, LoggingSink
from .connectivity import ConnectivityMonitor, ConnectivityState

__all__ = [
    'CallbackDispatcher',
    'ConnectivityMonitor',
    'ConnectivityState',
    'HostCallbackSink',
    'LoggingSink',
]
