"""
TagSync command-line client.

Talks to a tag store backend through SyncEngine, so the CLI exercises the
same online, queued and replay paths a host application does.

Usage:
    tagsync store score 42
    tagsync append events '{"kind": "login"}'
    tagsync remove-first events
    tagsync get score --default 0
    tagsync tags
    tagsync watch --duration 60
    tagsync --persist-offline queue-status
    tagsync mock-server --port 8080

Exit codes:
    0  success
    1  operation error
    2  authentication error
    3  write accepted into the offline queue
"""

import argparse
import json
import logging
import sys
import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict
from typing import Any, List, Optional

from tagsync.app.callbacks import HostCallbackSink
from tagsync.config.app_config import AppConfig
from tagsync.errors import AuthError, TagSyncError
from tagsync.models.values import dumps
from tagsync.sync.http_remote_store import HttpRemoteStore
from tagsync.sync.offline_queue import OfflineQueue
from tagsync.sync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AUTH_ERROR = 2
EXIT_QUEUED = 3


class PrintingSink(HostCallbackSink):
    """Writes change notifications and errors to the terminal."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.errors: List[str] = []

    def on_data_changed(self, tag, value):
        print(f"{tag} = {dumps(value)}", file=self.out, flush=True)

    def on_error(self, message):
        self.errors.append(message)
        logger.error(message)


def parse_value(text: str) -> Any:
    """JSON when it parses, otherwise the literal string."""
    try:
        return json.loads(text)
    except ValueError:
        return text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tagsync",
        description="Tag store synchronization client",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--backend-url", help="Backend root URL (TAGSYNC_BACKEND_URL)")
    parser.add_argument("--project", help="Project bucket (TAGSYNC_PROJECT_BUCKET)")
    parser.add_argument("--developer", help="Developer bucket (TAGSYNC_DEVELOPER_BUCKET)")
    parser.add_argument("--api-key", help="Override API key (TAGSYNC_OVERRIDE_API_KEY)")
    parser.add_argument("--developer-token", help="Developer token (TAGSYNC_DEVELOPER_TOKEN)")
    parser.add_argument("--persist-offline", action="store_true", default=None,
                        help="Keep queued writes on disk across runs")
    parser.add_argument("--queue-path", help="Offline queue database file")
    parser.add_argument("--timeout", type=float, default=10.0,
                        help="Seconds to wait for an operation (default: 10)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    get_parser = subparsers.add_parser("get", help="Read a tag")
    get_parser.add_argument("tag")
    get_parser.add_argument("--default", type=parse_value, default=None,
                            help="Value printed when the tag is unset")

    store_parser = subparsers.add_parser("store", help="Store a value")
    store_parser.add_argument("tag")
    store_parser.add_argument("value", type=parse_value)

    append_parser = subparsers.add_parser("append", help="Append to a list")
    append_parser.add_argument("tag")
    append_parser.add_argument("value", type=parse_value)

    remove_parser = subparsers.add_parser("remove-first", help="Pop the head of a list")
    remove_parser.add_argument("tag")

    clear_parser = subparsers.add_parser("clear", help="Delete a tag")
    clear_parser.add_argument("tag")

    subparsers.add_parser("tags", help="List the tags of the project")

    watch_parser = subparsers.add_parser("watch", help="Print changes as they happen")
    watch_parser.add_argument("--duration", type=float, default=None,
                              help="Stop after this many seconds (default: until Ctrl+C)")

    subparsers.add_parser("queue-status", help="Show writes waiting in the offline queue")
    subparsers.add_parser("flush", help="Replay the offline queue now")

    server_parser = subparsers.add_parser("mock-server", help="Run the mock backend")
    server_parser.add_argument("--host", default="0.0.0.0")
    server_parser.add_argument("--port", type=int, default=8080)
    server_parser.add_argument("--developer-token-accepted", action="append", dest="accepted_tokens",
                               help="Developer token the mock accepts (repeatable; default: any)")
    server_parser.add_argument("--require-auth", action="store_true",
                               help="Refuse data requests without a valid credential")

    return parser


def load_config(args: argparse.Namespace, environ=None) -> AppConfig:
    """Environment configuration with command-line overrides applied."""
    config = AppConfig.from_env(environ)
    sync = config.sync
    if args.backend_url:
        sync.backend_url = args.backend_url
    if args.project:
        sync.project_bucket = args.project
    if args.developer:
        sync.developer_bucket = args.developer
    if args.api_key:
        sync.override_api_key = args.api_key
    if args.developer_token:
        sync.developer_token = args.developer_token
    if args.persist_offline:
        sync.persist_offline = True
    if args.queue_path:
        sync.queue_path = args.queue_path
    sync.request_timeout = min(sync.request_timeout, args.timeout)
    return config


def _print_result(value: Any) -> None:
    print(dumps(value))


def _run_operation(engine: SyncEngine, args: argparse.Namespace) -> int:
    if args.command == "get":
        future = engine.get_value(args.tag, args.default)
    elif args.command == "store":
        future = engine.store_value(args.tag, args.value)
    elif args.command == "append":
        future = engine.append_value(args.tag, args.value)
    elif args.command == "remove-first":
        future = engine.remove_first(args.tag)
    elif args.command == "clear":
        future = engine.clear_tag(args.tag)
    else:
        future = engine.get_tag_list()

    result = future.result(timeout=args.timeout)
    if result.queued:
        note = "" if engine.queue.persistent else " (in memory only; use --persist-offline to keep it)"
        print(f"Backend unreachable, write queued as #{result.sequence}{note}", file=sys.stderr)
        return EXIT_QUEUED
    _print_result(result.value)
    return EXIT_OK


def _watch(engine: SyncEngine, duration: Optional[float]) -> int:
    print(f"Watching '{engine.namespace}' (Ctrl+C to stop)", file=sys.stderr)
    deadline = None if duration is None else time.monotonic() + duration
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def _queue_status(config: AppConfig) -> int:
    if not config.sync.persist_offline:
        print("Offline queue is in memory; nothing is kept between runs", file=sys.stderr)
        return EXIT_OK
    queue = OfflineQueue(config.sync.effective_queue_path)
    try:
        writes = queue.pending()
        print(f"{len(writes)} pending writes in {queue.db_path}")
        for write in writes:
            value = "" if write.value is None else f" {dumps(write.value)}"
            error = f" (last error: {write.last_error})" if write.last_error else ""
            print(f"  #{write.sequence} {write.kind.value} {write.tag}{value}{error}")
    finally:
        queue.close()
    return EXIT_OK


def _mock_server(args: argparse.Namespace) -> int:
    from tagsync.mock_api.server import run_server
    from tagsync.sync.remote_store import MemoryRemoteStore

    store = MemoryRemoteStore(developer_tokens=args.accepted_tokens, require_auth=args.require_auth)
    run_server(args.host, args.port, store)
    return EXIT_OK


def run(argv: Optional[List[str]] = None, environ=None) -> int:
    """Run one CLI command and return its exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.command is None:
        parser.print_help()
        return EXIT_ERROR
    if args.command == "mock-server":
        logging.getLogger("tagsync").setLevel(logging.DEBUG if args.verbose else logging.INFO)
        return _mock_server(args)

    config = load_config(args, environ)
    if args.command == "queue-status":
        return _queue_status(config)

    store = HttpRemoteStore(
        config.sync.backend_url,
        api_key=config.sync.effective_api_key,
        timeout=config.sync.request_timeout
    )
    sink = PrintingSink() if args.command == "watch" else HostCallbackSink()
    engine = SyncEngine(config.sync, store, sink=sink, max_workers=config.workers.max_workers)

    try:
        connected = engine.connect().result(timeout=args.timeout).value
        if not connected:
            logger.warning(f"Backend at {config.sync.backend_url} is unreachable")

        if args.command == "watch":
            if not connected:
                print("Backend unreachable", file=sys.stderr)
                return EXIT_ERROR
            return _watch(engine, args.duration)

        if args.command == "flush":
            stats = engine.flush_queue().result(timeout=args.timeout)
            print(json.dumps(asdict(stats), indent=2))
            return EXIT_OK if stats.remaining == 0 else EXIT_QUEUED

        return _run_operation(engine, args)

    except AuthError as e:
        print(f"Authentication failed: {e}", file=sys.stderr)
        return EXIT_AUTH_ERROR
    except TagSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except FutureTimeout:
        print(f"No answer within {args.timeout} seconds; backend unreachable?", file=sys.stderr)
        return EXIT_ERROR
    finally:
        engine.close()
        store.close()


def main() -> None:
    """Console script entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
