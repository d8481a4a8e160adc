"""
Mock tag store server for local development and testing.

Speaks the REST protocol HttpRemoteStore expects, on top of an in-memory
store, so the client can be exercised without a real cloud backend.

Usage:
    python -m tagsync.mock_api.server
    tagsync mock-server --port 8080

Endpoints:
    GET    /health                 - Health check
    GET    /{key}.json             - Read a value (ETag header included)
    GET    /{key}.json?shallow=true - List the children of a path
    GET    /{key}.json + Accept: text/event-stream - Stream changes
    PUT    /{key}.json             - Write a value (honours if-match)
    DELETE /{key}.json             - Delete a value (honours if-match)
    POST   /auth/token.json        - Exchange a developer token for a credential
"""

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlparse

from tagsync.errors import AuthError, NetworkError
from tagsync.models.values import ABSENT, dumps, is_absent
from tagsync.sync.remote_store import MemoryRemoteStore

logger = logging.getLogger(__name__)


class MockTagStoreServer(ThreadingHTTPServer):
    """HTTP server holding the backing store and its open event streams."""

    daemon_threads = True

    def __init__(self, server_address: Tuple[str, int], store: Optional[MemoryRemoteStore] = None):
        super().__init__(server_address, MockAPIHandler)
        self.store = store or MemoryRemoteStore()
        self.streams = []
        self.streams_lock = threading.Lock()

    def close_streams(self) -> None:
        with self.streams_lock:
            streams, self.streams = self.streams, []
        for stream in streams:
            stream.close()

    def shutdown(self) -> None:
        self.close_streams()
        super().shutdown()

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"


class MockAPIHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the mock tag store."""

    server: MockTagStoreServer

    protocol_version = 'HTTP/1.1'
    KEEP_ALIVE_INTERVAL = 30.0  # seconds

    def _send_json_response(self, status_code: int, data: Any, etag: Optional[Any] = None):
        """Send a JSON response."""
        body = dumps(data).encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        if etag is not None:
            self.send_header('ETag', str(etag))
        self.end_headers()
        self.wfile.write(body)

    def _parse(self) -> Tuple[str, Dict[str, str]]:
        parsed = urlparse(self.path)
        path = unquote(parsed.path).lstrip('/')
        if path.endswith('.json'):
            path = path[:-len('.json')]
        query = {name: values[-1] for name, values in parse_qs(parsed.query).items()}
        return path.strip('/'), query

    def _read_body(self) -> Any:
        content_length = int(self.headers.get('Content-Length', 0))
        if not content_length:
            return None
        return json.loads(self.rfile.read(content_length).decode('utf-8'))

    def _subtree(self, key: str, token: Optional[str]) -> Any:
        """Value at ``key``, or the nested children under it."""
        store = self.server.store
        value, version = store.read_versioned(key, token=token)
        if not is_absent(value):
            return value, version
        prefix = f"{key}/" if key else ""
        children: Dict[str, Any] = {}
        for child_key in store.list_keys(prefix, token=token):
            node = children
            parts = child_key[len(prefix):].split('/')
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = store.read(child_key, token=token)
        return (children or None), version

    def _guarded(self, action) -> None:
        try:
            action()
        except AuthError as e:
            self._send_json_response(401, {'error': str(e)})
        except NetworkError as e:
            self._send_json_response(503, {'error': str(e)})
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON: {e}")
            self._send_json_response(400, {'error': 'Invalid JSON'})
        except Exception as e:
            logger.error(f"Error processing request: {e}")
            self._send_json_response(500, {'error': str(e)})

    def do_GET(self):
        """Handle GET requests."""
        if self.path == '/health':
            self._send_json_response(200, {'status': 'healthy'})
            return

        key, query = self._parse()
        token = query.get('auth')

        if 'text/event-stream' in self.headers.get('Accept', ''):
            self._guarded(lambda: self._stream(key, token))
            return

        def read():
            store = self.server.store
            if query.get('shallow') == 'true':
                prefix = f"{key}/" if key else ""
                names = {k[len(prefix):].split('/')[0]: True for k in store.list_keys(prefix, token=token)}
                self._send_json_response(200, names or None)
                return
            value, version = self._subtree(key, token)
            self._send_json_response(200, None if is_absent(value) else value, etag=version)

        self._guarded(read)

    def _stream(self, key: str, token: Optional[str]) -> None:
        store = self.server.store
        prefix = f"{key}/" if key else ""
        stream = store.subscribe(prefix, token=token)
        snapshot, _ = self._subtree(key, token)

        self.send_response(200)
        self.send_header('Content-Type', 'text/event-stream; charset=utf-8')
        self.send_header('Cache-Control', 'no-cache')
        self.send_header('Transfer-Encoding', 'chunked')
        self.end_headers()
        with self.server.streams_lock:
            self.server.streams.append(stream)

        try:
            self._send_event('put', {'path': '/', 'data': snapshot})
            while True:
                try:
                    event = stream.next_event(timeout=self.KEEP_ALIVE_INTERVAL)
                except queue.Empty:
                    self._send_event('keep-alive', None)
                    continue
                if event is None:
                    break
                data = None if is_absent(event.value) else event.value
                self._send_event('put', {'path': '/' + event.key[len(prefix):], 'data': data})
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Stream client went away")
        except NetworkError:
            self._send_quietly(lambda: self._send_event('cancel', {'error': 'backend unavailable'}))
        finally:
            stream.close()
            with self.server.streams_lock:
                if stream in self.server.streams:
                    self.server.streams.remove(stream)
            self._send_quietly(lambda: self._send_chunk(b""))
            self.close_connection = True

    def _send_chunk(self, payload: bytes) -> None:
        self.wfile.write(f"{len(payload):X}\r\n".encode('ascii') + payload + b"\r\n")
        self.wfile.flush()

    def _send_event(self, event: str, data: Any) -> None:
        self._send_chunk(f"event: {event}\ndata: {dumps(data)}\n\n".encode('utf-8'))

    def _send_quietly(self, send) -> None:
        try:
            send()
        except OSError as e:
            logger.debug(f"Could not finish event stream: {e}")

    def _conditional_write(self, key: str, token: Optional[str], value: Any) -> None:
        store = self.server.store
        if_match = self.headers.get('if-match')
        if if_match is None:
            version = store.write(key, value, token=token)
        else:
            try:
                expected = int(if_match)
            except ValueError:
                expected = None
            version = store.compare_and_set(key, expected, value, token=token) if expected is not None else None
            if version is None:
                _, current = store.read_versioned(key, token=token)
                self._send_json_response(412, {'error': 'ETag mismatch'}, etag=current)
                return
        logger.info(f"{self.command} {key} -> version {version}")
        self._send_json_response(200, None if is_absent(value) else value, etag=version)

    def do_PUT(self):
        """Handle PUT requests."""
        key, query = self._parse()

        def put():
            value = self._read_body()
            self._conditional_write(key, query.get('auth'), ABSENT if value is None else value)

        self._guarded(put)

    def do_DELETE(self):
        """Handle DELETE requests."""
        key, query = self._parse()
        self._guarded(lambda: self._conditional_write(key, query.get('auth'), ABSENT))

    def do_POST(self):
        """Handle POST requests."""
        key, _ = self._parse()
        if key != 'auth/token':
            self.close_connection = True
            self._send_json_response(404, {'error': 'Not found'})
            return

        def issue():
            body = self._read_body() or {}
            credential = self.server.store.authenticate(body.get('developerToken'), body.get('issuedFor', ''))
            expires_in = (credential.valid_until - datetime.now(timezone.utc)).total_seconds()
            logger.info(f"Issued credential for '{credential.issued_for}'")
            self._send_json_response(201, {
                'token': credential.token,
                'issuedFor': credential.issued_for,
                'expiresIn': max(0, int(expires_in))
            })

        self._guarded(issue)

    def log_message(self, format, *args):
        """Override to use Python logging instead of stderr."""
        logger.debug(f"{self.address_string()} - {format % args}")


def serve_in_background(host: str = '127.0.0.1', port: int = 0,
                        store: Optional[MemoryRemoteStore] = None) -> MockTagStoreServer:
    """Start a server on a daemon thread. Port 0 picks a free port."""
    server = MockTagStoreServer((host, port), store)
    thread = threading.Thread(target=server.serve_forever, name="MockTagStore", daemon=True)
    thread.start()
    return server


def run_server(host: str = '0.0.0.0', port: int = 8080, store: Optional[MemoryRemoteStore] = None):
    """Run the mock tag store server."""
    httpd = MockTagStoreServer((host, port), store)
    logger.info(f"Mock tag store running on http://{host}:{port}")
    logger.info("Endpoints:")
    logger.info("  GET    /health            - Health check")
    logger.info("  GET    /{key}.json        - Read, list (?shallow=true) or stream")
    logger.info("  PUT    /{key}.json        - Write (honours if-match)")
    logger.info("  DELETE /{key}.json        - Delete (honours if-match)")
    logger.info("  POST   /auth/token.json   - Issue a credential")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server shutting down...")
    finally:
        httpd.server_close()


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    run_server()
