"""
HTTP adapter for a realtime-database style REST backend.

Protocol:
- ``GET/PUT/DELETE {url}/{key}.json`` read, write and delete values
- ``X-Firebase-ETag: true`` asks for the value's ETag; ``if-match`` makes a
  write conditional on it (412 when someone else wrote first)
- ``?shallow=true`` lists the children of a path
- ``Accept: text/event-stream`` on a GET opens a server-sent event stream
- ``POST {url}/auth/token`` exchanges a developer token for a credential
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import quote

import requests

from tagsync.errors import AuthError, CredentialRejected, NetworkError, RemoteStoreError
from tagsync.models.credential import Credential
from tagsync.models.values import ABSENT, dumps, fingerprint, is_absent
from tagsync.sync.remote_store import ChangeEvent, ChangeStream, RemoteStore

logger = logging.getLogger(__name__)


def parse_sse(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """
    Split a server-sent event stream into ``(event, data)`` pairs.

    Args:
        lines: Decoded lines of the stream, without line terminators

    Yields:
        Event name and the concatenated data lines of each event
    """
    event = "message"
    data: List[str] = []
    for line in lines:
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, field_value = line.partition(":")
        if field_value.startswith(" "):
            field_value = field_value[1:]
        if name == "event":
            event = field_value
        elif name == "data":
            data.append(field_value)
    if data:
        yield event, "\n".join(data)


class HttpChangeStream(ChangeStream):
    """Change stream backed by a streaming HTTP response."""

    def __init__(self, store: 'HttpRemoteStore', prefix: str, token: Optional[str]):
        self.store = store
        self.prefix = prefix
        self.token = token
        self._response: Optional[requests.Response] = None
        self._closed = threading.Event()

    def open(self) -> 'HttpChangeStream':
        self._response = self.store._send(
            "GET",
            self.prefix.rstrip("/"),
            token=self.token,
            headers={"Accept": "text/event-stream"},
            stream=True,
            timeout=(self.store.timeout, self.store.STREAM_READ_TIMEOUT)
        )
        return self

    def close(self) -> None:
        self._closed.set()
        if self._response is not None:
            self._response.close()

    def __iter__(self) -> Iterator[ChangeEvent]:
        if self._response is None:
            self.open()
        if self._response.encoding is None:
            self._response.encoding = "utf-8"
        try:
            # chunk_size=None yields each chunk as it arrives instead of waiting for a full buffer
            lines = self._response.iter_lines(chunk_size=None, decode_unicode=True)
            for event, data in parse_sse(line or "" for line in lines):
                if self._closed.is_set():
                    return
                for change in self._translate(event, data):
                    yield change
        except (NetworkError, RemoteStoreError, CredentialRejected):
            raise
        except Exception as e:
            if self._closed.is_set():
                return
            raise NetworkError(f"change stream interrupted: {e}") from e

    def _translate(self, event: str, data: str) -> List[ChangeEvent]:
        if event == "keep-alive":
            return []
        if event == "auth_revoked":
            raise CredentialRejected("backend revoked the stream credential")
        if event == "cancel":
            raise RemoteStoreError(f"backend cancelled the change stream: {data}")
        if event not in ("put", "patch"):
            logger.debug(f"Ignoring stream event '{event}'")
            return []

        message = json.loads(data)
        path = message.get("path", "/").strip("/")
        payload = message.get("data")

        if event == "patch" and not path:
            children = payload or {}
        elif not path:
            # Full snapshot of the prefix; null means everything is gone
            children = payload if isinstance(payload, dict) else {}
        else:
            child, _, rest = path.partition("/")
            if rest or event == "patch":
                # A nested part of one tag changed; report the whole tag
                key = self.prefix + child
                return [self._event(key, self.store.read(key, token=self.token))]
            children = {child: payload}

        return [
            self._event(self.prefix + name, ABSENT if value is None else value)
            for name, value in children.items()
        ]

    @staticmethod
    def _event(key: str, value: Any) -> ChangeEvent:
        return ChangeEvent(key, value, fingerprint(value))


class HttpRemoteStore(RemoteStore):
    """
    RemoteStore over HTTPS.

    The credential token travels as the ``auth`` query parameter; the API key,
    when configured, as ``key``.
    """

    DEFAULT_URL = "http://localhost:8080"
    USER_AGENT = "TagSync/0.1"
    STREAM_READ_TIMEOUT = 90.0  # seconds; the server sends keep-alives more often

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the HTTP store.

        Args:
            base_url: Root URL of the backend
            api_key: API key sent with every request
            timeout: Per-request timeout in seconds
            session: Session to use; a new one is created when omitted
        """
        self.base_url = (base_url or self.DEFAULT_URL).rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": self.USER_AGENT})

    def _url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key, safe='/')}.json"

    def _params(self, token: Optional[str], extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if token:
            params["auth"] = token
        if self.api_key:
            params["key"] = self.api_key
        if extra:
            params.update(extra)
        return params

    def _send(
        self,
        method: str,
        key: str,
        token: Optional[str] = None,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        stream: bool = False,
        timeout: Any = None
    ) -> requests.Response:
        """
        Send one request and map failures onto the error taxonomy.

        Returns:
            The response; 412 responses are returned to the caller

        Raises:
            NetworkError: Connection failures, timeouts and 5xx responses
            CredentialRejected: 401 and 403 responses
            RemoteStoreError: Any other 4xx response
        """
        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)
        try:
            response = self.session.request(
                method,
                self._url(key),
                params=self._params(token, params),
                data=None if body is None else dumps(body).encode("utf-8"),
                headers=request_headers,
                stream=stream,
                timeout=timeout or self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning(f"{method} {key} failed: {e}")
            raise NetworkError(f"{method} {key}: {e}") from e
        except requests.RequestException as e:
            logger.error(f"{method} {key} failed: {e}")
            raise RemoteStoreError(f"{method} {key}: {e}") from e

        status = response.status_code
        if status in (200, 201, 204, 412):
            return response
        reason = response.text[:200] if not stream else response.reason
        response.close()
        if status in (401, 403):
            raise CredentialRejected(f"{method} {key}: HTTP {status} {reason}")
        if status >= 500:
            raise NetworkError(f"{method} {key}: HTTP {status} {reason}")
        raise RemoteStoreError(f"{method} {key}: HTTP {status} {reason}")

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            # requests' JSONDecodeError is a ValueError
            raise RemoteStoreError(f"backend sent a body that is not JSON: {e}") from e

    @classmethod
    def _value(cls, response: requests.Response) -> Any:
        if not response.content:
            return ABSENT
        value = cls._json(response)
        return ABSENT if value is None else value

    def read_versioned(self, key: str, token: Optional[str] = None) -> Tuple[Any, Any]:
        response = self._send("GET", key, token=token, headers={"X-Firebase-ETag": "true"})
        return self._value(response), response.headers.get("ETag")

    def compare_and_set(self, key: str, expected_version: Any, value: Any,
                        token: Optional[str] = None) -> Optional[Any]:
        headers = {"if-match": str(expected_version)}
        if is_absent(value):
            response = self._send("DELETE", key, token=token, headers=headers)
        else:
            response = self._send("PUT", key, token=token, body=value, headers=headers)
        if response.status_code == 412:
            logger.debug(f"Conditional write on '{key}' lost the race")
            return None
        return response.headers.get("ETag") or fingerprint(value)

    def write(self, key: str, value: Any, token: Optional[str] = None) -> Any:
        if is_absent(value):
            response = self._send("DELETE", key, token=token)
        else:
            response = self._send("PUT", key, token=token, body=value)
        return response.headers.get("ETag") or fingerprint(value)

    def list_keys(self, prefix: str, token: Optional[str] = None) -> List[str]:
        response = self._send("GET", prefix.rstrip("/"), token=token, params={"shallow": "true"})
        children = self._value(response)
        if is_absent(children) or not isinstance(children, dict):
            return []
        return sorted(prefix + name for name in children)

    def subscribe(self, prefix: str, token: Optional[str] = None) -> ChangeStream:
        return HttpChangeStream(self, prefix, token).open()

    def authenticate(self, developer_token: Optional[str], issued_for: str) -> Credential:
        """
        Exchange the developer token for a short-lived credential.

        Raises:
            AuthError: If the backend refuses the developer token
            NetworkError: If the backend cannot be reached
        """
        try:
            response = self._send(
                "POST",
                "auth/token",
                body={"developerToken": developer_token, "issuedFor": issued_for}
            )
        except CredentialRejected as e:
            raise AuthError(f"developer token refused: {e}") from e
        except RemoteStoreError as e:
            raise AuthError(f"credential request failed: {e}") from e

        try:
            payload = self._json(response)
        except RemoteStoreError as e:
            raise AuthError(f"malformed credential response: {e}") from e
        try:
            token = payload["token"]
            expires_in = float(payload.get("expiresIn", 3600))
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(f"malformed credential response: {payload!r}") from e
        valid_until = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        return Credential(token=token, issued_for=payload.get("issuedFor", issued_for), valid_until=valid_until)

    def close(self) -> None:
        self.session.close()
