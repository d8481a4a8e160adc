"""
Tests for HttpRemoteStore and the server-sent event parsing.

This module covers:
- Request construction (URLs, parameters, headers)
- HTTP status mapping onto the error taxonomy
- Conditional writes and shallow listings
- Credential exchange
- Change stream event translation
"""
import json
from unittest.mock import Mock

import pytest
import requests

from tagsync.errors import AuthError, CredentialRejected, NetworkError, RemoteStoreError
from tagsync.models.values import ABSENT, fingerprint
from tagsync.sync.http_remote_store import HttpChangeStream, HttpRemoteStore, parse_sse


def _response(status=200, body=None, etag=None, raw=None):
    response = Mock()
    response.status_code = status
    response.headers = {"ETag": etag} if etag is not None else {}
    content = raw if raw is not None else json.dumps(body).encode("utf-8")
    response.content = content
    response.text = content.decode("utf-8")
    response.reason = "Reason"
    response.json.side_effect = lambda: json.loads(content.decode("utf-8"))
    return response


@pytest.fixture
def session():
    session = Mock()
    session.headers = {}
    return session


@pytest.fixture
def http_store(session):
    return HttpRemoteStore("https://db.example.com/", api_key="key-1", timeout=5.0, session=session)


class TestHttpRemoteStoreInit:
    """Test cases for initialization."""

    @pytest.mark.unit
    def test_defaults(self, session):
        store = HttpRemoteStore(session=session)
        assert store.base_url == HttpRemoteStore.DEFAULT_URL
        assert store.api_key is None
        assert session.headers["User-Agent"] == "TagSync/0.1"

    @pytest.mark.unit
    def test_trailing_slash_removed(self, http_store):
        assert http_store.base_url == "https://db.example.com"

    @pytest.mark.unit
    def test_creates_session_when_omitted(self):
        store = HttpRemoteStore()
        assert isinstance(store.session, requests.Session)
        store.close()


class TestReads:
    """Test cases for read_versioned and list_keys."""

    @pytest.mark.unit
    def test_read_versioned_request(self, http_store, session):
        session.request.return_value = _response(body=[1, 2], etag="etag-1")

        value, version = http_store.read_versioned("dev/game/score", token="tok")

        assert value == [1, 2]
        assert version == "etag-1"
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://db.example.com/dev/game/score.json")
        assert kwargs["params"] == {"auth": "tok", "key": "key-1"}
        assert kwargs["headers"]["X-Firebase-ETag"] == "true"
        assert kwargs["timeout"] == 5.0

    @pytest.mark.unit
    def test_null_reads_as_absent(self, http_store, session):
        session.request.return_value = _response(body=None, etag="null-etag")

        assert http_store.read_versioned("dev/game/x") == (ABSENT, "null-etag")

    @pytest.mark.unit
    def test_keys_are_quoted(self, http_store, session):
        session.request.return_value = _response(body=None)

        http_store.read("dev/game/high score")

        assert session.request.call_args[0][1] == "https://db.example.com/dev/game/high%20score.json"

    @pytest.mark.unit
    def test_list_keys_uses_shallow_query(self, http_store, session):
        session.request.return_value = _response(body={"b": True, "a": True})

        keys = http_store.list_keys("dev/game/", token="tok")

        assert keys == ["dev/game/a", "dev/game/b"]
        args, kwargs = session.request.call_args
        assert args[1] == "https://db.example.com/dev/game.json"
        assert kwargs["params"]["shallow"] == "true"

    @pytest.mark.unit
    def test_list_keys_of_empty_namespace(self, http_store, session):
        session.request.return_value = _response(body=None)

        assert http_store.list_keys("dev/game/") == []


class TestWrites:
    """Test cases for write and compare_and_set."""

    @pytest.mark.unit
    def test_write_puts_json(self, http_store, session):
        session.request.return_value = _response(body={"a": 1}, etag="etag-2")

        version = http_store.write("dev/game/x", {"a": 1}, token="tok")

        assert version == "etag-2"
        args, kwargs = session.request.call_args
        assert args[0] == "PUT"
        assert json.loads(kwargs["data"].decode("utf-8")) == {"a": 1}

    @pytest.mark.unit
    def test_writing_absent_deletes(self, http_store, session):
        session.request.return_value = _response(body=None)

        version = http_store.write("dev/game/x", ABSENT)

        assert session.request.call_args[0][0] == "DELETE"
        assert version == fingerprint(ABSENT)

    @pytest.mark.unit
    def test_compare_and_set_sends_if_match(self, http_store, session):
        session.request.return_value = _response(body=[1], etag="etag-3")

        assert http_store.compare_and_set("dev/game/x", "etag-2", [1]) == "etag-3"
        assert session.request.call_args[1]["headers"]["if-match"] == "etag-2"

    @pytest.mark.unit
    def test_compare_and_set_conflict(self, http_store, session):
        session.request.return_value = _response(status=412, body={"error": "mismatch"})

        assert http_store.compare_and_set("dev/game/x", "etag-2", [1]) is None

    @pytest.mark.unit
    def test_compare_and_set_absent_deletes(self, http_store, session):
        session.request.return_value = _response(body=None)

        http_store.compare_and_set("dev/game/x", "etag-2", ABSENT)

        args, kwargs = session.request.call_args
        assert args[0] == "DELETE"
        assert kwargs["headers"]["if-match"] == "etag-2"


class TestErrorMapping:
    """Test cases for mapping transport failures and statuses."""

    @pytest.mark.unit
    @pytest.mark.parametrize("status,error", [
        (401, CredentialRejected),
        (403, CredentialRejected),
        (404, RemoteStoreError),
        (400, RemoteStoreError),
        (500, NetworkError),
        (503, NetworkError),
    ])
    def test_status_mapping(self, http_store, session, status, error):
        session.request.return_value = _response(status=status, body={"error": "x"})

        with pytest.raises(error):
            http_store.read("dev/game/x")

    @pytest.mark.unit
    def test_connection_error(self, http_store, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(NetworkError):
            http_store.read("dev/game/x")

    @pytest.mark.unit
    def test_timeout(self, http_store, session):
        session.request.side_effect = requests.Timeout("slow")

        with pytest.raises(NetworkError):
            http_store.write("dev/game/x", 1)

    @pytest.mark.unit
    def test_other_request_errors(self, http_store, session):
        session.request.side_effect = requests.exceptions.InvalidURL("bad")

        with pytest.raises(RemoteStoreError):
            http_store.read("dev/game/x")

    @pytest.mark.unit
    def test_non_json_body_is_a_store_error(self, http_store, session):
        session.request.return_value = _response(status=200, raw=b"<html>maintenance</html>")

        with pytest.raises(RemoteStoreError, match="not JSON"):
            http_store.read("dev/game/x")


class TestAuthenticate:
    """Test cases for the credential exchange."""

    @pytest.mark.unit
    def test_authenticate_success(self, http_store, session):
        session.request.return_value = _response(
            status=201, body={"token": "tok-9", "expiresIn": 600, "issuedFor": "dev/game/"}
        )

        credential = http_store.authenticate("dev-token", "dev/game/")

        assert credential.token == "tok-9"
        assert credential.issued_for == "dev/game/"
        assert credential.is_valid(skew=500)
        assert not credential.is_valid(skew=700)
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://db.example.com/auth/token.json")
        assert json.loads(kwargs["data"].decode("utf-8")) == {
            "developerToken": "dev-token", "issuedFor": "dev/game/"
        }

    @pytest.mark.unit
    def test_refused_developer_token(self, http_store, session):
        session.request.return_value = _response(status=401, body={"error": "no"})

        with pytest.raises(AuthError) as exc_info:
            http_store.authenticate("bad", "dev/game/")

        assert not isinstance(exc_info.value, CredentialRejected)

    @pytest.mark.unit
    def test_malformed_credential_response(self, http_store, session):
        session.request.return_value = _response(status=200, body={"unexpected": True})

        with pytest.raises(AuthError, match="malformed"):
            http_store.authenticate("dev-token", "dev/game/")

    @pytest.mark.unit
    def test_non_json_credential_response(self, http_store, session):
        session.request.return_value = _response(status=201, raw=b"ok")

        with pytest.raises(AuthError, match="malformed"):
            http_store.authenticate("dev-token", "dev/game/")

    @pytest.mark.unit
    def test_unreachable_during_authenticate(self, http_store, session):
        session.request.side_effect = requests.ConnectionError("down")

        with pytest.raises(NetworkError):
            http_store.authenticate("dev-token", "dev/game/")


class TestParseSse:
    """Test cases for parse_sse."""

    @pytest.mark.unit
    def test_events_split_on_blank_lines(self):
        lines = [
            "event: put",
            'data: {"path": "/", "data": null}',
            "",
            "event: keep-alive",
            "data: null",
            "",
        ]

        assert list(parse_sse(lines)) == [
            ("put", '{"path": "/", "data": null}'),
            ("keep-alive", "null"),
        ]

    @pytest.mark.unit
    def test_comments_ignored_and_data_joined(self):
        lines = [": heartbeat", "data: first", "data: second", ""]

        assert list(parse_sse(lines)) == [("message", "first\nsecond")]

    @pytest.mark.unit
    def test_trailing_event_without_blank_line(self):
        assert list(parse_sse(["event: put", "data:{}"])) == [("put", "{}")]


class TestChangeStreamTranslation:
    """Test cases for HttpChangeStream._translate."""

    @pytest.fixture
    def stream(self):
        store = Mock()
        store.read.return_value = {"deep": 2}
        return HttpChangeStream(store, "dev/game/", "tok")

    @pytest.mark.unit
    def test_root_snapshot(self, stream):
        events = stream._translate("put", json.dumps({"path": "/", "data": {"a": 1, "b": [2]}}))

        assert sorted((e.key, e.value) for e in events) == [("dev/game/a", 1), ("dev/game/b", [2])]

    @pytest.mark.unit
    def test_null_snapshot_yields_nothing(self, stream):
        assert stream._translate("put", json.dumps({"path": "/", "data": None})) == []

    @pytest.mark.unit
    def test_child_put(self, stream):
        [event] = stream._translate("put", json.dumps({"path": "/score", "data": 5}))

        assert event.key == "dev/game/score"
        assert event.value == 5
        assert event.version == fingerprint(5)

    @pytest.mark.unit
    def test_child_delete(self, stream):
        [event] = stream._translate("put", json.dumps({"path": "/score", "data": None}))

        assert event.value is ABSENT

    @pytest.mark.unit
    def test_nested_change_rereads_whole_tag(self, stream):
        [event] = stream._translate("put", json.dumps({"path": "/config/deep", "data": 2}))

        assert event.key == "dev/game/config"
        assert event.value == {"deep": 2}
        stream.store.read.assert_called_once_with("dev/game/config", token="tok")

    @pytest.mark.unit
    def test_root_patch(self, stream):
        events = stream._translate("patch", json.dumps({"path": "/", "data": {"a": 1}}))

        assert [(e.key, e.value) for e in events] == [("dev/game/a", 1)]

    @pytest.mark.unit
    def test_keep_alive_ignored(self, stream):
        assert stream._translate("keep-alive", "null") == []

    @pytest.mark.unit
    def test_cancel_raises(self, stream):
        with pytest.raises(RemoteStoreError):
            stream._translate("cancel", "null")

    @pytest.mark.unit
    def test_auth_revoked_raises(self, stream):
        with pytest.raises(CredentialRejected):
            stream._translate("auth_revoked", "null")
