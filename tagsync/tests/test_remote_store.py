"""
Tests for MemoryRemoteStore and the shared transaction loop.
"""
import threading
from unittest.mock import patch

import pytest

from tagsync.errors import AuthError, ConflictExceeded, CredentialRejected, NetworkError
from tagsync.models.values import ABSENT
from tagsync.sync.remote_store import MemoryRemoteStore


class TestMemoryRemoteStoreData:
    """Test cases for reads, writes and conditional writes."""

    @pytest.mark.unit
    def test_unset_key_reads_absent(self, store):
        assert store.read_versioned("dev/game/x") == (ABSENT, 0)

    @pytest.mark.unit
    def test_write_bumps_version(self, store):
        first = store.write("dev/game/x", 1)
        second = store.write("dev/game/x", 2)

        assert second > first
        assert store.read_versioned("dev/game/x") == (2, second)

    @pytest.mark.unit
    def test_compare_and_set_with_stale_version(self, store):
        """Test that a conditional write loses against an intervening write."""
        _, version = store.read_versioned("dev/game/x")
        store.write("dev/game/x", "other")

        assert store.compare_and_set("dev/game/x", version, "mine") is None
        assert store.read("dev/game/x") == "other"

    @pytest.mark.unit
    def test_compare_and_set_with_current_version(self, store):
        _, version = store.read_versioned("dev/game/x")

        assert store.compare_and_set("dev/game/x", version, "mine") is not None
        assert store.read("dev/game/x") == "mine"

    @pytest.mark.unit
    def test_writing_absent_deletes(self, store):
        store.write("dev/game/x", 1)
        store.write("dev/game/x", ABSENT)

        assert store.snapshot() == {}
        assert store.read("dev/game/x") is ABSENT

    @pytest.mark.unit
    def test_reads_return_copies(self, store):
        """Test that mutating a read value does not change the store."""
        store.write("dev/game/x", [1, 2])

        value = store.read("dev/game/x")
        value.append(3)

        assert store.read("dev/game/x") == [1, 2]

    @pytest.mark.unit
    def test_list_keys_by_prefix(self, store):
        store.write("dev/game/b", 1)
        store.write("dev/game/a", 1)
        store.write("dev/other/c", 1)

        assert store.list_keys("dev/game/") == ["dev/game/a", "dev/game/b"]

    @pytest.mark.unit
    def test_ping(self, store):
        store.ping()
        store.set_online(False)
        with pytest.raises(NetworkError):
            store.ping()


class TestTransact:
    """Test cases for RemoteStore.transact."""

    @pytest.mark.unit
    def test_transact_applies_function(self, store):
        store.write("k", [1])

        committed = store.transact("k", lambda current: current + [2])

        assert committed == [1, 2]
        assert store.read("k") == [1, 2]

    @pytest.mark.unit
    def test_transact_receives_absent_for_unset_key(self, store):
        seen = []

        store.transact("k", lambda current: seen.append(current) or "v")

        assert seen == [ABSENT]

    @pytest.mark.unit
    def test_transact_retries_after_conflict(self, store):
        """Test that the function is re-run on the newer value."""
        store.write("k", [1])
        calls = []

        def fn(current):
            calls.append(list(current))
            if len(calls) == 1:
                store.write("k", [1, "other"])
            return current + ["mine"]

        committed = store.transact("k", fn)

        assert calls == [[1], [1, "other"]]
        assert committed == [1, "other", "mine"]

    @pytest.mark.unit
    def test_transact_gives_up_after_max_retries(self, store):
        counter = iter(range(1000))

        def fn(current):
            store.write("k", next(counter))
            return "mine"

        with patch('tagsync.sync.remote_store.time.sleep'):
            with pytest.raises(ConflictExceeded) as exc_info:
                store.transact("k", fn, max_retries=4)

        assert exc_info.value.attempts == 4
        assert exc_info.value.key == "k"

    @pytest.mark.unit
    def test_function_error_aborts_without_write(self, store):
        store.write("k", "before")

        def fn(current):
            raise ValueError("nope")

        with pytest.raises(ValueError):
            store.transact("k", fn)

        assert store.read("k") == "before"

    @pytest.mark.unit
    def test_function_gets_private_copy(self, store):
        """Test that mutating the argument of a losing attempt leaks nothing."""
        store.write("k", [1])

        store.transact("k", lambda current: current.append(2) or current)

        assert store.read("k") == [1, 2]

    @pytest.mark.concurrency
    def test_concurrent_transactions_lose_no_update(self, store):
        def worker(n):
            for i in range(25):
                store.transact("k", lambda current, v=(n, i): ([] if current is ABSENT else current) + [v])

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store.read("k")) == 100


class TestSubscriptions:
    """Test cases for change streams."""

    @pytest.mark.unit
    def test_stream_receives_matching_writes(self, store):
        stream = store.subscribe("dev/game/")
        store.write("dev/other/x", 1)
        store.write("dev/game/x", 2)
        stream.close()

        events = list(stream)

        assert [(event.key, event.value) for event in events] == [("dev/game/x", 2)]

    @pytest.mark.unit
    def test_stream_fails_when_backend_goes_offline(self, store):
        stream = store.subscribe("dev/game/")

        store.set_online(False)

        with pytest.raises(NetworkError):
            list(stream)

    @pytest.mark.unit
    def test_closed_stream_is_unsubscribed(self, store):
        stream = store.subscribe("dev/game/")
        stream.close()

        store.write("dev/game/x", 1)

        assert list(stream) == []


class TestAuthentication:
    """Test cases for credentials in MemoryRemoteStore."""

    @pytest.mark.unit
    def test_authenticate_issues_credential(self, store):
        credential = store.authenticate("dev-token", "dev/game/")

        assert credential.token.startswith("tok-")
        assert credential.issued_for == "dev/game/"
        assert credential.is_valid()
        assert store.auth_calls == 1

    @pytest.mark.unit
    def test_unknown_developer_token_refused(self):
        store = MemoryRemoteStore(developer_tokens={"good"})

        with pytest.raises(AuthError):
            store.authenticate("bad", "dev/game/")

    @pytest.mark.unit
    def test_require_auth_rejects_unknown_token(self):
        store = MemoryRemoteStore(require_auth=True)

        with pytest.raises(CredentialRejected):
            store.read("k", token="forged")

        token = store.authenticate("dev-token", "dev/game/").token
        assert store.read("k", token=token) is ABSENT

    @pytest.mark.unit
    def test_revoked_tokens_are_rejected(self):
        store = MemoryRemoteStore(require_auth=True)
        token = store.authenticate("dev-token", "dev/game/").token

        store.revoke_tokens()

        with pytest.raises(CredentialRejected):
            store.write("k", 1, token=token)

    @pytest.mark.unit
    def test_authenticate_offline_raises_network_error(self, store):
        store.set_online(False)

        with pytest.raises(NetworkError):
            store.authenticate("dev-token", "dev/game/")
