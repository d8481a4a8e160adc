"""
Credential lifecycle for the backend connection.

One TokenManager is shared by every tag. Refreshes are coalesced: callers
that need a fresh credential while a fetch is already in flight wait for that
fetch instead of starting their own, and they all see the same outcome.
"""

import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from tagsync.errors import AuthError, NetworkError, TagSyncError
from tagsync.models.credential import Credential

if TYPE_CHECKING:
    from tagsync.sync.remote_store import RemoteStore

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Owns the credential used to talk to the backend.

    The manager never persists credentials. A host that caches one may pass it
    in as ``cached_credential``; it is used while still valid and replaced by a
    fresh fetch once it expires.
    """

    DEFAULT_SKEW = 30.0  # seconds of validity required before reuse

    def __init__(
        self,
        store: "RemoteStore",
        developer_token: Optional[str],
        issued_for: str,
        cached_credential: Optional[Credential] = None,
        skew: float = DEFAULT_SKEW,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the token manager.

        Args:
            store: Backend used for authentication
            developer_token: Token identifying the developer account
            issued_for: Namespace the credential is requested for
            cached_credential: Credential previously cached by the host
            skew: Seconds of remaining validity required to reuse a credential
            clock: Returns the current time; defaults to UTC now
        """
        self.store = store
        self.issued_for = issued_for
        self.skew = skew
        self._developer_token = developer_token
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._credential: Optional[Credential] = cached_credential
        self._last_credential: Optional[Credential] = cached_credential
        self._inflight: Optional[Future] = None
        self._generation = 0
        self._lock = threading.Lock()
        self.fetch_count = 0

    @property
    def last_credential(self) -> Optional[Credential]:
        """Most recent credential, possibly expired or invalidated. Display only."""
        return self._last_credential

    @property
    def has_valid_credential(self) -> bool:
        with self._lock:
            return self._usable(self._credential)

    def _usable(self, credential: Optional[Credential]) -> bool:
        return credential is not None and credential.is_valid(self._clock(), self.skew)

    def current_token(self) -> Credential:
        """
        Return a usable credential, fetching a fresh one if needed.

        Returns:
            A credential valid for at least ``skew`` more seconds

        Raises:
            AuthError: If the backend refused to issue a credential
            NetworkError: If the backend could not be reached
        """
        with self._lock:
            if self._usable(self._credential):
                return self._credential
            inflight = self._inflight
            owner = inflight is None
            if owner:
                inflight = Future()
                self._inflight = inflight
                developer_token = self._developer_token
                generation = self._generation

        if not owner:
            return inflight.result()

        try:
            credential = self._fetch(developer_token)
        except Exception as e:
            with self._lock:
                if self._inflight is inflight:
                    self._inflight = None
            inflight.set_exception(e)
            raise
        with self._lock:
            self._last_credential = credential
            if self._inflight is inflight:
                self._inflight = None
            # An account switch during the fetch makes this credential stale
            if generation == self._generation:
                self._credential = credential
        inflight.set_result(credential)
        return credential

    def _fetch(self, developer_token: Optional[str]) -> Credential:
        self.fetch_count += 1
        logger.info(f"Requesting credential for '{self.issued_for}'")
        try:
            return self.store.authenticate(developer_token, self.issued_for)
        except AuthError:
            logger.error("Credential request was refused")
            raise
        except NetworkError as e:
            logger.warning(f"Credential request could not reach the backend: {e}")
            raise
        except TagSyncError as e:
            logger.error(f"Credential request failed: {e}")
            raise AuthError(f"could not obtain a credential: {e}") from e

    def invalidate(self) -> None:
        """Discard the cached credential. The next current_token() fetches anew."""
        with self._lock:
            if self._credential is not None:
                logger.info("Discarding cached credential")
            self._credential = None
            self._generation += 1
            # Later callers must not join a fetch started before this point
            self._inflight = None

    def set_developer_token(self, developer_token: Optional[str]) -> None:
        """Switch accounts. Implies invalidate()."""
        with self._lock:
            self._developer_token = developer_token
            self._credential = None
            self._generation += 1
            self._inflight = None
