"""Per-account provider session cache with lazy refresh."""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..services.models import Provider, ProviderSession, StoredCredential
from ..state.stores import CredentialStore


logger = logging.getLogger(__name__)

Refresher = Callable[[StoredCredential], StoredCredential]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderSessionCache:
    """Caches one authoritative session per account for a single provider.

    Lookups for the same account are serialized so that a load-refresh-store
    sequence is never run twice concurrently for one account.
    """

    def __init__(
        self,
        provider: Provider,
        credential_store: CredentialStore,
        refresher: Optional[Refresher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        expiry_margin: timedelta = timedelta(minutes=5)
    ):
        """Initialize the cache.

        Args:
            provider: Provider whose sessions this cache holds
            credential_store: Where persisted credential material is loaded from
            refresher: Provider-specific refresh for expired material. Raises on failure.
            clock: Returns the current aware UTC time; defaults to the wall clock
            expiry_margin: Sessions are treated as expired this long before expires_at
        """
        self.provider = provider
        self.credential_store = credential_store
        self.refresher = refresher
        self.clock = clock or utcnow
        self.expiry_margin = expiry_margin

        self._sessions: Dict[str, ProviderSession] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def get_session(self, account_id: str) -> Optional[ProviderSession]:
        """Return a live session for the account, refreshing if needed.

        Returns:
            The session, or None when no credential exists or refresh failed
        """
        with self._lock_for(account_id):
            cached = self._sessions.get(account_id)
            if cached is not None and self._is_valid(cached.expires_at):
                logger.debug(f"Using cached {self.provider.value} session for {account_id}")
                return cached

            stored = self.credential_store.load_credential(self.provider, account_id)
            if stored is None:
                logger.info(f"No stored {self.provider.value} credential for {account_id}; authenticate first")
                return None

            if not self._is_valid(stored.expires_at):
                refreshed = self._refresh(stored)
                if refreshed is not None:
                    stored = refreshed
                elif self.clock() < stored.expires_at:
                    # Inside the early-refresh margin the old material still works
                    logger.info(f"Using {self.provider.value} credential for {account_id} until it expires at {stored.expires_at}")
                else:
                    return None

            session = ProviderSession.from_stored(stored)
            self._sessions[account_id] = session
            return session

    def put(self, session: ProviderSession) -> None:
        """Install a freshly authenticated session, replacing any prior one."""
        with self._lock_for(session.account_id):
            self._sessions[session.account_id] = session

    def invalidate(self, account_id: str) -> None:
        """Drop the cached session so the next lookup reloads it."""
        with self._lock_for(account_id):
            self._sessions.pop(account_id, None)
        logger.debug(f"Invalidated {self.provider.value} session for {account_id}")

    def _refresh(self, stored: StoredCredential) -> Optional[StoredCredential]:
        if self.refresher is None:
            logger.warning(f"{self.provider.value} credential for {stored.account_id} is expiring and cannot be refreshed")
            return None

        logger.info(f"Refreshing expiring {self.provider.value} credential for {stored.account_id}")
        try:
            refreshed = self.refresher(stored)
        except Exception as e:
            logger.warning(f"Failed to refresh {self.provider.value} credential for {stored.account_id}: {e}")
            return None

        if not self._is_valid(refreshed.expires_at):
            logger.warning(f"Refreshed {self.provider.value} credential for {stored.account_id} is already expired")
            return None

        try:
            self.credential_store.store_credential(refreshed)
        except Exception as e:
            # The new material is still good for this process
            logger.warning(f"Failed to persist refreshed credential for {stored.account_id}: {e}")

        return refreshed

    def _is_valid(self, expires_at: datetime) -> bool:
        return self.clock() < expires_at - self.expiry_margin

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock
