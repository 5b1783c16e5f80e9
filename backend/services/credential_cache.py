"""
Per-tenant storage-provider credential cache.

Holds the OAuth tokens used for Dropbox calls. Tokens are loaded from the
tenant record on first use and rewritten in place when a refresh succeeds.

Concurrent requests for the same tenant may both refresh; the last write wins.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from threading import Lock
from typing import Dict, Optional

import structlog

from pipeline.error_handler import StorageNotConnectedError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StorageCredential:
    """OAuth tokens of one tenant for one storage provider."""

    tenant_id: str
    access_token: str
    refresh_token: Optional[str] = None
    provider: str = "DROPBOX"


class CredentialStore(ABC):
    """
    Durable home of tenant credentials (the tenant record).
    """

    @abstractmethod
    def load_credential(self, tenant_id: str) -> Optional[StorageCredential]:
        """Return the tenant's credential, or None when storage is not connected."""
        pass

    @abstractmethod
    def save_access_token(self, tenant_id: str, access_token: str) -> None:
        """Persist a refreshed access token back to the tenant record."""
        pass


class CredentialCache:
    """
    Process-local cache in front of a CredentialStore.

    Example:
        >>> cache = CredentialCache(store)
        >>> credential = cache.get("tenant-1")
        >>> cache.update_access_token("tenant-1", "sl.new-token")
    """

    def __init__(self, store: CredentialStore):
        self.store = store
        self._entries: Dict[str, StorageCredential] = {}
        # Guards the dict only; refreshes themselves are not single-flighted
        self._lock = Lock()

    def get(self, tenant_id: str) -> StorageCredential:
        """
        Get the cached credential, loading it from the store on a miss.

        Raises:
            StorageNotConnectedError: If the tenant has no access token
        """
        with self._lock:
            credential = self._entries.get(tenant_id)
        if credential is not None:
            return credential

        credential = self.store.load_credential(tenant_id)
        if credential is None or not credential.access_token:
            logger.warning("storage_not_connected", tenant_id=tenant_id)
            raise StorageNotConnectedError(tenant_id)

        with self._lock:
            self._entries[tenant_id] = credential
        return credential

    def update_access_token(self, tenant_id: str, access_token: str) -> StorageCredential:
        """Persist a refreshed token and update the cached entry."""
        self.store.save_access_token(tenant_id, access_token)
        with self._lock:
            current = self._entries.get(tenant_id)
            if current is None:
                current = self.store.load_credential(tenant_id) or StorageCredential(tenant_id, access_token)
            updated = replace(current, access_token=access_token)
            self._entries[tenant_id] = updated

        logger.info("storage_token_refreshed", tenant_id=tenant_id)
        return updated

    def invalidate(self, tenant_id: str) -> None:
        """Drop a tenant's entry, e.g. after the tenant reconnects storage."""
        with self._lock:
            self._entries.pop(tenant_id, None)
