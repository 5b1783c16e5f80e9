"""
Tests for the per-tenant credential cache and the tenant-backed credential store.
"""

import pytest

from pipeline.error_handler import ErrorCode, StorageNotConnectedError
from services.credential_cache import CredentialCache, CredentialStore, StorageCredential


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, credentials=None):
        self.credentials = dict(credentials or {})
        self.loads = 0
        self.saved = []

    def load_credential(self, tenant_id):
        self.loads += 1
        return self.credentials.get(tenant_id)

    def save_access_token(self, tenant_id, access_token):
        self.saved.append((tenant_id, access_token))
        current = self.credentials[tenant_id]
        self.credentials[tenant_id] = StorageCredential(tenant_id, access_token, current.refresh_token)


@pytest.fixture
def backing_store():
    return InMemoryCredentialStore({
        "tenant-1": StorageCredential("tenant-1", "sl.old", "refresh-1"),
        "tenant-empty": StorageCredential("tenant-empty", ""),
    })


class TestCredentialCache:
    """Test cases for CredentialCache."""

    def test_loads_once_then_serves_from_cache(self, backing_store):
        cache = CredentialCache(backing_store)

        first = cache.get("tenant-1")
        second = cache.get("tenant-1")

        assert first.access_token == "sl.old"
        assert second is first
        assert backing_store.loads == 1

    def test_unknown_tenant_is_not_connected(self, backing_store):
        cache = CredentialCache(backing_store)

        with pytest.raises(StorageNotConnectedError) as exc_info:
            cache.get("tenant-missing")

        assert exc_info.value.code == ErrorCode.STORAGE_NOT_CONNECTED
        assert exc_info.value.message == "Dropbox not connected"

    def test_empty_access_token_is_not_connected(self, backing_store):
        cache = CredentialCache(backing_store)

        with pytest.raises(StorageNotConnectedError):
            cache.get("tenant-empty")

    def test_update_persists_and_refreshes_cached_entry(self, backing_store):
        cache = CredentialCache(backing_store)
        cache.get("tenant-1")

        updated = cache.update_access_token("tenant-1", "sl.new")

        assert backing_store.saved == [("tenant-1", "sl.new")]
        assert updated.access_token == "sl.new"
        assert updated.refresh_token == "refresh-1"
        assert cache.get("tenant-1").access_token == "sl.new"
        assert backing_store.loads == 1

    def test_invalidate_forces_reload(self, backing_store):
        cache = CredentialCache(backing_store)
        cache.get("tenant-1")
        backing_store.credentials["tenant-1"] = StorageCredential("tenant-1", "sl.reconnected", "refresh-2")

        cache.invalidate("tenant-1")

        assert cache.get("tenant-1").access_token == "sl.reconnected"
        assert backing_store.loads == 2


class TestGalleryStoreCredentials:
    """The tenant record is the durable credential store."""

    def test_load_credential_from_tenant(self, store, seed):
        seed()

        credential = store.load_credential("tenant-1")

        assert credential.access_token == "sl.old-token"
        assert credential.refresh_token == "refresh-1"
        assert credential.provider == "DROPBOX"

    def test_tenant_without_token_has_no_credential(self, store, seed):
        seed(access_token=None)

        assert store.load_credential("tenant-1") is None
        assert store.load_credential("tenant-unknown") is None

    def test_refreshed_token_written_back(self, store, seed):
        seed()
        cache = CredentialCache(store)
        cache.get("tenant-1")

        cache.update_access_token("tenant-1", "sl.refreshed")

        assert store.load_credential("tenant-1").access_token == "sl.refreshed"
