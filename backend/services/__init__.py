"""
Services module for backend integrations (storage, generation, caching)
"""

from .credential_cache import CredentialCache, StorageCredential
from .dropbox_client import DropboxClient, get_dropbox_client
from .gallery_store import GallerySnapshot, GalleryStore, get_gallery_store
from .logo_cache import LogoCache, get_logo_cache
from .replicate_client import ReplicateClient, get_replicate_client

__all__ = [
    "CredentialCache",
    "StorageCredential",
    "DropboxClient",
    "get_dropbox_client",
    "GallerySnapshot",
    "GalleryStore",
    "get_gallery_store",
    "LogoCache",
    "get_logo_cache",
    "ReplicateClient",
    "get_replicate_client",
]
