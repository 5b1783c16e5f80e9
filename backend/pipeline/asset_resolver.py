"""
Asset Resolver

Turns a logical image reference (gallery + path, optionally via a shared link)
into a resource the storage provider can serve, after the access guards pass.

Also provides:
- Base-directory inference for writing generated media next to the photos
- Temporary direct links for handing assets to the generation provider
- HMAC-signed, expiring "AI source" URLs for shared-link galleries
"""

import hashlib
import hmac
import logging
import posixpath
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from models import GalleryStatus, Roles
from pipeline.error_handler import (
    ErrorCode,
    FailurePolicy,
    Operation,
    PathRejectedError,
    PipelineError,
    ValidationError,
    policy_for,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = {"DROPBOX"}


@dataclass(frozen=True)
class Caller:
    """Identity of the requester as supplied by the session layer."""

    tenant_id: Optional[str] = None
    role: Optional[str] = None
    client_id: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in Roles.staff()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.tenant_id or self.client_id)


ANONYMOUS = Caller()


@dataclass(frozen=True)
class AssetReference:
    """A file inside a gallery, addressed by path or by shared link + relative path."""

    gallery_id: str
    path: str
    shared_link: Optional[str] = None
    provider: str = "DROPBOX"

    @property
    def resource(self) -> Dict[str, Any]:
        """Dropbox thumbnail resource selector."""
        if self.shared_link:
            return {".tag": "link", "url": self.shared_link, "path": self.path}
        return {".tag": "path", "path": self.path}

    @property
    def filename(self) -> str:
        return self.path.rstrip("/").split("/")[-1] or "download"


@dataclass
class ResolvedResource:
    """An asset reference that passed every guard, with its gallery."""

    reference: AssetReference
    gallery: Any  # services.gallery_store.GallerySnapshot
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def tenant_id(self) -> str:
        return self.gallery.tenant_id


def is_traversal(path: str) -> bool:
    """
    True if the path tries to climb out of its folder.

    Example:
        >>> is_traversal("/Shoots/../Private/a.jpg")
        True
        >>> is_traversal("/Shoots/123 Main St/a.jpg")
        False
    """
    return ".." in path or "./" in path


def infer_provider(tenant_provider: Optional[str], shared_link: Optional[str] = None) -> str:
    """A Google Drive share link overrides the tenant's default provider."""
    if "drive.google.com" in str(shared_link or ""):
        return "GOOGLE_DRIVE"
    return tenant_provider or "DROPBOX"


def clean_shared_link(link: Optional[str]) -> str:
    return str(link or "").strip()


# ===== Signed AI source links =====

def sign_ai_source(secret: str, gallery_id: str, exp: int, shared_link: str, path: str) -> str:
    """Hex HMAC-SHA256 over `gallery_id|exp|shared_link|path`."""
    payload = f"{gallery_id}|{exp}|{shared_link}|{path}"
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_ai_source(
    secret: str,
    gallery_id: str,
    exp: int,
    shared_link: str,
    path: str,
    signature: str,
) -> bool:
    expected = sign_ai_source(secret, gallery_id, exp, shared_link, path)
    return hmac.compare_digest(expected, str(signature or ""))


def build_ai_source_url(
    base_url: str,
    secret: str,
    gallery_id: str,
    shared_link: str,
    path: str,
    ttl_seconds: int,
    now: Optional[float] = None,
) -> str:
    """
    Public URL serving one shared-link file until `now + ttl_seconds`.

    The link is verified by the /api/ai-source/dropbox endpoint, which only
    serves files behind the gallery's own shared link.
    """
    exp = int((now if now is not None else time.time()) + ttl_seconds)
    link = clean_shared_link(shared_link)
    query = urlencode({
        "galleryId": gallery_id,
        "sharedLink": link,
        "path": path,
        "exp": exp,
        "sig": sign_ai_source(secret, gallery_id, exp, link, path),
    })
    return f"{base_url.rstrip('/')}/api/ai-source/dropbox?{query}"


class AssetResolver:
    """
    Applies the gallery access guards and resolves storage locations.

    Example:
        >>> resolver = AssetResolver(get_gallery_store(), get_dropbox_client())
        >>> resource = resolver.resolve("gal-1", "/Shoots/123 Main St/01.jpg", caller=caller)
        >>> resource.reference.resource
        {'.tag': 'path', 'path': '/Shoots/123 Main St/01.jpg'}
    """

    def __init__(self, store, dropbox):
        """
        Args:
            store: GalleryStore
            dropbox: DropboxClient
        """
        self.store = store
        self.dropbox = dropbox

    def resolve(
        self,
        gallery_id: str,
        path: Optional[str],
        shared_link: Optional[str] = None,
        caller: Caller = ANONYMOUS,
        shared_request: bool = False,
    ) -> ResolvedResource:
        """
        Run the access guards and build the asset reference.

        Guards run in order: path present, no traversal (before any lookup),
        gallery exists, published or privileged, unlocked or privileged,
        path inside the gallery's folders (unless addressed via shared link),
        supported provider.

        Raises:
            ValidationError: Missing path
            PathRejectedError: Traversal (INVALID_PATH) or foreign path
                (UNAUTHORIZED_PATH)
            PipelineError: GALLERY_NOT_FOUND, GALLERY_NOT_PUBLISHED,
                GALLERY_LOCKED or UNSUPPORTED_PROVIDER
        """
        if not path:
            raise ValidationError("Path is required", field="path")

        if is_traversal(path):
            logger.error(f"Blocked path traversal attempt: {path} (gallery {gallery_id})")
            raise PathRejectedError("Invalid path", path)

        gallery = self.store.get_gallery(gallery_id)
        if gallery is None:
            raise PipelineError(ErrorCode.GALLERY_NOT_FOUND, "Gallery not found", {"gallery_id": gallery_id})

        is_owner = bool(caller.client_id) and caller.client_id == gallery.client_id
        privileged = caller.is_staff or is_owner or shared_request

        if gallery.status not in GalleryStatus.published() and not privileged:
            raise PipelineError(ErrorCode.GALLERY_NOT_PUBLISHED, "Gallery not published", {"gallery_id": gallery_id})

        if gallery.is_locked and not privileged:
            logger.warning(f"Blocked access to locked gallery: {gallery_id}")
            raise PipelineError(ErrorCode.GALLERY_LOCKED, "Gallery Locked", {"gallery_id": gallery_id})

        link = clean_shared_link(shared_link)
        if not link and not shared_request:
            lowered = path.lower()
            allowed = any(lowered.startswith(f["path"].lower()) for f in gallery.image_folders)
            if not allowed:
                logger.error(f"Blocked unauthorized path access: {path} for gallery {gallery_id}")
                raise PathRejectedError("Unauthorized path", path, unauthorized=True)

        provider = infer_provider(gallery.tenant_provider, link or gallery.shared_link)
        if provider not in SUPPORTED_PROVIDERS:
            raise PipelineError(
                ErrorCode.UNSUPPORTED_PROVIDER,
                f"{provider} is not supported for media delivery",
                {"provider": provider},
            )

        reference = AssetReference(
            gallery_id=gallery_id,
            path=path,
            shared_link=link or None,
            provider=provider,
        )
        return ResolvedResource(reference=reference, gallery=gallery)

    def resolve_signed_source(
        self,
        secret: Optional[str],
        gallery_id: str,
        shared_link: str,
        path: str,
        exp: str,
        signature: str,
        now: Optional[float] = None,
    ) -> ResolvedResource:
        """
        Validate an AI source link and resolve the file it grants.

        Raises:
            ValidationError: Missing or malformed parameters
            PathRejectedError: Traversal
            PipelineError: INVALID_SIGNATURE (expired, bad signature, link
                mismatch), GALLERY_NOT_FOUND, GENERATION_NOT_CONFIGURED
        """
        if not (gallery_id and shared_link and path and exp and signature):
            raise ValidationError("Missing params")
        if is_traversal(path):
            raise PathRejectedError("Invalid path", path)
        try:
            expires_at = int(exp)
        except (TypeError, ValueError):
            raise ValidationError("Invalid exp", field="exp")
        if not secret:
            raise PipelineError(ErrorCode.GENERATION_NOT_CONFIGURED, "AI source signing is not configured")

        if expires_at < int(now if now is not None else time.time()):
            raise PipelineError(ErrorCode.INVALID_SIGNATURE, "Expired")

        link = clean_shared_link(shared_link)
        if not verify_ai_source(secret, gallery_id, expires_at, link, path, signature):
            raise PipelineError(ErrorCode.INVALID_SIGNATURE, "Bad signature")

        gallery = self.store.get_gallery(gallery_id)
        if gallery is None:
            raise PipelineError(ErrorCode.GALLERY_NOT_FOUND, "Gallery not found", {"gallery_id": gallery_id})
        if not gallery.shared_link or clean_shared_link(gallery.shared_link) != link:
            raise PipelineError(ErrorCode.INVALID_SIGNATURE, "Shared link mismatch")

        reference = AssetReference(gallery_id=gallery_id, path=path, shared_link=link)
        return ResolvedResource(reference=reference, gallery=gallery)

    def resolve_base_directory(self, gallery_id: str, first_asset_path: Optional[str] = None) -> str:
        """
        Folder the gallery's generated media should live next to.

        Preference: directory of the first selected asset, the first mapped
        image folder, the folder behind the gallery's shared link, then "/".
        """
        path = str(first_asset_path or "")
        if path.startswith("/"):
            directory = posixpath.dirname(path)
            if directory and directory not in (".", "/"):
                return directory

        gallery = self.store.get_gallery(gallery_id)
        if gallery is None:
            return "/"

        folders = gallery.image_folders
        if folders and folders[0]["path"].startswith("/"):
            return folders[0]["path"]

        link = gallery.shared_link
        if not link:
            return "/"

        try:
            metadata = self.dropbox.get_shared_link_metadata(gallery.tenant_id, link)
        except Exception as e:
            if policy_for(Operation.BASE_DIR_LOOKUP, e) is not FailurePolicy.DEGRADE:
                raise
            logger.warning(f"Shared link metadata lookup failed for gallery {gallery_id}: {e}")
            return "/"

        shared_path = metadata.get("path_lower") or metadata.get("path_display")
        if isinstance(shared_path, str) and shared_path.startswith("/"):
            return shared_path if metadata.get(".tag") == "folder" else posixpath.dirname(shared_path)
        return "/"

    def temporary_link(self, tenant_id: str, path_or_id: str) -> Optional[str]:
        """Temporary direct link for a path or file id, or None if unavailable."""
        try:
            return self.dropbox.get_temporary_link(tenant_id, path_or_id)
        except Exception as e:
            if policy_for(Operation.TEMPORARY_LINK, e) is not FailurePolicy.DEGRADE:
                raise
            logger.warning(f"Temporary link unavailable for {path_or_id}: {e}")
            return None


# Singleton instance
_asset_resolver: Optional[AssetResolver] = None


def get_asset_resolver() -> AssetResolver:
    """Get singleton AssetResolver wired to the application store and Dropbox client."""
    global _asset_resolver
    if _asset_resolver is None:
        from services.dropbox_client import get_dropbox_client
        from services.gallery_store import get_gallery_store

        _asset_resolver = AssetResolver(get_gallery_store(), get_dropbox_client())
    return _asset_resolver
