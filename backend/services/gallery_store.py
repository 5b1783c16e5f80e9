"""
Gallery and tenant repository.

Wraps the SQLAlchemy models the media pipeline depends on and hands out plain
snapshots, so callers never hold sessions across provider calls.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from database import SessionLocal, get_db_context
from models import Gallery, Tenant
from pipeline.error_handler import QuotaExhaustedError
from services.credential_cache import CredentialStore, StorageCredential

logger = structlog.get_logger(__name__)


def _update_prediction(meta: Dict[str, Any], prediction_id: str, **fields) -> Dict[str, Any]:
    """Merge fields into aiSocialVideo.predictions[prediction_id]."""
    marker = dict(meta.get("aiSocialVideo") or {})
    predictions = dict(marker.get("predictions") or {})
    entry = dict(predictions.get(prediction_id) or {})
    entry.update(fields)
    predictions[prediction_id] = entry
    marker["predictions"] = predictions
    meta["aiSocialVideo"] = marker
    return meta


@dataclass
class GallerySnapshot:
    """Read-only view of a gallery with the tenant/client fields the pipeline needs."""

    id: str
    tenant_id: str
    title: str
    status: str
    is_locked: bool
    watermark_enabled: bool
    metadata: Dict[str, Any] = field(default_factory=dict)
    client_id: Optional[str] = None
    client_watermark_url: Optional[str] = None
    client_watermark_settings: Optional[Dict[str, Any]] = None
    tenant_provider: str = "DROPBOX"
    tenant_logo_url: Optional[str] = None
    tenant_settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def ai_suite(self) -> Dict[str, Any]:
        return dict(self.metadata.get("aiSuite") or {})

    @property
    def image_folders(self) -> list:
        folders = self.metadata.get("imageFolders") or []
        return [f for f in folders if isinstance(f, dict) and isinstance(f.get("path"), str)]

    @property
    def shared_link(self) -> str:
        return str(self.metadata.get("dropboxLink") or "").strip()


class GalleryStore(CredentialStore):
    """
    Repository over tenants and galleries.

    Example:
        >>> store = GalleryStore()
        >>> gallery = store.get_gallery("gal-123")
        >>> store.record_video_link("gal-123", "https://www.dropbox.com/s/abc/video.mp4")
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    def _session(self):
        return get_db_context(self.session_factory)

    # ===== Galleries =====

    def get_gallery(self, gallery_id: str) -> Optional[GallerySnapshot]:
        """Fetch a non-deleted gallery, or None."""
        with self._session() as db:
            gallery = (
                db.query(Gallery)
                .filter(Gallery.id == gallery_id, Gallery.deleted_at.is_(None))
                .first()
            )
            if gallery is None:
                return None
            return self._snapshot(gallery)

    @staticmethod
    def _snapshot(gallery: Gallery) -> GallerySnapshot:
        tenant = gallery.tenant
        client = gallery.client
        return GallerySnapshot(
            id=gallery.id,
            tenant_id=gallery.tenant_id,
            title=gallery.title or "Gallery",
            status=gallery.status,
            is_locked=bool(gallery.is_locked),
            watermark_enabled=bool(gallery.watermark_enabled),
            metadata=copy.deepcopy(gallery.meta or {}),
            client_id=gallery.client_id,
            client_watermark_url=client.watermark_url if client else None,
            client_watermark_settings=copy.deepcopy(client.watermark_settings) if client else None,
            tenant_provider=(tenant.storage_provider if tenant else None) or "DROPBOX",
            tenant_logo_url=tenant.logo_url if tenant else None,
            tenant_settings=copy.deepcopy(tenant.settings or {}) if tenant else {},
        )

    def update_metadata(
        self,
        gallery_id: str,
        mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
        lock: bool = False,
    ) -> Dict[str, Any]:
        """
        Read-modify-write the gallery metadata document in one transaction.

        Args:
            gallery_id: Gallery to update
            mutate: Receives a copy of the metadata, returns the new document.
                May raise to abort without writing.
            lock: Take a row lock (SELECT ... FOR UPDATE) where supported

        Returns:
            The metadata document that was written
        """
        with self._session() as db:
            query = db.query(Gallery).filter(Gallery.id == gallery_id)
            if lock:
                query = query.with_for_update()
            gallery = query.first()
            if gallery is None:
                raise LookupError(f"Gallery {gallery_id} not found")

            # JSON columns are only flushed when reassigned
            next_meta = mutate(copy.deepcopy(gallery.meta or {}))
            gallery.meta = next_meta
            db.commit()
            return copy.deepcopy(next_meta)

    def consume_video_quota(self, gallery_id: str, marker: Dict[str, Any]) -> Dict[str, Any]:
        """
        Decrement the AI-video quota and write the generation-started marker.

        The remaining count is re-checked under the row lock.

        Returns:
            The updated aiSuite document

        Raises:
            QuotaExhaustedError: If no generations remain
        """
        def mutate(meta: Dict[str, Any]) -> Dict[str, Any]:
            ai_suite = dict(meta.get("aiSuite") or {})
            remaining = ai_suite.get("remainingVideos")
            remaining = remaining if isinstance(remaining, int) and not isinstance(remaining, bool) else 0
            if remaining <= 0:
                raise QuotaExhaustedError(ai_suite)
            ai_suite["remainingVideos"] = remaining - 1
            meta["aiSuite"] = ai_suite
            previous = meta.get("aiSocialVideo") or {}
            next_marker = dict(marker)
            if previous.get("predictions"):
                next_marker["predictions"] = previous["predictions"]
            meta["aiSocialVideo"] = next_marker
            return meta

        meta = self.update_metadata(gallery_id, mutate, lock=True)
        logger.info(
            "video_quota_consumed",
            gallery_id=gallery_id,
            remaining=meta["aiSuite"]["remainingVideos"],
        )
        return meta["aiSuite"]

    def record_video_link(
        self,
        gallery_id: str,
        url: str,
        title: str = "AI Social Video",
        kind: str = "AI_SOCIAL",
    ) -> bool:
        """
        Append a video link unless the URL is already recorded.

        Returns:
            True if a new entry was written
        """
        added = {"value": False}

        def mutate(meta: Dict[str, Any]) -> Dict[str, Any]:
            current = meta.get("videoLinks")
            current = current if isinstance(current, list) else []
            if any(str(v.get("url") if isinstance(v, dict) else v) == url for v in current):
                return meta
            meta["videoLinks"] = current + [{
                "url": url,
                "title": title,
                "createdAt": datetime.utcnow().isoformat() + "Z",
                "kind": kind,
            }]
            added["value"] = True
            return meta

        self.update_metadata(gallery_id, mutate)
        if added["value"]:
            logger.info("video_link_recorded", gallery_id=gallery_id, url=url)
        return added["value"]

    def record_prediction(self, gallery_id: str, prediction_id: str, first_asset_path: str = "") -> None:
        """Remember which storyboard a prediction came from, keyed by prediction id."""
        self.update_metadata(
            gallery_id,
            lambda meta: _update_prediction(meta, prediction_id, firstAssetPath=first_asset_path or ""),
        )

    def mark_video_relayed(self, gallery_id: str, prediction_id: str, share_url: str) -> None:
        """Remember the share link of a relayed prediction."""
        self.update_metadata(
            gallery_id,
            lambda meta: _update_prediction(meta, prediction_id, shareUrl=share_url),
        )
        logger.info("video_relay_marked", gallery_id=gallery_id, prediction_id=prediction_id)

    # ===== Tenants (CredentialStore) =====

    def load_credential(self, tenant_id: str) -> Optional[StorageCredential]:
        with self._session() as db:
            tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
            if tenant is None or not tenant.dropbox_access_token:
                return None
            return StorageCredential(
                tenant_id=tenant.id,
                access_token=tenant.dropbox_access_token,
                refresh_token=tenant.dropbox_refresh_token,
                provider=tenant.storage_provider or "DROPBOX",
            )

    def save_access_token(self, tenant_id: str, access_token: str) -> None:
        with self._session() as db:
            tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
            if tenant is None:
                logger.warning("token_save_tenant_missing", tenant_id=tenant_id)
                return
            tenant.dropbox_access_token = access_token
            tenant.updated_at = datetime.utcnow()
            db.commit()


# Singleton instance
_gallery_store: Optional[GalleryStore] = None


def get_gallery_store() -> GalleryStore:
    """
    Get singleton GalleryStore bound to the application database.

    Returns:
        GalleryStore instance
    """
    global _gallery_store
    if _gallery_store is None:
        _gallery_store = GalleryStore()
    return _gallery_store
