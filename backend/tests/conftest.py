"""
Pytest configuration and shared fixtures.

Sets up the import path, an in-memory database per test, a stubbed Dropbox
HTTP API and small image helpers.
"""

import io
import json
import sys
from pathlib import Path

import httpx
import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker

# Add backend directory to Python path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from database import build_engine, init_db  # noqa: E402
from models import Client, Gallery, GalleryStatus, Tenant  # noqa: E402
from services.credential_cache import CredentialCache  # noqa: E402
from services.dropbox_client import DropboxClient  # noqa: E402
from services.gallery_store import GallerySnapshot, GalleryStore  # noqa: E402

API_URL = "https://api.dropbox.test"
CONTENT_URL = "https://content.dropbox.test"
OAUTH_URL = "https://oauth.dropbox.test"


def make_image(size=(800, 600), color=(200, 120, 40), fmt="JPEG", mode="RGB") -> bytes:
    """Solid-colour image bytes."""
    out = io.BytesIO()
    Image.new(mode, size, color).save(out, format=fmt)
    return out.getvalue()


def open_image(content: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(content))
    img.load()
    return img


def make_gallery(**overrides) -> GallerySnapshot:
    """GallerySnapshot with sensible published-gallery defaults."""
    values = {
        "id": "gal-1",
        "tenant_id": "tenant-1",
        "title": "12 Oak St",
        "status": GalleryStatus.READY,
        "is_locked": False,
        "watermark_enabled": False,
        "metadata": {"imageFolders": [{"path": "/Shoots/12 Oak St"}]},
    }
    values.update(overrides)
    return GallerySnapshot(**values)


# ===== Database =====

@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return GalleryStore(session_factory)


@pytest.fixture
def seed(session_factory):
    """
    Insert a tenant (and optionally a client) plus one gallery.

    Usage:
        seed(metadata={"aiSuite": {...}}, status=GalleryStatus.DRAFT)
    """
    def _seed(
        gallery_id="gal-1",
        tenant_id="tenant-1",
        title="12 Oak St",
        status=GalleryStatus.READY,
        is_locked=False,
        watermark_enabled=False,
        metadata=None,
        access_token="sl.old-token",
        refresh_token="refresh-1",
        provider="DROPBOX",
        tenant_logo_url=None,
        tenant_settings=None,
        client_id=None,
        client_watermark_url=None,
        client_watermark_settings=None,
    ):
        db = session_factory()
        try:
            if db.get(Tenant, tenant_id) is None:
                db.add(Tenant(
                    id=tenant_id,
                    name="Bright Homes Media",
                    storage_provider=provider,
                    dropbox_access_token=access_token,
                    dropbox_refresh_token=refresh_token,
                    logo_url=tenant_logo_url,
                    settings=tenant_settings or {},
                ))
            if client_id and db.get(Client, client_id) is None:
                db.add(Client(
                    id=client_id,
                    tenant_id=tenant_id,
                    name="Listing Agent",
                    watermark_url=client_watermark_url,
                    watermark_settings=client_watermark_settings,
                ))
            db.add(Gallery(
                id=gallery_id,
                tenant_id=tenant_id,
                client_id=client_id,
                title=title,
                status=status,
                is_locked=is_locked,
                watermark_enabled=watermark_enabled,
                meta=metadata if metadata is not None else {"imageFolders": [{"path": "/Shoots/12 Oak St"}]},
            ))
            db.commit()
        finally:
            db.close()
        return gallery_id

    return _seed


# ===== Dropbox HTTP stub =====

class DropboxStub:
    """
    httpx MockTransport handler routing by URL path.

    Each route holds a queue of responses; the last one repeats. A response
    can be an httpx.Response or a callable taking the request.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, path, *responses):
        self.routes.setdefault(path, []).extend(responses)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error_summary": "not_found/"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response) and not isinstance(response, httpx.Response):
            return response(request)
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def api_arg(request: httpx.Request) -> dict:
        return json.loads(request.headers["Dropbox-API-Arg"])


def file_response(content: bytes, content_type="image/jpeg", metadata=None) -> httpx.Response:
    return httpx.Response(
        200,
        headers={
            "Content-Type": content_type,
            "Dropbox-API-Result": json.dumps(metadata or {"name": "file.jpg"}),
        },
        content=content,
    )


@pytest.fixture
def dropbox_stub():
    return DropboxStub()


@pytest.fixture
def dropbox(store, dropbox_stub):
    """DropboxClient against the stub, with credentials from the test database."""
    return DropboxClient(
        CredentialCache(store),
        http=httpx.Client(transport=httpx.MockTransport(dropbox_stub)),
        client_id="app-key",
        client_secret="app-secret",
        api_url=API_URL,
        content_url=CONTENT_URL,
        oauth_url=OAUTH_URL,
    )
