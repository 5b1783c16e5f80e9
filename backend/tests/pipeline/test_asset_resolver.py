"""
Tests for asset resolution: access guards, base directories and signed links.
"""

from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import pytest

from models import GalleryStatus, Roles
from pipeline.asset_resolver import (
    ANONYMOUS,
    AssetResolver,
    Caller,
    build_ai_source_url,
    infer_provider,
    is_traversal,
    sign_ai_source,
)
from pipeline.error_handler import (
    ErrorCode,
    PathRejectedError,
    PipelineError,
    UpstreamUnavailableError,
    ValidationError,
)
from tests.conftest import make_gallery

SHARED_LINK = "https://www.dropbox.com/scl/fo/abc123/h?rlkey=k1"
SECRET = "s3cret"
STAFF = Caller(tenant_id="tenant-1", role=Roles.TEAM_MEMBER)


def _resolver(gallery=None, dropbox=None):
    store = Mock()
    store.get_gallery.return_value = gallery
    return AssetResolver(store, dropbox or Mock())


class TestHelpers:

    @pytest.mark.parametrize("path,expected", [
        ("/Shoots/../Private/a.jpg", True),
        ("/Shoots/./a.jpg", True),
        ("..", True),
        ("/Shoots/v1.2/a.jpg", False),
        ("/Shoots/123 Main St/a.jpg", False),
    ])
    def test_is_traversal(self, path, expected):
        assert is_traversal(path) is expected

    def test_google_drive_link_overrides_provider(self):
        assert infer_provider("DROPBOX", "https://drive.google.com/drive/folders/x") == "GOOGLE_DRIVE"
        assert infer_provider("DROPBOX", SHARED_LINK) == "DROPBOX"
        assert infer_provider(None) == "DROPBOX"


class TestResolveGuards:
    """Guards run in a fixed order; traversal is rejected before any lookup."""

    def test_missing_path(self):
        resolver = _resolver(make_gallery())

        with pytest.raises(ValidationError) as exc_info:
            resolver.resolve("gal-1", "")

        assert exc_info.value.message == "Path is required"

    def test_traversal_rejected_before_lookup(self):
        resolver = _resolver(make_gallery())

        with pytest.raises(PathRejectedError) as exc_info:
            resolver.resolve("gal-1", "/Shoots/12 Oak St/../../Private/id.jpg", caller=STAFF)

        assert exc_info.value.code == ErrorCode.INVALID_PATH
        resolver.store.get_gallery.assert_not_called()

    def test_gallery_not_found(self):
        with pytest.raises(PipelineError) as exc_info:
            _resolver(None).resolve("gal-404", "/Shoots/12 Oak St/01.jpg")

        assert exc_info.value.code == ErrorCode.GALLERY_NOT_FOUND

    def test_draft_hidden_from_public(self):
        resolver = _resolver(make_gallery(status=GalleryStatus.DRAFT))

        with pytest.raises(PipelineError) as exc_info:
            resolver.resolve("gal-1", "/Shoots/12 Oak St/01.jpg")

        assert exc_info.value.code == ErrorCode.GALLERY_NOT_PUBLISHED
        assert exc_info.value.status_code == 403

    @pytest.mark.parametrize("caller,shared", [
        (STAFF, False),
        (Caller(tenant_id="tenant-1", role=Roles.TENANT_ADMIN), False),
        (Caller(role=Roles.CLIENT, client_id="client-1"), False),
        (ANONYMOUS, True),
    ])
    def test_privileged_callers_see_drafts_and_locked(self, caller, shared):
        gallery = make_gallery(status=GalleryStatus.DRAFT, is_locked=True, client_id="client-1")

        resolved = _resolver(gallery).resolve("gal-1", "/Shoots/12 Oak St/01.jpg", caller=caller, shared_request=shared)

        assert resolved.reference.path == "/Shoots/12 Oak St/01.jpg"

    def test_other_client_is_not_owner(self):
        gallery = make_gallery(status=GalleryStatus.DRAFT, client_id="client-1")

        with pytest.raises(PipelineError) as exc_info:
            _resolver(gallery).resolve("gal-1", "/Shoots/12 Oak St/01.jpg", caller=Caller(client_id="client-2"))

        assert exc_info.value.code == ErrorCode.GALLERY_NOT_PUBLISHED

    def test_locked_gallery(self):
        resolver = _resolver(make_gallery(is_locked=True))

        with pytest.raises(PipelineError) as exc_info:
            resolver.resolve("gal-1", "/Shoots/12 Oak St/01.jpg")

        assert exc_info.value.code == ErrorCode.GALLERY_LOCKED
        assert exc_info.value.message == "Gallery Locked"

    def test_path_outside_gallery_folders(self):
        resolver = _resolver(make_gallery())

        with pytest.raises(PathRejectedError) as exc_info:
            resolver.resolve("gal-1", "/Shoots/Other Listing/01.jpg", caller=STAFF)

        assert exc_info.value.code == ErrorCode.UNAUTHORIZED_PATH
        assert exc_info.value.message == "Unauthorized path"

    def test_folder_prefix_is_case_insensitive(self):
        resolved = _resolver(make_gallery()).resolve("gal-1", "/shoots/12 oak st/01.jpg")

        assert resolved.reference.resource == {".tag": "path", "path": "/shoots/12 oak st/01.jpg"}
        assert resolved.tenant_id == "tenant-1"

    def test_shared_link_skips_folder_check(self):
        resolved = _resolver(make_gallery()).resolve("gal-1", "/Kitchen/02.jpg", shared_link=f"  {SHARED_LINK} ")

        assert resolved.reference.shared_link == SHARED_LINK
        assert resolved.reference.resource == {".tag": "link", "url": SHARED_LINK, "path": "/Kitchen/02.jpg"}
        assert resolved.reference.filename == "02.jpg"

    def test_google_drive_gallery_is_unsupported(self):
        gallery = make_gallery(metadata={
            "imageFolders": [{"path": "/Shoots/12 Oak St"}],
            "dropboxLink": "https://drive.google.com/drive/folders/abc",
        })

        with pytest.raises(PipelineError) as exc_info:
            _resolver(gallery).resolve("gal-1", "/Shoots/12 Oak St/01.jpg")

        assert exc_info.value.code == ErrorCode.UNSUPPORTED_PROVIDER


class TestBaseDirectory:
    """Test cases for resolve_base_directory()."""

    def test_first_asset_directory_wins(self):
        resolver = _resolver(make_gallery())

        assert resolver.resolve_base_directory("gal-1", "/Shoots/12 Oak St/Edits/01.jpg") == "/Shoots/12 Oak St/Edits"
        resolver.store.get_gallery.assert_not_called()

    def test_root_level_asset_falls_through_to_folders(self):
        resolver = _resolver(make_gallery())

        assert resolver.resolve_base_directory("gal-1", "/01.jpg") == "/Shoots/12 Oak St"

    def test_shared_folder_link(self):
        dropbox = Mock()
        dropbox.get_shared_link_metadata.return_value = {".tag": "folder", "path_lower": "/shoots/12 oak st"}
        resolver = _resolver(make_gallery(metadata={"dropboxLink": SHARED_LINK}), dropbox)

        assert resolver.resolve_base_directory("gal-1") == "/shoots/12 oak st"
        dropbox.get_shared_link_metadata.assert_called_once_with("tenant-1", SHARED_LINK)

    def test_shared_file_link_uses_parent(self):
        dropbox = Mock()
        dropbox.get_shared_link_metadata.return_value = {".tag": "file", "path_display": "/Shoots/12 Oak St/01.jpg"}
        resolver = _resolver(make_gallery(metadata={"dropboxLink": SHARED_LINK}), dropbox)

        assert resolver.resolve_base_directory("gal-1") == "/Shoots/12 Oak St"

    def test_link_owned_by_someone_else_has_no_path(self):
        dropbox = Mock()
        dropbox.get_shared_link_metadata.return_value = {".tag": "folder", "name": "12 Oak St"}
        resolver = _resolver(make_gallery(metadata={"dropboxLink": SHARED_LINK}), dropbox)

        assert resolver.resolve_base_directory("gal-1") == "/"

    def test_metadata_failure_degrades_to_root(self):
        dropbox = Mock()
        dropbox.get_shared_link_metadata.side_effect = UpstreamUnavailableError("dropbox", "boom", 500)
        resolver = _resolver(make_gallery(metadata={"dropboxLink": SHARED_LINK}), dropbox)

        assert resolver.resolve_base_directory("gal-1") == "/"

    def test_nothing_known(self):
        assert _resolver(make_gallery(metadata={})).resolve_base_directory("gal-1") == "/"
        assert _resolver(None).resolve_base_directory("gal-1") == "/"


class TestTemporaryLink:

    def test_failure_returns_none(self):
        dropbox = Mock()
        dropbox.get_temporary_link.side_effect = UpstreamUnavailableError("dropbox", "not_found", 409)

        assert _resolver(make_gallery(), dropbox).temporary_link("tenant-1", "id:abc") is None


class TestSignedSource:
    """Signed AI source links."""

    NOW = 1_800_000_000

    def _params(self, path="/Kitchen/02.jpg", ttl=3600):
        url = build_ai_source_url("https://media.example.com/", SECRET, "gal-1", SHARED_LINK, path, ttl, now=self.NOW)
        parsed = urlparse(url)
        assert parsed.path == "/api/ai-source/dropbox"
        return {k: v[0] for k, v in parse_qs(parsed.query).items()}

    def _resolve(self, params, gallery=None, secret=SECRET, now=None):
        resolver = _resolver(gallery if gallery is not None else make_gallery(metadata={"dropboxLink": SHARED_LINK}))
        return resolver.resolve_signed_source(
            secret,
            params.get("galleryId", ""),
            params.get("sharedLink", ""),
            params.get("path", ""),
            params.get("exp", ""),
            params.get("sig", ""),
            now=now if now is not None else self.NOW,
        )

    def test_round_trip(self):
        params = self._params()

        resolved = self._resolve(params)

        assert params["exp"] == str(self.NOW + 3600)
        assert resolved.reference.shared_link == SHARED_LINK
        assert resolved.reference.path == "/Kitchen/02.jpg"

    def test_signature_covers_fields(self):
        assert sign_ai_source(SECRET, "gal-1", 1, SHARED_LINK, "/a.jpg") != sign_ai_source(SECRET, "gal-1", 1, SHARED_LINK, "/b.jpg")

    def test_expired(self):
        with pytest.raises(PipelineError) as exc_info:
            self._resolve(self._params(), now=self.NOW + 3601)

        assert exc_info.value.message == "Expired"
        assert exc_info.value.status_code == 403

    def test_tampered_path(self):
        params = dict(self._params(), path="/Bedroom/03.jpg")

        with pytest.raises(PipelineError) as exc_info:
            self._resolve(params)

        assert exc_info.value.message == "Bad signature"

    def test_link_must_match_gallery(self):
        gallery = make_gallery(metadata={"dropboxLink": "https://www.dropbox.com/scl/fo/other"})

        with pytest.raises(PipelineError) as exc_info:
            self._resolve(self._params(), gallery=gallery)

        assert exc_info.value.message == "Shared link mismatch"

    def test_missing_params(self):
        params = self._params()
        del params["sig"]

        with pytest.raises(ValidationError, match="Missing params"):
            self._resolve(params)

    def test_invalid_exp(self):
        with pytest.raises(ValidationError, match="Invalid exp"):
            self._resolve(dict(self._params(), exp="tomorrow"))

    def test_traversal(self):
        with pytest.raises(PathRejectedError):
            self._resolve(dict(self._params(), path="/../secret.jpg"))

    def test_unconfigured_secret(self):
        with pytest.raises(PipelineError) as exc_info:
            self._resolve(self._params(), secret=None)

        assert exc_info.value.code == ErrorCode.GENERATION_NOT_CONFIGURED
