"""
Dropbox HTTP API client

Thin wrapper over the Dropbox v2 RPC and content endpoints used by the media
pipeline. Every call goes through `authorized_call`, which owns the
refresh-and-retry behaviour for expired access tokens.

Key Features:
- One refresh exchange and one retry per rejected call
- Refreshed tokens persisted back to the tenant record
- Dropbox-API-Arg header encoding safe for non-ASCII paths
- Tagged results for save_url job responses
- Network retries (tenacity) for idempotent reads only
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from config import settings
from pipeline.error_handler import (
    AuthRejectedError,
    ErrorCode,
    FailurePolicy,
    Operation,
    UpstreamUnavailableError,
    policy_for,
)
from services.credential_cache import CredentialCache, StorageCredential

logger = structlog.get_logger(__name__)


def dropbox_api_arg(arg: Dict[str, Any]) -> str:
    """
    Encode a Dropbox-API-Arg header value.

    Header values must be ASCII, so every non-ASCII character is written as a
    JSON \\uXXXX escape.

    Example:
        >>> dropbox_api_arg({"path": "/Café"})
        '{"path": "/Caf\\\\u00e9"}'
    """
    return json.dumps(arg, ensure_ascii=True)


def _is_network_failure(error: BaseException) -> bool:
    """Transport-level failures (no HTTP status) are worth retrying."""
    return isinstance(error, UpstreamUnavailableError) and error.upstream_status is None


network_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception(_is_network_failure),
    before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
    reraise=True,
)


# ===== save_url job results =====

@dataclass(frozen=True)
class SaveUrlComplete:
    """File written; `path` is the lower-cased Dropbox path."""
    path: str


@dataclass(frozen=True)
class SaveUrlAsyncJob:
    async_job_id: str


@dataclass(frozen=True)
class SaveUrlInProgress:
    pass


@dataclass(frozen=True)
class SaveUrlFailed:
    reason: str


SaveUrlJob = Union[SaveUrlComplete, SaveUrlAsyncJob, SaveUrlInProgress, SaveUrlFailed]


def parse_save_url_result(body: Any) -> SaveUrlJob:
    """
    Map a save_url / check_job_status body onto a SaveUrlJob.

    Dropbox flattens the file metadata into the `complete` variant, older
    responses nest it under `metadata`; both are accepted. A `complete`
    without a path is treated as a failure.
    """
    if not isinstance(body, dict):
        return SaveUrlFailed("unexpected save_url response")

    tag = str(body.get(".tag") or "")
    if tag == "complete":
        metadata = body.get("metadata") if isinstance(body.get("metadata"), dict) else body
        path = metadata.get("path_lower") or metadata.get("path_display")
        if path:
            return SaveUrlComplete(path=str(path))
        return SaveUrlFailed("save_url completed without a file path")
    if tag == "async_job_id" and body.get("async_job_id"):
        return SaveUrlAsyncJob(async_job_id=str(body["async_job_id"]))
    if tag == "in_progress":
        return SaveUrlInProgress()
    if tag == "failed":
        failed = body.get("failed")
        reason = failed.get(".tag") if isinstance(failed, dict) else failed
        return SaveUrlFailed(str(reason or "save_url failed"))
    return SaveUrlFailed(f"unexpected save_url tag: {tag or 'none'}")


@dataclass
class DownloadedFile:
    """Bytes returned by a Dropbox content endpoint."""

    content: bytes
    content_type: str = "application/octet-stream"
    metadata: Dict[str, Any] = field(default_factory=dict)


class DropboxClient:
    """
    Dropbox v2 API client bound to the tenant credential cache.

    Usage:
        client = get_dropbox_client()
        link = client.get_temporary_link("tenant-1", "/Shoots/123 Main St/01.jpg")
        job = client.save_url("tenant-1", "/AI Videos/clip.mp4", "https://...")
    """

    def __init__(
        self,
        credentials: CredentialCache,
        http: Optional[httpx.Client] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_url: Optional[str] = None,
        content_url: Optional[str] = None,
        oauth_url: Optional[str] = None,
    ):
        """
        Args:
            credentials: Per-tenant token cache
            http: httpx client (tests pass one with a MockTransport)
            client_id: App key for refresh exchanges (default: settings)
            client_secret: App secret for refresh exchanges (default: settings)
            api_url: RPC host (default: settings.DROPBOX_API_URL)
            content_url: Content host (default: settings.DROPBOX_CONTENT_URL)
            oauth_url: OAuth host (default: settings.DROPBOX_OAUTH_URL)
        """
        self.credentials = credentials
        self.http = http or httpx.Client(timeout=settings.HTTP_TIMEOUT)
        self.client_id = client_id if client_id is not None else settings.DROPBOX_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.DROPBOX_CLIENT_SECRET
        self.api_url = (api_url or settings.DROPBOX_API_URL).rstrip("/")
        self.content_url = (content_url or settings.DROPBOX_CONTENT_URL).rstrip("/")
        self.oauth_url = (oauth_url or settings.DROPBOX_OAUTH_URL).rstrip("/")
        self.logger = logger.bind(service="dropbox_client")

    # ===== Authenticated call wrapper =====

    def authorized_call(
        self,
        tenant_id: str,
        send: Callable[[str], httpx.Response],
    ) -> httpx.Response:
        """
        Run `send(access_token)` with the tenant's cached token.

        On a 401 with a refresh token available, performs exactly one refresh
        exchange, persists the new token and retries exactly once. A second
        401, or a failed refresh, returns the rejected response unchanged.

        Raises:
            StorageNotConnectedError: If the tenant has no access token
            UpstreamUnavailableError: On transport errors
        """
        credential = self.credentials.get(tenant_id)
        response = self._send(send, credential.access_token)

        if response.status_code != 401 or not credential.refresh_token:
            return response

        if policy_for(Operation.STORAGE_CALL, ErrorCode.AUTH_REJECTED) is not FailurePolicy.RETRY_ONCE:
            return response

        new_token = self._refresh(credential)
        if not new_token:
            return response

        self.logger.info("dropbox_call_retried_after_refresh", tenant_id=tenant_id)
        return self._send(send, new_token)

    @staticmethod
    def _send(send: Callable[[str], httpx.Response], token: str) -> httpx.Response:
        try:
            return send(token)
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("dropbox", f"Dropbox request failed: {e}") from e

    def _refresh(self, credential: StorageCredential) -> Optional[str]:
        """Exchange the refresh token for a new access token; None on any failure."""
        try:
            response = self.http.post(
                f"{self.oauth_url}/oauth2/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
            if not response.is_success:
                self.logger.warning(
                    "dropbox_token_refresh_rejected",
                    tenant_id=credential.tenant_id,
                    status=response.status_code,
                )
                return None

            token = str(response.json().get("access_token") or "")
            if not token:
                self.logger.warning("dropbox_token_refresh_empty", tenant_id=credential.tenant_id)
                return None

            self.credentials.update_access_token(credential.tenant_id, token)
            return token

        except Exception as e:
            if policy_for(Operation.TOKEN_REFRESH, e) is not FailurePolicy.DEGRADE:
                raise
            self.logger.warning(
                "dropbox_token_refresh_failed",
                tenant_id=credential.tenant_id,
                error=str(e),
            )
            return None

    # ===== Transport helpers =====

    def _rpc(self, tenant_id: str, endpoint: str, payload: Dict[str, Any]) -> httpx.Response:
        url = f"{self.api_url}/2/{endpoint}"
        response = self.authorized_call(
            tenant_id,
            lambda token: self.http.post(
                url,
                headers={"Authorization": f"Bearer {token}"},
                json=payload,
            ),
        )
        self._raise_for_status(response, endpoint)
        return response

    def _content(self, tenant_id: str, endpoint: str, arg: Dict[str, Any]) -> DownloadedFile:
        url = f"{self.content_url}/2/{endpoint}"
        header_arg = dropbox_api_arg(arg)
        response = self.authorized_call(
            tenant_id,
            lambda token: self.http.post(
                url,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Dropbox-API-Arg": header_arg,
                },
            ),
        )
        self._raise_for_status(response, endpoint)

        try:
            metadata = json.loads(response.headers.get("Dropbox-API-Result", "{}"))
        except ValueError:
            metadata = {}
        return DownloadedFile(
            content=response.content,
            content_type=response.headers.get("Content-Type", "application/octet-stream"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"error_summary": response.text[:200]}
        return body if isinstance(body, dict) else {}

    def _raise_for_status(self, response: httpx.Response, endpoint: str) -> None:
        if response.is_success:
            return
        if response.status_code == 401:
            raise AuthRejectedError("dropbox")

        body = self._error_body(response)
        summary = body.get("error_summary") or f"HTTP {response.status_code}"
        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        self.logger.warning(
            "dropbox_call_failed",
            endpoint=endpoint,
            status=response.status_code,
            error_summary=summary,
        )
        raise UpstreamUnavailableError(
            "dropbox",
            f"Dropbox {endpoint} failed: {summary}",
            upstream_status=response.status_code,
            details={"endpoint": endpoint, "error": error},
        )

    # ===== Files =====

    @network_retry
    def get_thumbnail(self, tenant_id: str, resource: Dict[str, Any], size: str) -> DownloadedFile:
        """
        Native JPEG thumbnail, best-fit within the size bucket.

        Args:
            resource: `{".tag": "path", "path": ...}` or
                `{".tag": "link", "url": ..., "path": ...}`
            size: One of the Dropbox thumbnail buckets, e.g. "w640h480"
        """
        return self._content(tenant_id, "files/get_thumbnail_v2", {
            "resource": resource,
            "format": "jpeg",
            "size": size,
            "mode": "bestfit",
        })

    @network_retry
    def download(self, tenant_id: str, path: str) -> DownloadedFile:
        """Full-resolution file by path."""
        return self._content(tenant_id, "files/download", {"path": path})

    @network_retry
    def get_temporary_link(self, tenant_id: str, path: str) -> str:
        """Short-lived direct URL for a path or file id (`id:...`)."""
        body = self._rpc(tenant_id, "files/get_temporary_link", {"path": path}).json()
        link = body.get("link")
        if not link:
            raise UpstreamUnavailableError("dropbox", "Dropbox returned no temporary link")
        return str(link)

    def create_folder(self, tenant_id: str, path: str) -> bool:
        """
        Create a folder.

        Returns:
            True if created, False if something already exists at the path
        """
        try:
            self._rpc(tenant_id, "files/create_folder_v2", {"path": path, "autorename": False})
        except UpstreamUnavailableError as e:
            error = e.details.get("error") or {}
            conflict = error.get(".tag") == "path" and (error.get("path") or {}).get(".tag") == "conflict"
            if e.upstream_status == 409 and conflict:
                return False
            raise
        self.logger.info("dropbox_folder_created", tenant_id=tenant_id, path=path)
        return True

    def save_url(self, tenant_id: str, path: str, url: str) -> SaveUrlJob:
        """Ask Dropbox to fetch `url` server-side into `path`."""
        body = self._rpc(tenant_id, "files/save_url", {"path": path, "url": url}).json()
        return parse_save_url_result(body)

    @network_retry
    def check_save_url_job(self, tenant_id: str, async_job_id: str) -> SaveUrlJob:
        body = self._rpc(
            tenant_id,
            "files/save_url/check_job_status",
            {"async_job_id": async_job_id},
        ).json()
        return parse_save_url_result(body)

    # ===== Sharing =====

    @network_retry
    def get_shared_link_file(
        self,
        tenant_id: str,
        url: str,
        path: Optional[str] = None,
    ) -> DownloadedFile:
        """Full-resolution file behind a shared link; `path` is relative to a folder link."""
        arg: Dict[str, Any] = {"url": url}
        # Folder-root paths are omitted (file links reject them)
        if path and path != "/":
            arg["path"] = path
        return self._content(tenant_id, "sharing/get_shared_link_file", arg)

    @network_retry
    def get_shared_link_metadata(self, tenant_id: str, url: str) -> Dict[str, Any]:
        return self._rpc(tenant_id, "sharing/get_shared_link_metadata", {"url": url}).json()

    def create_shared_link(self, tenant_id: str, path: str) -> str:
        """
        Create a shared link for `path`.

        Raises:
            UpstreamUnavailableError: Including `shared_link_already_exists`
        """
        body = self._rpc(tenant_id, "sharing/create_shared_link_with_settings", {"path": path}).json()
        url = body.get("url")
        if not url:
            raise UpstreamUnavailableError("dropbox", "Dropbox returned no shared link url")
        return str(url)

    @network_retry
    def list_shared_links(self, tenant_id: str, path: str, direct_only: bool = True) -> List[str]:
        body = self._rpc(
            tenant_id,
            "sharing/list_shared_links",
            {"path": path, "direct_only": direct_only},
        ).json()
        links = body.get("links") or []
        return [str(link["url"]) for link in links if isinstance(link, dict) and link.get("url")]


# Singleton instance
_dropbox_client: Optional[DropboxClient] = None


def get_dropbox_client() -> DropboxClient:
    """
    Get singleton DropboxClient backed by the application's gallery store.

    Returns:
        DropboxClient instance
    """
    global _dropbox_client
    if _dropbox_client is None:
        from services.gallery_store import get_gallery_store

        _dropbox_client = DropboxClient(CredentialCache(get_gallery_store()))
    return _dropbox_client
