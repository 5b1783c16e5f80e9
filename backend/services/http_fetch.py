"""
Fetch bytes from public URLs (logos, temporary links, generated media).
"""

import logging
from typing import Optional

import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import settings
from pipeline.error_handler import UpstreamUnavailableError

logger = structlog.get_logger(__name__)

_http: Optional[httpx.Client] = None


def get_http_client() -> httpx.Client:
    """Shared httpx client for outbound public fetches."""
    global _http
    if _http is None:
        _http = httpx.Client(timeout=settings.HTTP_TIMEOUT, follow_redirects=True)
    return _http


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type((httpx.NetworkError, httpx.TimeoutException)),
    before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
    reraise=True,
)
def _get(client: httpx.Client, url: str) -> httpx.Response:
    return client.get(url)


def fetch_bytes(url: str, http: Optional[httpx.Client] = None) -> bytes:
    """
    GET a URL and return its body.

    Transport errors are retried; a non-2xx answer is not.

    Raises:
        UpstreamUnavailableError: Non-2xx status or network failure
    """
    client = http or get_http_client()
    try:
        response = _get(client, url)
    except httpx.HTTPError as e:
        logger.warning("public_fetch_failed", url=url, error=str(e))
        raise UpstreamUnavailableError("http", f"Failed to download {url}: {e}") from e

    if not response.is_success:
        logger.warning("public_fetch_rejected", url=url, status=response.status_code)
        raise UpstreamUnavailableError(
            "http",
            f"Failed to download image ({response.status_code})",
            upstream_status=response.status_code,
        )
    return response.content
