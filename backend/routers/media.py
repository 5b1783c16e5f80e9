"""
Media delivery router

Proxies gallery images out of the tenant's Dropbox so tokens stay server-side:
- GET /api/dropbox/assets/{gallery_id}: thumbnails (size-bucketed, optionally
  watermarked, WebP)
- GET /api/dropbox/download/{gallery_id}: full-resolution download, optionally
  branded with the client's watermark
- GET /api/ai-source/dropbox: signed, expiring links handed to the video model
"""

import asyncio
from functools import partial
from typing import Optional
from urllib.parse import quote

import structlog
from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import PlainTextResponse, Response

from auth import get_caller
from config import settings
from pipeline.asset_resolver import AssetResolver, Caller, get_asset_resolver
from pipeline.error_handler import PipelineError, UpstreamUnavailableError
from pipeline.transform import TransformPipeline, WatermarkSpec, get_transform_pipeline

logger = structlog.get_logger()

router = APIRouter(tags=["Media"])

AI_SOURCE_CACHE_CONTROL = "public, max-age=300"


def error_response(error: PipelineError, upstream_message: str = "Failed to fetch asset") -> PlainTextResponse:
    """
    Plain-text error for media endpoints.

    Provider HTTP failures pass the provider's status through.
    """
    error.log_error()
    if isinstance(error, UpstreamUnavailableError) and error.upstream_status and error.upstream_status >= 400:
        return PlainTextResponse(upstream_message, status_code=error.upstream_status)
    return PlainTextResponse(error.message, status_code=error.status_code)


def content_disposition(filename: str) -> str:
    """Attachment header that survives non-ASCII file names."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "'")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


@router.get(
    "/api/dropbox/assets/{gallery_id}",
    responses={
        200: {"description": "Image bytes (image/webp, or the original type if optimisation failed)"},
        400: {"description": "Missing or invalid path"},
        403: {"description": "Gallery not published, locked, or path outside the gallery"},
        404: {"description": "Gallery not found or Dropbox not connected"},
    },
    summary="Get Gallery Thumbnail",
    description="Fetch a size-bucketed, optionally watermarked thumbnail of a gallery image",
)
async def get_gallery_asset(
    gallery_id: str = Path(..., description="Gallery identifier"),
    path: Optional[str] = Query(None, description="Dropbox path (relative to the shared link when one is given)"),
    shared_link: Optional[str] = Query(None, alias="sharedLink", description="Dropbox shared link the path is inside"),
    size: Optional[str] = Query(None, description="Thumbnail size, e.g. w640h480; coerced to a supported bucket"),
    shared: Optional[str] = Query(None, description="'true' for curated share-page requests"),
    caller: Caller = Depends(get_caller),
    resolver: AssetResolver = Depends(get_asset_resolver),
    transform: TransformPipeline = Depends(get_transform_pipeline),
):
    """
    Proxy a thumbnail for a gallery image.

    **Query Parameters:**
    - **path**: Required. Rejected if it contains `..` or `./`
    - **sharedLink**: Address the file through a Dropbox shared link
    - **size**: Any size; mapped to the nearest Dropbox bucket (default w640h480)
    - **shared**: `true` bypasses the publish/lock/folder checks for share pages

    **Response:**
    - WebP bytes with `Cache-Control: public, max-age=31536000, immutable`
    - Plain-text error message otherwise
    """
    shared_request = shared == "true"
    if shared_request:
        logger.info("shared_asset_request", gallery_id=gallery_id, path=path)

    loop = asyncio.get_event_loop()
    try:
        resource = await loop.run_in_executor(
            None,
            partial(
                resolver.resolve,
                gallery_id,
                path,
                shared_link=shared_link,
                caller=caller,
                shared_request=shared_request,
            ),
        )
        image = await loop.run_in_executor(
            None,
            partial(transform.fetch_transformed, resource, size, WatermarkSpec.tenant(resource.gallery)),
        )
    except PipelineError as e:
        return error_response(e)

    headers = {"Cache-Control": image.cache_control} if image.cache_control else None
    return Response(content=image.content, media_type=image.content_type, headers=headers)


@router.get(
    "/api/dropbox/download/{gallery_id}",
    summary="Download Gallery File",
    description="Download a full-resolution gallery file, optionally branded with the client's watermark",
)
async def download_gallery_file(
    gallery_id: str = Path(..., description="Gallery identifier"),
    path: Optional[str] = Query(None, description="Dropbox path of the file"),
    shared_link: Optional[str] = Query(None, alias="sharedLink", description="Dropbox shared link the path is inside"),
    apply_branding: Optional[str] = Query(None, alias="applyBranding", description="'true' to stamp the client's logo"),
    caller: Caller = Depends(get_caller),
    resolver: AssetResolver = Depends(get_asset_resolver),
    transform: TransformPipeline = Depends(get_transform_pipeline),
):
    """
    Download the original file as an attachment.

    With `applyBranding=true` and a client watermark configured, the client's
    logo is placed per its watermark settings (JPEG output). Branding failures
    fall back to the untouched file.
    """
    loop = asyncio.get_event_loop()
    try:
        resource = await loop.run_in_executor(
            None,
            partial(resolver.resolve, gallery_id, path, shared_link=shared_link, caller=caller),
        )
        branding = WatermarkSpec.client(resource.gallery) if apply_branding == "true" else None
        result = await loop.run_in_executor(None, partial(transform.fetch_download, resource, branding))
    except PipelineError as e:
        return error_response(e, "Failed to fetch from Dropbox")

    filename = resource.reference.filename
    if result.branded:
        filename = f"branded-{filename}"
    return Response(
        content=result.content,
        media_type=result.content_type,
        headers={"Content-Disposition": content_disposition(filename)},
    )


@router.get(
    "/api/ai-source/dropbox",
    summary="Signed AI Source",
    description="Serve a shared-link file to the video model through a signed, expiring URL",
)
async def get_ai_source(
    gallery_id: str = Query("", alias="galleryId"),
    shared_link: str = Query("", alias="sharedLink"),
    path: str = Query(""),
    exp: str = Query(""),
    sig: str = Query(""),
    resolver: AssetResolver = Depends(get_asset_resolver),
    transform: TransformPipeline = Depends(get_transform_pipeline),
):
    """
    Stream a full-resolution file for a signed link.

    The signature covers gallery, expiry, shared link and path, and the shared
    link must be the gallery's own. No session is required.
    """
    loop = asyncio.get_event_loop()
    try:
        resource = await loop.run_in_executor(
            None,
            partial(
                resolver.resolve_signed_source,
                settings.AI_SOURCE_SIGNING_SECRET,
                gallery_id,
                shared_link,
                path,
                exp,
                sig,
            ),
        )
        original = await loop.run_in_executor(None, partial(transform.fetch_original, resource))
    except PipelineError as e:
        return error_response(e, "Upstream fetch failed")

    return Response(
        content=original.content,
        media_type=original.content_type,
        headers={"Cache-Control": AI_SOURCE_CACHE_CONTROL},
    )
