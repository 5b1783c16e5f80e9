"""
AI social video router

Handles:
- POST /api/ai/social-video/start: storyboard + prediction submission
- GET /api/ai/social-video/poll/{prediction_id}: status, relay and share link
"""

import asyncio
from functools import partial
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import JSONResponse

from auth import get_caller
from pipeline.asset_resolver import Caller
from pipeline.error_handler import ErrorCode, PipelineError
from pipeline.video_orchestrator import VideoOrchestrator, get_video_orchestrator
from schemas import PollVideoResponse, StartVideoRequest, StartVideoResponse

logger = structlog.get_logger()

router = APIRouter(prefix="/api/ai/social-video", tags=["AI Video"])

# Errors that echo the gallery's quota state back to the UI
_AI_SUITE_ERRORS = {ErrorCode.AI_SUITE_VIDEO_LIMIT, ErrorCode.AI_DISABLED}


def _failure(error: PipelineError, model=StartVideoResponse) -> JSONResponse:
    error.log_error()
    body = model(success=False, error=error.message, code=error.code.value)
    if model is StartVideoResponse and error.code in _AI_SUITE_ERRORS:
        body.ai_suite = error.details.get("aiSuite")
    return JSONResponse(
        status_code=error.status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


@router.post(
    "/start",
    response_model=StartVideoResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": StartVideoResponse, "description": "Invalid input"},
        403: {"model": StartVideoResponse, "description": "AI suite locked, quota used up, or AI disabled"},
        404: {"model": StartVideoResponse, "description": "Gallery not found"},
        502: {"model": StartVideoResponse, "description": "Generation provider rejected the request"},
    },
    summary="Start AI Social Video",
    description="Compose a numbered storyboard from 3-5 gallery images and start video generation",
)
async def start_social_video(
    request: StartVideoRequest,
    caller: Caller = Depends(get_caller),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    """
    Start an AI social video for a gallery.

    This endpoint:
    1. Validates the request (gallery id, 3-5 images) before touching anything
    2. Checks the gallery belongs to the caller's studio and the AI suite allows a run
    3. Spends one video from the gallery's quota (not refunded on later failure)
    4. Builds a numbered 9:16 storyboard from the images
    5. Submits it to the video model and returns the prediction id

    **Example Response:**
    ```json
    {
      "success": true,
      "predictionId": "q7w2v3x0c5rmc0cm8d9r4gqk4c",
      "aiSuite": {"unlocked": true, "remainingVideos": 2, "unlockType": "paid"}
    }
    ```

    Poll `/api/ai/social-video/poll/{predictionId}?galleryId=...` until the
    status is `succeeded`, `failed` or `canceled`.
    """
    logger.info(
        "ai_video_start_request",
        gallery_id=request.gallery_id,
        assets=len(request.ordered_assets),
        duration=request.duration_seconds,
    )

    loop = asyncio.get_event_loop()
    try:
        result = await loop.run_in_executor(
            None,
            partial(
                orchestrator.start,
                caller,
                request.gallery_id,
                request.ordered_assets,
                request.duration_seconds,
            ),
        )
    except PipelineError as e:
        return _failure(e)

    return StartVideoResponse(success=True, prediction_id=result.prediction_id, ai_suite=result.ai_suite)


@router.get(
    "/poll/{prediction_id}",
    response_model=PollVideoResponse,
    response_model_exclude_none=True,
    summary="Poll AI Social Video",
    description="Check a generation job; once it succeeds the video is saved to Dropbox and shared",
)
async def poll_social_video(
    prediction_id: str = Path(..., description="Prediction id returned by /start"),
    gallery_id: Optional[str] = Query(None, alias="galleryId", description="Gallery the video belongs to"),
    caller: Caller = Depends(get_caller),
    orchestrator: VideoOrchestrator = Depends(get_video_orchestrator),
):
    """
    Poll a generation job.

    **Status Values:**
    - `submitted` / `processing`: keep polling
    - `succeeded`: `videoUrl` is the Dropbox share link (or the provider URL
      with a `warning` if saving to Dropbox failed)
    - `failed` / `canceled`: `error` carries the provider's message
    """
    loop = asyncio.get_event_loop()
    try:
        result = await loop.run_in_executor(
            None,
            partial(orchestrator.poll, caller, prediction_id, gallery_id),
        )
    except PipelineError as e:
        return _failure(e, PollVideoResponse)

    logger.info("ai_video_polled", prediction_id=prediction_id, status=result.status)
    return PollVideoResponse(
        success=True,
        status=result.status,
        video_url=result.video_url,
        warning=result.warning,
        error=result.error,
    )
