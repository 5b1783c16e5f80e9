"""
AI Social Video Orchestrator

Start/poll flow for storyboard-to-video generation:

start:
    validate input (no I/O) -> gallery + tenant ownership -> AI suite gates
    -> decrement quota (row lock) -> resolve asset URLs -> storyboard
    -> submit prediction, trying each known input schema in turn

poll:
    read the prediction -> on success relay the video into Dropbox, record
    the share link on the gallery, and return it

There is no local job table; the provider's prediction id is the job handle.
The quota is spent at start and never refunded, even when submission fails.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from config import settings
from pipeline.asset_resolver import (
    ANONYMOUS,
    Caller,
    build_ai_source_url,
    infer_provider,
    is_traversal,
)
from pipeline.error_handler import (
    ErrorCode,
    FailurePolicy,
    FeatureDisabledError,
    FeatureLockedError,
    Operation,
    PathRejectedError,
    PipelineError,
    QuotaExhaustedError,
    SchemaRejectedError,
    ValidationError,
    policy_for,
)
from pipeline.storyboard import MAX_IMAGES, MIN_IMAGES, to_data_url


logger = structlog.get_logger(__name__)

ASPECT_RATIO = "9:16"
GENERATED_VIDEO_TITLE = "AI Social Video"
UNREACHABLE_ASSET_MESSAGE = "AI cannot access one or more images. Please ensure storage is connected."

PROMPT_TEMPLATE = (
    "Create a cinematic real estate social video (vertical 9:16), duration {duration} seconds.\n"
    "The input image is a storyboard grid of numbered panels (1..N). "
    "Treat each numbered panel as a separate full-frame shot.\n"
    "Show panels in order (1..N) and distribute screen time evenly across them.\n"
    "For each shot: add natural, photorealistic motion (subtle camera dolly/push, gentle parallax, "
    "realistic lighting micro-changes). Avoid Ken Burns slideshow look.\n"
    "Between shots: use smooth cinematic transitions (match cut / gentle dissolve) "
    "that blend into the next panel.\n"
    "IMPORTANT: Do NOT scroll or pan across the storyboard grid. Do NOT show multiple panels at once. "
    "Do NOT add text.\n"
    "Style: bright, clean, premium real estate marketing. Preserve architecture and perspective. "
    "Avoid warping, flicker, jitter, and surreal artifacts."
)


def video_duration(requested: Any) -> int:
    """
    The model only accepts 5 or 10 second clips; anything but 5 means 10.

    Example:
        >>> video_duration("5")
        5
        >>> video_duration("ten")
        10
    """
    if requested is None or isinstance(requested, bool):
        return 10
    try:
        return 5 if float(str(requested).strip()) == 5 else 10
    except ValueError:
        return 10


def build_prompt(duration: int) -> str:
    return PROMPT_TEMPLATE.format(duration=duration)


def build_input_attempts(image: str, prompt: str, duration: int) -> List[Dict[str, Any]]:
    """Input payloads in the order they are tried (the image key differs between model versions)."""
    common = {"prompt": prompt, "duration": duration, "aspect_ratio": ASPECT_RATIO}
    return [
        {"image": image, **common},
        {"image_url": image, **common},
    ]


def is_public_url(url: Optional[str]) -> bool:
    """http(s) URLs the provider could fetch itself, i.e. not pointing at this machine."""
    value = str(url or "")
    return value.startswith("http") and "localhost" not in value and "127.0.0.1" not in value


@dataclass
class AssetSelection:
    """One user-selected image, in storyboard order."""

    url: str = ""
    id: Optional[str] = None
    name: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "AssetSelection":
        if isinstance(value, AssetSelection):
            return value
        if isinstance(value, dict):
            return cls(
                url=str(value.get("url") or ""),
                id=value.get("id"),
                name=value.get("name"),
                path=value.get("path"),
            )
        return cls(
            url=str(getattr(value, "url", "") or ""),
            id=getattr(value, "id", None),
            name=getattr(value, "name", None),
            path=getattr(value, "path", None),
        )


@dataclass
class StartResult:
    prediction_id: str
    ai_suite: Dict[str, Any]


@dataclass
class PollResult:
    status: str
    video_url: Optional[str] = None
    warning: Optional[str] = None
    error: Optional[str] = None


class VideoOrchestrator:
    """
    Coordinates quota, storage, storyboard, generation provider and relay.

    Usage:
        orchestrator = VideoOrchestrator(store, resolver, relay, StoryboardComposer())
        started = orchestrator.start(caller, "gal-1", assets, duration_seconds=10)
        result = orchestrator.poll(caller, started.prediction_id, "gal-1")
    """

    def __init__(
        self,
        store,
        resolver,
        relay,
        composer,
        replicate_factory: Optional[Callable[[], Any]] = None,
        model: Optional[str] = None,
        public_base_url: Optional[str] = None,
        signing_secret: Optional[str] = None,
        source_link_ttl: Optional[int] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            store: GalleryStore
            resolver: AssetResolver
            relay: PersistenceRelay
            composer: StoryboardComposer
            replicate_factory: Returns a ReplicateClient; raises ValueError
                when no API token is configured
            model: "owner/name" of the video model (default: settings.AI_VIDEO_MODEL)
            public_base_url: Base URL for signed AI source links (default: settings)
            signing_secret: Secret for signed AI source links (default: settings)
            source_link_ttl: Lifetime of signed AI source links in seconds
            now: UTC clock (tests pass a fake)
        """
        if replicate_factory is None:
            from services.replicate_client import get_replicate_client
            replicate_factory = get_replicate_client

        self.store = store
        self.resolver = resolver
        self.relay = relay
        self.composer = composer
        self.replicate_factory = replicate_factory
        self.model = model or settings.AI_VIDEO_MODEL
        self.public_base_url = public_base_url if public_base_url is not None else settings.PUBLIC_BASE_URL
        self.signing_secret = signing_secret if signing_secret is not None else settings.AI_SOURCE_SIGNING_SECRET
        self.source_link_ttl = source_link_ttl or settings.AI_SOURCE_LINK_TTL
        self.now = now
        self.logger = logger.bind(service="video_orchestrator")

    # ===== start =====

    def start(
        self,
        caller: Caller,
        gallery_id: Optional[str],
        ordered_assets: Sequence[Any],
        duration_seconds: Any = None,
    ) -> StartResult:
        """
        Start a generation job.

        Raises:
            ValidationError: Missing gallery id or wrong number of images
            PathRejectedError: An asset path tries to climb out of its folder
            PipelineError: UNAUTHORIZED, GALLERY_NOT_FOUND,
                AI_SUITE_LOCKED / AI_SUITE_VIDEO_LIMIT / AI_DISABLED,
                ASSET_UNREACHABLE, GENERATION_NOT_CONFIGURED, SCHEMA_REJECTED,
                UPSTREAM_UNAVAILABLE
        """
        caller = caller or ANONYMOUS
        assets = self._validate_start(caller, gallery_id, ordered_assets)

        gallery = self._owned_gallery(caller, gallery_id)
        self._check_ai_suite(gallery)

        marker = {
            "firstAssetPath": str(assets[0].path or ""),
            "startedAt": self.now().isoformat() + "Z",
        }
        ai_suite = self.store.consume_video_quota(gallery.id, marker)

        urls = self._resolve_asset_urls(gallery, assets)
        storyboard = to_data_url(self.composer.compose(urls))

        try:
            client = self.replicate_factory()
        except ValueError as e:
            self.logger.error("replicate_not_configured", error=str(e))
            raise PipelineError(ErrorCode.GENERATION_NOT_CONFIGURED, "Missing REPLICATE_API_TOKEN") from e

        duration = video_duration(duration_seconds)
        prediction = self._submit(client, storyboard, build_prompt(duration), duration)
        self.store.record_prediction(gallery.id, prediction.id, marker["firstAssetPath"])

        self.logger.info(
            "ai_video_started",
            gallery_id=gallery.id,
            prediction_id=prediction.id,
            panels=len(urls),
            duration=duration,
            remaining_videos=ai_suite.get("remainingVideos"),
        )
        return StartResult(prediction_id=prediction.id, ai_suite=ai_suite)

    @staticmethod
    def _validate_start(caller: Caller, gallery_id: Optional[str], ordered_assets) -> List[AssetSelection]:
        if not caller.is_authenticated:
            raise PipelineError(ErrorCode.UNAUTHORIZED, "Unauthorized")
        if not gallery_id:
            raise ValidationError("Missing galleryId", field="galleryId")

        assets = [AssetSelection.from_value(a) for a in (ordered_assets or [])]
        if len(assets) < MIN_IMAGES or len(assets) > MAX_IMAGES:
            raise ValidationError("Select 3–5 images.", field="orderedAssets")

        for asset in assets:
            if asset.path and is_traversal(asset.path):
                raise PathRejectedError("Invalid path", asset.path)
        return assets

    def _owned_gallery(self, caller: Caller, gallery_id: str):
        gallery = self.store.get_gallery(gallery_id)
        if gallery is None:
            raise PipelineError(ErrorCode.GALLERY_NOT_FOUND, "Gallery not found", {"gallery_id": gallery_id})
        if not caller.tenant_id or caller.tenant_id != gallery.tenant_id:
            raise PipelineError(ErrorCode.UNAUTHORIZED, "Unauthorized", {"gallery_id": gallery_id})
        return gallery

    @staticmethod
    def _check_ai_suite(gallery) -> None:
        ai_suite = gallery.ai_suite
        remaining = ai_suite.get("remainingVideos")
        if not isinstance(remaining, int) or isinstance(remaining, bool):
            remaining = 0

        if not ai_suite.get("unlocked"):
            raise FeatureLockedError(ai_suite)
        if remaining <= 0:
            raise QuotaExhaustedError(ai_suite)

        # Trial unlocks run even when the studio has AI switched off
        enabled = (gallery.tenant_settings.get("aiSuite") or {}).get("enabled")
        if enabled is not True and ai_suite.get("unlockType") != "trial":
            raise FeatureDisabledError(ai_suite)

    def _resolve_asset_urls(self, gallery, assets: Sequence[AssetSelection]) -> List[str]:
        """
        A URL the provider can fetch for every asset, in order.

        Per asset: Dropbox temporary link, then a signed AI source link for
        shared-link galleries, then the asset's own URL if it is public.
        """
        provider = infer_provider(gallery.tenant_provider, gallery.shared_link)
        urls = []
        for index, asset in enumerate(assets):
            resolved = None
            lookup = str(asset.id or asset.path or "")

            if lookup and provider == "DROPBOX":
                resolved = self.resolver.temporary_link(gallery.tenant_id, lookup)

            if not resolved and asset.path and gallery.shared_link and self.public_base_url and self.signing_secret:
                resolved = build_ai_source_url(
                    self.public_base_url,
                    self.signing_secret,
                    gallery.id,
                    gallery.shared_link,
                    asset.path,
                    self.source_link_ttl,
                )

            if not resolved and is_public_url(asset.url):
                resolved = asset.url

            if not resolved:
                self.logger.warning("ai_video_asset_unreachable", gallery_id=gallery.id, index=index)
                raise PipelineError(ErrorCode.ASSET_UNREACHABLE, UNREACHABLE_ASSET_MESSAGE, {"index": index})
            urls.append(resolved)
        return urls

    def _submit(self, client, image: str, prompt: str, duration: int):
        """Try each input schema until one is accepted."""
        attempts = build_input_attempts(image, prompt, duration)
        last_error: Optional[PipelineError] = None

        for number, input_params in enumerate(attempts, start=1):
            try:
                return client.create_model_prediction(self.model, input_params)
            except PipelineError as e:
                last_error = e
                if policy_for(Operation.PREDICTION_SUBMIT, e) is not FailurePolicy.RETRY_ONCE:
                    raise
                self.logger.warning(
                    "prediction_schema_attempt_failed",
                    attempt=number,
                    code=e.code.value,
                    error=e.message,
                )

        raise SchemaRejectedError(
            last_error.message if last_error else "Failed to start video generation",
            attempts=len(attempts),
        )

    # ===== poll =====

    def poll(self, caller: Caller, prediction_id: Optional[str], gallery_id: Optional[str]) -> PollResult:
        """
        Check a generation job; relay and record the video once it succeeds.

        Raises:
            ValidationError: Missing prediction or gallery id
            PipelineError: UNAUTHORIZED, GALLERY_NOT_FOUND,
                GENERATION_NOT_CONFIGURED, UPSTREAM_UNAVAILABLE
        """
        caller = caller or ANONYMOUS
        if not caller.is_authenticated:
            raise PipelineError(ErrorCode.UNAUTHORIZED, "Unauthorized")
        if not prediction_id:
            raise ValidationError("Missing predictionId", field="predictionId")
        if not gallery_id:
            raise ValidationError("Missing galleryId", field="galleryId")

        gallery = self._owned_gallery(caller, gallery_id)

        try:
            client = self.replicate_factory()
        except ValueError as e:
            raise PipelineError(ErrorCode.GENERATION_NOT_CONFIGURED, "Missing REPLICATE_API_TOKEN") from e

        prediction = client.get_prediction(prediction_id)
        status = prediction.status

        if status == "succeeded":
            video_url = prediction.output_url
            if not video_url:
                return PollResult(status=status)
            return self._persist(gallery, prediction_id, status, video_url)

        if status in ("failed", "canceled"):
            return PollResult(status=status, error=prediction.error or "Video generation failed")

        return PollResult(status=status)

    def _persist(self, gallery, prediction_id: str, status: str, video_url: str) -> PollResult:
        marker = gallery.metadata.get("aiSocialVideo") or {}
        entry = (marker.get("predictions") or {}).get(prediction_id)
        # Already relayed by an earlier poll
        if entry and entry.get("shareUrl"):
            return PollResult(status=status, video_url=entry["shareUrl"])

        # Unknown predictions use the latest start's first asset
        first_asset_path = (entry or marker).get("firstAssetPath")
        outcome = self.relay.relay(
            gallery.tenant_id,
            gallery.id,
            video_url,
            first_asset_path=str(first_asset_path or "") or None,
            gallery_title=gallery.title,
        )
        if not outcome.success:
            # The provider URL still lets the user watch/download for a while
            return PollResult(status=status, video_url=video_url, warning=outcome.error or "Dropbox save failed")

        self.store.record_video_link(gallery.id, outcome.share_url, title=GENERATED_VIDEO_TITLE)
        self.store.mark_video_relayed(gallery.id, prediction_id, outcome.share_url)
        return PollResult(status=status, video_url=outcome.share_url)


# Singleton instance
_video_orchestrator: Optional[VideoOrchestrator] = None


def get_video_orchestrator() -> VideoOrchestrator:
    """
    Get singleton VideoOrchestrator wired to the application services.

    Returns:
        VideoOrchestrator instance
    """
    global _video_orchestrator
    if _video_orchestrator is None:
        from pipeline.asset_resolver import get_asset_resolver
        from pipeline.persistence_relay import PersistenceRelay
        from pipeline.storyboard import StoryboardComposer
        from services.dropbox_client import get_dropbox_client
        from services.gallery_store import get_gallery_store

        resolver = get_asset_resolver()
        _video_orchestrator = VideoOrchestrator(
            store=get_gallery_store(),
            resolver=resolver,
            relay=PersistenceRelay(get_dropbox_client(), resolver),
            composer=StoryboardComposer(),
        )
    return _video_orchestrator
