"""
Transform Pipeline

On-the-fly thumbnails for gallery delivery:
- Coerce any requested size into the fixed Dropbox thumbnail buckets
- Native Dropbox thumbnail first, full download + local resize as fallback
- Optional logo watermark (tenant logo centred, or client logo positioned by
  the client's watermark settings)
- WebP recompression with long-lived immutable caching

Every watermark or recompression failure degrades to the un-watermarked bytes
instead of failing the request.
"""

import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from PIL import Image, ImageOps

from pipeline.error_handler import FailurePolicy, Operation, PipelineError, policy_for

logger = logging.getLogger(__name__)

# Dropbox get_thumbnail_v2 size buckets, smallest first
SIZE_BUCKETS = ["w32h32", "w64h64", "w128h128", "w640h480", "w960h640", "w1024h768", "w2048h1536"]
DEFAULT_SIZE = "w640h480"

CACHE_CONTROL = "public, max-age=31536000, immutable"
WEBP_QUALITY = 80
RESIZE_JPEG_QUALITY = 85
BRANDED_JPEG_QUALITY = 92

# Tenant logos are fitted inside this box and drawn at half opacity
TENANT_LOGO_BOX = (300, 300)
TENANT_LOGO_OPACITY = 0.5

# Client logos: width is this fraction of the image width at scale=100
CLIENT_LOGO_WIDTH_RATIO = 0.15
DEFAULT_CLIENT_WATERMARK = {"x": 50, "y": 50, "scale": 100, "opacity": 60}

_SIZE_PATTERN = re.compile(r"^w(\d+)h(\d+)$|^(\d+)x(\d+)$", re.IGNORECASE)


def bucket_dimensions(bucket: str) -> Tuple[int, int]:
    """
    Width and height of a size bucket.

    Example:
        >>> bucket_dimensions("w640h480")
        (640, 480)
    """
    match = _SIZE_PATTERN.match(bucket)
    if not match:
        raise ValueError(f"Not a size bucket: {bucket}")
    width, height = match.group(1) or match.group(3), match.group(2) or match.group(4)
    return int(width), int(height)


def normalize_size(size: Optional[str]) -> str:
    """
    Coerce a requested size into SIZE_BUCKETS. Never raises.

    Exact bucket names are kept. "wNhM" / "NxM" requests map to the smallest
    bucket at least as large in both dimensions, never below the default
    bucket and clamped to the largest one. Anything else gets the default.

    Example:
        >>> normalize_size("w100h100")
        'w640h480'
        >>> normalize_size("w3000h2000")
        'w2048h1536'
        >>> normalize_size("huge")
        'w640h480'
    """
    if not size:
        return DEFAULT_SIZE
    candidate = str(size).strip()
    if candidate in SIZE_BUCKETS:
        return candidate

    match = _SIZE_PATTERN.match(candidate)
    if not match:
        return DEFAULT_SIZE
    width = int(match.group(1) or match.group(3))
    height = int(match.group(2) or match.group(4))

    eligible = SIZE_BUCKETS[SIZE_BUCKETS.index(DEFAULT_SIZE):]
    for bucket in eligible:
        bucket_w, bucket_h = bucket_dimensions(bucket)
        if bucket_w >= width and bucket_h >= height:
            return bucket
    return SIZE_BUCKETS[-1]


@dataclass(frozen=True)
class WatermarkSpec:
    """Which logo to draw and how."""

    logo_url: str
    source: str = "tenant"  # "tenant" or "client"
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def tenant(cls, gallery) -> Optional["WatermarkSpec"]:
        """Tenant logo watermark if the gallery has watermarking on and a logo exists."""
        if gallery.watermark_enabled and gallery.tenant_logo_url:
            return cls(logo_url=gallery.tenant_logo_url, source="tenant")
        return None

    @classmethod
    def client(cls, gallery) -> Optional["WatermarkSpec"]:
        """Client branding if the gallery's client has a watermark image."""
        if gallery.client_watermark_url:
            merged = dict(DEFAULT_CLIENT_WATERMARK)
            merged.update({
                k: v for k, v in (gallery.client_watermark_settings or {}).items()
                if k in DEFAULT_CLIENT_WATERMARK and isinstance(v, (int, float))
            })
            return cls(logo_url=gallery.client_watermark_url, source="client", settings=merged)
        return None


@dataclass
class TransformedImage:
    content: bytes
    content_type: str
    cache_control: Optional[str] = None
    branded: bool = False


def _with_opacity(logo: Image.Image, factor: float) -> Image.Image:
    logo = logo.convert("RGBA")
    alpha = logo.getchannel("A").point(lambda a: int(round(a * factor)))
    logo.putalpha(alpha)
    return logo


def _fit_inside(image: Image.Image, box: Tuple[int, int]) -> Image.Image:
    """Scale (up or down) to fit inside `box`, keeping aspect ratio."""
    ratio = min(box[0] / image.width, box[1] / image.height)
    size = (max(1, int(round(image.width * ratio))), max(1, int(round(image.height * ratio))))
    return image.resize(size, Image.Resampling.LANCZOS)


def apply_watermark(base: Image.Image, logo: Image.Image, spec: WatermarkSpec) -> Image.Image:
    """
    Composite a logo onto `base` and return a new RGBA image.

    Logos may hang off the edges; the overflow is clipped.
    """
    base = base.convert("RGBA")
    width, height = base.size

    if spec.source == "client":
        scale = float(spec.settings.get("scale", 100)) / 100
        opacity = float(spec.settings.get("opacity", 60)) / 100
        target_w = max(1, int(round(width * CLIENT_LOGO_WIDTH_RATIO * scale)))
        target_h = max(1, int(round(logo.height * target_w / logo.width)))
        mark = _with_opacity(logo.resize((target_w, target_h), Image.Resampling.LANCZOS), opacity)
        left = int(round(float(spec.settings.get("x", 50)) / 100 * width - mark.width / 2))
        top = int(round(float(spec.settings.get("y", 50)) / 100 * height - mark.height / 2))
    else:
        mark = _with_opacity(_fit_inside(logo, TENANT_LOGO_BOX), TENANT_LOGO_OPACITY)
        left = (width - mark.width) // 2
        top = (height - mark.height) // 2

    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    layer.paste(mark, (left, top))
    return Image.alpha_composite(base, layer)


def _to_rgb(img: Image.Image) -> Image.Image:
    """Flatten onto white for JPEG output."""
    if img.mode in ("RGBA", "LA", "P"):
        if img.mode == "P":
            img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def resize_to_bucket(content: bytes, bucket: str) -> bytes:
    """Best-fit JPEG within the bucket, EXIF orientation applied. Never upscales."""
    with Image.open(io.BytesIO(content)) as img:
        img = _to_rgb(ImageOps.exif_transpose(img))
        img.thumbnail(bucket_dimensions(bucket), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=RESIZE_JPEG_QUALITY, optimize=True)
        return out.getvalue()


class TransformPipeline:
    """
    Produces delivery images for resolved gallery assets.

    Example:
        >>> pipeline = TransformPipeline(get_dropbox_client(), get_logo_cache())
        >>> image = pipeline.fetch_transformed(resource, "w960h640", WatermarkSpec.tenant(resource.gallery))
        >>> image.content_type
        'image/webp'
    """

    def __init__(self, dropbox, logos):
        """
        Args:
            dropbox: DropboxClient
            logos: LogoCache
        """
        self.dropbox = dropbox
        self.logos = logos

    def fetch_original(self, resource):
        """Full-resolution file: shared-link file for link resources, download otherwise."""
        ref = resource.reference
        if ref.shared_link:
            return self.dropbox.get_shared_link_file(resource.tenant_id, ref.shared_link, ref.path)
        return self.dropbox.download(resource.tenant_id, ref.path)

    def fetch_transformed(
        self,
        resource,
        size: Optional[str],
        watermark: Optional[WatermarkSpec] = None,
    ) -> TransformedImage:
        """
        Thumbnail for `resource` in the bucket nearest to `size`.

        Raises:
            AuthRejectedError, StorageNotConnectedError: Credentials unusable
            UpstreamUnavailableError: Neither the thumbnail nor the original
                could be fetched
        """
        bucket = normalize_size(size)
        ref = resource.reference

        try:
            thumbnail = self.dropbox.get_thumbnail(resource.tenant_id, ref.resource, bucket)
            content, content_type = thumbnail.content, "image/jpeg"
        except PipelineError as e:
            if policy_for(Operation.THUMBNAIL, e) is not FailurePolicy.DEGRADE:
                raise
            logger.warning(f"Native thumbnail failed for {ref.path}, resizing locally: {e.message}")
            content, content_type = self._local_thumbnail(resource, bucket)

        return self._finish(content, content_type, watermark)

    def _local_thumbnail(self, resource, bucket: str) -> Tuple[bytes, str]:
        original = self.fetch_original(resource)
        try:
            return resize_to_bucket(original.content, bucket), "image/jpeg"
        except Exception as e:
            if policy_for(Operation.LOCAL_RESIZE, e) is not FailurePolicy.DEGRADE:
                raise
            logger.warning(f"Local resize failed, serving original: {e}")
            return original.content, original.content_type

    def _finish(
        self,
        content: bytes,
        content_type: str,
        watermark: Optional[WatermarkSpec],
    ) -> TransformedImage:
        """Watermark (if any) and recompress to WebP; degrade to the input bytes on failure."""
        try:
            with Image.open(io.BytesIO(content)) as img:
                img.load()
                result = img
                if watermark is not None:
                    logo_bytes = self.logos.get_logo(watermark.logo_url)
                    if logo_bytes:
                        with Image.open(io.BytesIO(logo_bytes)) as logo:
                            result = apply_watermark(img, logo, watermark)

                if result.mode not in ("RGB", "RGBA"):
                    result = result.convert("RGBA" if "A" in result.getbands() else "RGB")
                out = io.BytesIO()
                result.save(out, format="WEBP", quality=WEBP_QUALITY)
                return TransformedImage(out.getvalue(), "image/webp", CACHE_CONTROL)

        except Exception as e:
            if policy_for(Operation.WATERMARK, e) is not FailurePolicy.DEGRADE:
                raise
            logger.error(f"Image optimization/watermark failed: {e}")
            return TransformedImage(content, content_type, CACHE_CONTROL)

    def fetch_download(self, resource, branding: Optional[WatermarkSpec] = None) -> TransformedImage:
        """
        Full-resolution file, optionally branded with a logo (JPEG output).

        Branding failures return the untouched original.
        """
        original = self.fetch_original(resource)
        if branding is None:
            return TransformedImage(original.content, original.content_type)

        logo_bytes = self.logos.get_logo(branding.logo_url)
        if not logo_bytes:
            return TransformedImage(original.content, original.content_type)

        try:
            with Image.open(io.BytesIO(original.content)) as img, Image.open(io.BytesIO(logo_bytes)) as logo:
                branded = _to_rgb(apply_watermark(img, logo, branding))
                out = io.BytesIO()
                branded.save(out, format="JPEG", quality=BRANDED_JPEG_QUALITY)
                return TransformedImage(out.getvalue(), "image/jpeg", branded=True)
        except Exception as e:
            if policy_for(Operation.WATERMARK, e) is not FailurePolicy.DEGRADE:
                raise
            logger.error(f"Branding application failed: {e}")
            return TransformedImage(original.content, original.content_type)


# Singleton instance
_transform_pipeline: Optional[TransformPipeline] = None


def get_transform_pipeline() -> TransformPipeline:
    """Get singleton TransformPipeline using the shared Dropbox client and logo cache."""
    global _transform_pipeline
    if _transform_pipeline is None:
        from services.dropbox_client import get_dropbox_client
        from services.logo_cache import get_logo_cache

        _transform_pipeline = TransformPipeline(get_dropbox_client(), get_logo_cache())
    return _transform_pipeline
