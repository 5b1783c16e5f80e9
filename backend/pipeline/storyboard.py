"""
Storyboard Composer

Builds a single numbered storyboard image (9:16, 2 columns x 3 rows) from the
selected gallery photos. Video models given one tall collage tend to pan
across it; numbering each panel lets the prompt ask for one shot per panel.

Layout (pixels):
    canvas 1080x1920 black, padding 28, gutter 22 -> tiles 501x606
    badge: circle r=34 centred at (52, 52) inside each tile, 65% black,
    white 1-based index
"""

import base64
import io
from typing import Callable, List, Optional, Sequence

from PIL import Image, ImageDraw, ImageFont, ImageOps
import structlog

from pipeline.error_handler import ErrorCode, PipelineError, ValidationError


logger = structlog.get_logger(__name__)

CANVAS_SIZE = (1080, 1920)
COLUMNS = 2
ROWS = 3
PADDING = 28
GUTTER = 22
JPEG_QUALITY = 88

MIN_IMAGES = 3
MAX_IMAGES = 5

BADGE_CENTER = (52, 52)
BADGE_RADIUS = 34
BADGE_FILL = (0, 0, 0, 166)  # rgba(0,0,0,0.65)
BADGE_FONT_SIZE = 34
BADGE_FONTS = ["DejaVuSans-Bold.ttf", "Arial Bold.ttf", "Arial.ttf"]


def tile_size():
    """
    Size of one storyboard tile.

    Example:
        >>> tile_size()
        (501, 606)
    """
    width, height = CANVAS_SIZE
    tile_w = (width - PADDING * 2 - GUTTER * (COLUMNS - 1)) // COLUMNS
    tile_h = (height - PADDING * 2 - GUTTER * (ROWS - 1)) // ROWS
    return tile_w, tile_h


def tile_origin(index: int):
    """Top-left corner of tile `index` (row-major)."""
    tile_w, tile_h = tile_size()
    row, col = divmod(index, COLUMNS)
    return PADDING + col * (tile_w + GUTTER), PADDING + row * (tile_h + GUTTER)


def to_data_url(jpeg: bytes) -> str:
    """Inline a JPEG for submission to the generation provider."""
    return "data:image/jpeg;base64," + base64.b64encode(jpeg).decode("ascii")


def _load_badge_font():
    for name in BADGE_FONTS:
        try:
            return ImageFont.truetype(name, BADGE_FONT_SIZE)
        except OSError:
            continue
    logger.warning("badge_font_not_found", fonts=BADGE_FONTS)
    return ImageFont.load_default()


class StoryboardComposer:
    """
    Composes storyboard JPEGs.

    Usage:
        composer = StoryboardComposer()
        jpeg = composer.compose([url1, url2, url3])
        data_url = to_data_url(jpeg)
    """

    def __init__(self, fetcher: Optional[Callable[[str], bytes]] = None):
        """
        Args:
            fetcher: url -> bytes (default: services.http_fetch.fetch_bytes)
        """
        if fetcher is None:
            from services.http_fetch import fetch_bytes
            fetcher = fetch_bytes
        self.fetcher = fetcher
        self.logger = logger.bind(service="storyboard_composer")

    def compose(self, image_urls: Sequence[str]) -> bytes:
        """
        Fetch each image and compose the storyboard.

        Raises:
            ValidationError: Fewer than 3 or more than 5 images
            PipelineError: ASSET_DOWNLOAD_FAILED or COMPOSITION_FAILED
        """
        self._check_count(len(image_urls))

        images: List[bytes] = []
        for index, url in enumerate(image_urls):
            try:
                images.append(self.fetcher(url))
            except PipelineError as e:
                raise PipelineError(
                    ErrorCode.ASSET_DOWNLOAD_FAILED,
                    e.message,
                    {"index": index},
                ) from e
        return self.compose_images(images)

    def compose_images(self, images: Sequence[bytes]) -> bytes:
        """Compose already-downloaded images (same rules as `compose`)."""
        self._check_count(len(images))

        tile_w, tile_h = tile_size()
        canvas = Image.new("RGBA", CANVAS_SIZE, (0, 0, 0, 255))
        overlay = Image.new("RGBA", CANVAS_SIZE, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        font = _load_badge_font()

        for index, content in enumerate(list(images)[: COLUMNS * ROWS]):
            left, top = tile_origin(index)
            try:
                with Image.open(io.BytesIO(content)) as img:
                    tile = ImageOps.fit(
                        ImageOps.exif_transpose(img).convert("RGB"),
                        (tile_w, tile_h),
                        Image.Resampling.LANCZOS,
                    )
            except Exception as e:
                self.logger.error("storyboard_tile_failed", index=index, error=str(e))
                raise PipelineError(
                    ErrorCode.COMPOSITION_FAILED,
                    f"Could not read image {index + 1}",
                    {"index": index},
                ) from e
            canvas.paste(tile, (left, top))
            self._draw_badge(draw, font, left, top, str(index + 1))

        composed = Image.alpha_composite(canvas, overlay).convert("RGB")
        out = io.BytesIO()
        composed.save(out, format="JPEG", quality=JPEG_QUALITY)

        self.logger.info("storyboard_composed", panels=min(len(images), COLUMNS * ROWS), bytes=out.tell())
        return out.getvalue()

    @staticmethod
    def _draw_badge(draw: ImageDraw.ImageDraw, font, left: int, top: int, label: str) -> None:
        cx, cy = left + BADGE_CENTER[0], top + BADGE_CENTER[1]
        draw.ellipse(
            (cx - BADGE_RADIUS, cy - BADGE_RADIUS, cx + BADGE_RADIUS, cy + BADGE_RADIUS),
            fill=BADGE_FILL,
        )
        bbox = draw.textbbox((0, 0), label, font=font)
        text_w, text_h = bbox[2] - bbox[0], bbox[3] - bbox[1]
        draw.text(
            (cx - text_w / 2 - bbox[0], cy - text_h / 2 - bbox[1]),
            label,
            font=font,
            fill=(255, 255, 255, 255),
        )

    @staticmethod
    def _check_count(count: int) -> None:
        if count < MIN_IMAGES or count > MAX_IMAGES:
            raise ValidationError("Select 3–5 images.", field="orderedAssets")
