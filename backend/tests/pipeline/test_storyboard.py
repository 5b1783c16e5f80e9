"""
Tests for the storyboard composer.
"""

import base64
from unittest.mock import Mock

import pytest

from pipeline.error_handler import ErrorCode, PipelineError, UpstreamUnavailableError, ValidationError
from pipeline.storyboard import (
    BADGE_CENTER,
    CANVAS_SIZE,
    StoryboardComposer,
    tile_origin,
    tile_size,
    to_data_url,
)
from tests.conftest import make_image, open_image

ORANGE = (200, 120, 40)


def _close(pixel, expected, tolerance=30):
    return all(abs(a - b) <= tolerance for a, b in zip(pixel, expected))


class TestLayout:

    def test_tile_size(self):
        assert tile_size() == (501, 606)

    def test_tile_origins_row_major(self):
        assert tile_origin(0) == (28, 28)
        assert tile_origin(1) == (551, 28)
        assert tile_origin(2) == (28, 656)
        assert tile_origin(4) == (28, 1284)


class TestComposeImages:
    """Test cases for StoryboardComposer.compose_images()."""

    @pytest.mark.parametrize("count", [0, 2, 6])
    def test_rejects_wrong_count(self, count):
        composer = StoryboardComposer(fetcher=Mock())

        with pytest.raises(ValidationError, match="Select 3–5 images."):
            composer.compose_images([make_image()] * count)

    def test_canvas_and_tiles(self):
        composer = StoryboardComposer(fetcher=Mock())

        jpeg = composer.compose_images([make_image(color=ORANGE)] * 3)

        image = open_image(jpeg).convert("RGB")
        assert image.size == CANVAS_SIZE == (1080, 1920)

        left, top = tile_origin(0)
        assert _close(image.getpixel((left + 300, top + 400)), ORANGE)
        # Fourth tile slot is left black
        left, top = tile_origin(3)
        assert _close(image.getpixel((left + 250, top + 300)), (0, 0, 0))
        # Padding is black
        assert _close(image.getpixel((10, 10)), (0, 0, 0))

    def test_badges_darken_tile_corner(self):
        composer = StoryboardComposer(fetcher=Mock())

        image = open_image(composer.compose_images([make_image(color=ORANGE)] * 3)).convert("RGB")

        for index in range(3):
            left, top = tile_origin(index)
            # Inside the circle but left of the digit
            r, g, b = image.getpixel((left + BADGE_CENTER[0] - 26, top + BADGE_CENTER[1]))
            assert r < 120

    def test_portrait_and_landscape_are_cover_cropped(self):
        composer = StoryboardComposer(fetcher=Mock())
        images = [
            make_image((3000, 1000), color=ORANGE),
            make_image((400, 2000), color=ORANGE),
            make_image((50, 50), color=ORANGE),
        ]

        image = open_image(composer.compose_images(images)).convert("RGB")

        for index in range(3):
            left, top = tile_origin(index)
            assert _close(image.getpixel((left + 490, top + 595)), ORANGE)

    def test_unreadable_image(self):
        composer = StoryboardComposer(fetcher=Mock())

        with pytest.raises(PipelineError) as exc_info:
            composer.compose_images([make_image(), b"nope", make_image()])

        assert exc_info.value.code == ErrorCode.COMPOSITION_FAILED
        assert exc_info.value.details == {"index": 1}


class TestCompose:
    """Test cases for StoryboardComposer.compose()."""

    def test_fetches_in_order(self):
        fetcher = Mock(return_value=make_image())
        urls = ["https://dl.test/1.jpg", "https://dl.test/2.jpg", "https://dl.test/3.jpg"]

        StoryboardComposer(fetcher=fetcher).compose(urls)

        assert [c.args[0] for c in fetcher.call_args_list] == urls

    def test_count_checked_before_fetching(self):
        fetcher = Mock()

        with pytest.raises(ValidationError):
            StoryboardComposer(fetcher=fetcher).compose(["https://dl.test/1.jpg"])

        fetcher.assert_not_called()

    def test_download_failure(self):
        fetcher = Mock(side_effect=[make_image(), UpstreamUnavailableError("http", "Failed to download image (403)", 403)])

        with pytest.raises(PipelineError) as exc_info:
            StoryboardComposer(fetcher=fetcher).compose(["a", "b", "c"])

        assert exc_info.value.code == ErrorCode.ASSET_DOWNLOAD_FAILED
        assert exc_info.value.message == "Failed to download image (403)"


def test_to_data_url():
    data_url = to_data_url(b"\xff\xd8jpeg")

    assert data_url.startswith("data:image/jpeg;base64,")
    assert base64.b64decode(data_url.split(",", 1)[1]) == b"\xff\xd8jpeg"
