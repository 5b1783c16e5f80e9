"""
Tests for the Replicate wrapper.

The official client is mocked; nothing here talks to Replicate.
"""

from unittest.mock import Mock, patch

import httpx
import pytest
from replicate.exceptions import ReplicateError

from pipeline.error_handler import ErrorCode, SchemaRejectedError, UpstreamUnavailableError
from services.replicate_client import (
    PredictionSnapshot,
    ReplicateClient,
    extract_output_url,
    normalize_status,
)


@pytest.fixture(autouse=True)
def reset_singleton():
    ReplicateClient._instance = None
    yield
    ReplicateClient._instance = None


@pytest.fixture
def sdk():
    with patch("services.replicate_client.replicate.Client") as client_cls:
        yield client_cls.return_value


@pytest.fixture
def replicate_client(sdk):
    return ReplicateClient(api_token="r8_test_token")


def _prediction(**kwargs):
    values = {"id": "pred-1", "status": "starting", "output": None, "error": None}
    values.update(kwargs)
    return Mock(**values)


class TestReplicateClientInitialization:
    """Test ReplicateClient initialization and configuration."""

    def test_initialization_with_token(self, sdk):
        with patch("services.replicate_client.replicate.Client") as client_cls:
            client = ReplicateClient(api_token="r8_test_token", timeout=30)

        assert client.api_token == "r8_test_token"
        client_cls.assert_called_once_with(api_token="r8_test_token", timeout=30)

    def test_initialization_without_token_raises_error(self):
        with patch("services.replicate_client.settings") as mock_settings:
            mock_settings.replicate_token = ""
            with pytest.raises(ValueError, match="Replicate API token is required"):
                ReplicateClient()

        # A failed construction does not leave a broken singleton behind
        assert ReplicateClient._instance is None

    def test_singleton_pattern(self, replicate_client):
        assert ReplicateClient() is replicate_client


class TestCreateModelPrediction:
    """Test cases for create_model_prediction()."""

    def test_returns_snapshot(self, replicate_client, sdk):
        sdk.models.predictions.create.return_value = _prediction()

        snapshot = replicate_client.create_model_prediction("kwaivgi/kling-v2.5-turbo-pro", {"image": "data:..."})

        assert snapshot == PredictionSnapshot(id="pred-1", status="submitted", output=None, error=None)
        sdk.models.predictions.create.assert_called_once_with(
            model="kwaivgi/kling-v2.5-turbo-pro",
            input={"image": "data:..."},
        )

    @pytest.mark.parametrize("status", [400, 422])
    def test_invalid_input_is_schema_rejection(self, replicate_client, sdk, status):
        sdk.models.predictions.create.side_effect = ReplicateError(status=status, detail="image is required")

        with pytest.raises(SchemaRejectedError) as exc_info:
            replicate_client.create_model_prediction("owner/model", {"image_url": "x"})

        assert exc_info.value.code == ErrorCode.SCHEMA_REJECTED
        assert exc_info.value.message == "image is required"

    def test_server_error_is_upstream_unavailable(self, replicate_client, sdk):
        sdk.models.predictions.create.side_effect = ReplicateError(status=500, detail="internal error")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            replicate_client.create_model_prediction("owner/model", {})

        assert exc_info.value.upstream_status == 500

    def test_network_error_is_not_retried(self, replicate_client, sdk):
        sdk.models.predictions.create.side_effect = httpx.ConnectError("refused")

        with pytest.raises(UpstreamUnavailableError):
            replicate_client.create_model_prediction("owner/model", {})

        assert sdk.models.predictions.create.call_count == 1


class TestGetPrediction:
    """Test cases for get_prediction()."""

    def test_succeeded_with_output(self, replicate_client, sdk):
        sdk.predictions.get.return_value = _prediction(
            status="succeeded",
            output=["https://replicate.delivery/xyz/output.mp4"],
        )

        snapshot = replicate_client.get_prediction("pred-1")

        assert snapshot.status == "succeeded"
        assert snapshot.output_url == "https://replicate.delivery/xyz/output.mp4"
        sdk.predictions.get.assert_called_once_with("pred-1")

    def test_failed_carries_error(self, replicate_client, sdk):
        sdk.predictions.get.return_value = _prediction(status="failed", error="NSFW content detected")

        snapshot = replicate_client.get_prediction("pred-1")

        assert snapshot.status == "failed"
        assert snapshot.error == "NSFW content detected"

    def test_unknown_status_is_terminal(self, replicate_client, sdk):
        sdk.predictions.get.return_value = _prediction(status="aborted")

        snapshot = replicate_client.get_prediction("pred-1")

        assert snapshot.status == "failed"
        assert snapshot.output_url is None

    def test_provider_error(self, replicate_client, sdk):
        sdk.predictions.get.side_effect = ReplicateError(status=404, detail="Not found")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            replicate_client.get_prediction("missing")

        assert exc_info.value.upstream_status == 404


class TestStatusAndOutput:
    """Test status normalisation and output URL extraction."""

    @pytest.mark.parametrize("raw,expected", [
        ("starting", "submitted"),
        ("processing", "processing"),
        ("succeeded", "succeeded"),
        ("failed", "failed"),
        ("canceled", "canceled"),
        ("SUCCEEDED", "succeeded"),
        ("queued", "submitted"),
        (" Processing ", "processing"),
        ("aborted", "failed"),
        ("paused", "failed"),
        ("", "processing"),
        (None, "processing"),
    ])
    def test_normalize_status(self, raw, expected):
        assert normalize_status(raw) == expected

    @pytest.mark.parametrize("output,expected", [
        ("https://replicate.delivery/a.mp4", "https://replicate.delivery/a.mp4"),
        (["https://replicate.delivery/a.mp4", "https://replicate.delivery/b.mp4"], "https://replicate.delivery/a.mp4"),
        ([["https://replicate.delivery/nested.mp4"]], "https://replicate.delivery/nested.mp4"),
        ({"url": "https://replicate.delivery/obj.mp4"}, "https://replicate.delivery/obj.mp4"),
        ("not a url", None),
        ([], None),
        (None, None),
        ({"video": "https://replicate.delivery/a.mp4"}, None),
    ])
    def test_extract_output_url(self, output, expected):
        assert extract_output_url(output) == expected

    def test_extract_output_url_from_file_object(self):
        file_output = Mock(url="https://replicate.delivery/file.mp4")

        assert extract_output_url(file_output) == "https://replicate.delivery/file.mp4"
