"""
Replicate API Wrapper

Wrapper around the official `replicate` client for the asynchronous
prediction flow used by AI video generation: submit against a model-scoped
endpoint, then poll the prediction by id.

Key Features:
- Singleton pattern for client reuse
- Retry logic with exponential backoff for prediction reads
- Provider errors converted to pipeline errors (schema rejection vs outage)
- Status normalisation and output URL extraction
- Logging integration with structlog
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import replicate
from replicate.exceptions import ReplicateError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
import structlog
import httpx

from config import settings
from pipeline.error_handler import SchemaRejectedError, UpstreamUnavailableError


logger = structlog.get_logger(__name__)

# Provider status -> job status exposed to callers
STATUS_MAP = {
    "starting": "submitted",
    "queued": "submitted",
    "processing": "processing",
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "canceled",
}

# HTTP statuses Replicate uses for an input payload it will not accept
SCHEMA_REJECTION_STATUSES = {400, 422}


def normalize_status(status: Optional[str]) -> str:
    """
    Map a Replicate prediction status onto the job status vocabulary.

    A missing status means the prediction is still being set up. Any other
    status outside STATUS_MAP is reported as failed so callers stop polling.

    Example:
        >>> normalize_status("starting")
        'submitted'
        >>> normalize_status("aborted")
        'failed'
    """
    raw = str(status or "").strip().lower()
    if not raw:
        return "processing"
    if raw not in STATUS_MAP:
        logger.warning("unknown_prediction_status", status=status)
        return "failed"
    return STATUS_MAP[raw]


def extract_output_url(output: Any) -> Optional[str]:
    """
    First URL in a prediction output.

    Handles a bare URL string, a list (first element, recursively) and an
    object or dict carrying a `url`.

    Example:
        >>> extract_output_url(["https://replicate.delivery/x/out.mp4"])
        'https://replicate.delivery/x/out.mp4'
    """
    if not output:
        return None
    if isinstance(output, str):
        return output if output.startswith("http") else None
    if isinstance(output, (list, tuple)):
        return extract_output_url(output[0])
    if isinstance(output, dict):
        url = output.get("url")
        return url if isinstance(url, str) else None
    url = getattr(output, "url", None)
    return url if isinstance(url, str) else None


@dataclass
class PredictionSnapshot:
    """Provider-agnostic view of a prediction."""

    id: str
    status: str
    output: Any = None
    error: Optional[str] = None

    @property
    def output_url(self) -> Optional[str]:
        return extract_output_url(self.output)


class ReplicateClient:
    """
    Wrapper for Replicate prediction calls.

    Usage:
        client = ReplicateClient()
        prediction = client.create_model_prediction(
            "kwaivgi/kling-v2.5-turbo-pro",
            {"image": "data:image/jpeg;base64,...", "prompt": "...", "duration": 10},
        )
        snapshot = client.get_prediction(prediction.id)
    """

    _instance = None

    def __new__(cls, api_token: str = None, max_retries: int = None, timeout: int = None):
        """Singleton pattern to reuse client instance."""
        if cls._instance is None:
            cls._instance = super(ReplicateClient, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(
        self,
        api_token: str = None,
        max_retries: int = None,
        timeout: int = None,
    ):
        """
        Initialize Replicate client.

        Args:
            api_token: Replicate API token. If None, loads from settings
            max_retries: Maximum number of retry attempts (default: 3)
            timeout: Request timeout in seconds (default: settings.REPLICATE_TIMEOUT)

        Raises:
            ValueError: If no API token is configured
        """
        # Skip if already initialized (singleton pattern)
        if self._initialized:
            return

        self.api_token = api_token or settings.replicate_token
        if not self.api_token:
            # Don't keep a half-built instance around
            ReplicateClient._instance = None
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN "
                "environment variable or pass api_token parameter."
            )

        # Configuration
        self.max_retries = max_retries or settings.REPLICATE_MAX_RETRIES
        self.timeout = timeout or settings.REPLICATE_TIMEOUT

        # Initialize logger
        self.logger = logger.bind(service="replicate_client")

        self.client = replicate.Client(api_token=self.api_token, timeout=self.timeout)

        self._initialized = True

        self.logger.info(
            "replicate_client_initialized",
            max_retries=self.max_retries,
            timeout=self.timeout,
        )

    def create_model_prediction(self, model_id: str, input_params: Dict[str, Any]) -> PredictionSnapshot:
        """
        Create a prediction against the model's latest deployment.

        Not retried here: whether another payload shape is worth trying is
        the caller's decision.

        Args:
            model_id: "owner/name", e.g. "kwaivgi/kling-v2.5-turbo-pro"
            input_params: Model input payload

        Returns:
            PredictionSnapshot of the created prediction

        Raises:
            SchemaRejectedError: Provider refused the payload shape
            UpstreamUnavailableError: Any other provider or network failure
        """
        self.logger.info(
            "creating_prediction",
            model_id=model_id,
            input_keys=sorted(input_params.keys()),
        )

        try:
            prediction = self.client.models.predictions.create(model=model_id, input=input_params)

        except ReplicateError as e:
            message = self._error_message(e)
            status = getattr(e, "status", None)
            self.logger.warning(
                "prediction_creation_rejected",
                model_id=model_id,
                status=status,
                error=message,
            )
            if status in SCHEMA_REJECTION_STATUSES:
                raise SchemaRejectedError(message, attempts=1) from e
            raise UpstreamUnavailableError("replicate", message, upstream_status=status) from e

        except httpx.HTTPError as e:
            self.logger.error("prediction_creation_failed", model_id=model_id, error=str(e))
            raise UpstreamUnavailableError("replicate", f"Replicate request failed: {e}") from e

        self.logger.info(
            "prediction_created",
            prediction_id=prediction.id,
            status=prediction.status,
        )
        return self._snapshot(prediction)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.NetworkError, httpx.TimeoutException)),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
        reraise=True,
    )
    def _fetch_prediction(self, prediction_id: str):
        return self.client.predictions.get(prediction_id)

    def get_prediction(self, prediction_id: str) -> PredictionSnapshot:
        """
        Read a prediction by id (pure read, safe to retry).

        Raises:
            UpstreamUnavailableError: Provider or network failure after retries
        """
        try:
            prediction = self._fetch_prediction(prediction_id)
        except ReplicateError as e:
            message = self._error_message(e)
            self.logger.error("prediction_fetch_failed", prediction_id=prediction_id, error=message)
            raise UpstreamUnavailableError(
                "replicate", message, upstream_status=getattr(e, "status", None)
            ) from e
        except httpx.HTTPError as e:
            self.logger.error("prediction_fetch_failed", prediction_id=prediction_id, error=str(e))
            raise UpstreamUnavailableError("replicate", f"Replicate request failed: {e}") from e

        snapshot = self._snapshot(prediction)
        self.logger.debug("prediction_fetched", prediction_id=prediction_id, status=snapshot.status)
        return snapshot

    @staticmethod
    def _snapshot(prediction) -> PredictionSnapshot:
        error = getattr(prediction, "error", None)
        return PredictionSnapshot(
            id=prediction.id,
            status=normalize_status(getattr(prediction, "status", None)),
            output=getattr(prediction, "output", None),
            error=str(error) if error else None,
        )

    @staticmethod
    def _error_message(error: ReplicateError) -> str:
        detail = getattr(error, "detail", None)
        if isinstance(detail, str) and detail:
            return detail
        return str(error) or "Replicate request failed"


def get_replicate_client() -> ReplicateClient:
    """
    Get singleton ReplicateClient instance.

    Returns:
        ReplicateClient instance

    Raises:
        ValueError: If no API token is configured
    """
    return ReplicateClient()
