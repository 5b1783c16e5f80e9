"""
Error handling for the media delivery and AI-video pipeline.

Provides:
- Categorized error codes for every failure the pipeline can surface
- HTTP status and user-friendly message per code
- A central failure-policy table deciding whether a failure is retried once,
  degraded gracefully, or surfaced to the caller
"""

from enum import Enum
from typing import Optional, Dict, Any, Union
import logging

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """
    Enumeration of all error codes surfaced by the pipeline.

    Organized by category:
    - Input errors: rejected before any provider call
    - Access errors: gallery/path guards
    - Feature errors: AI suite preconditions at generation start
    - Provider errors: storage or generation provider failures
    """

    # Input errors
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_PATH = "INVALID_PATH"

    # Access errors
    UNAUTHORIZED = "UNAUTHORIZED"
    GALLERY_NOT_FOUND = "GALLERY_NOT_FOUND"
    GALLERY_NOT_PUBLISHED = "GALLERY_NOT_PUBLISHED"
    GALLERY_LOCKED = "GALLERY_LOCKED"
    UNAUTHORIZED_PATH = "UNAUTHORIZED_PATH"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # Feature errors (start-time preconditions)
    AI_SUITE_LOCKED = "AI_SUITE_LOCKED"
    AI_SUITE_VIDEO_LIMIT = "AI_SUITE_VIDEO_LIMIT"
    AI_DISABLED = "AI_DISABLED"

    # Storage provider errors
    STORAGE_NOT_CONNECTED = "STORAGE_NOT_CONNECTED"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    AUTH_REJECTED = "AUTH_REJECTED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    ASSET_UNREACHABLE = "ASSET_UNREACHABLE"
    ASSET_DOWNLOAD_FAILED = "ASSET_DOWNLOAD_FAILED"

    # Generation provider errors
    GENERATION_NOT_CONFIGURED = "GENERATION_NOT_CONFIGURED"
    SCHEMA_REJECTED = "SCHEMA_REJECTED"
    GENERATION_FAILED = "GENERATION_FAILED"

    # Persistence relay
    RELAY_FAILED = "RELAY_FAILED"
    RELAY_TIMEOUT = "RELAY_TIMEOUT"

    # Image processing
    COMPOSITION_FAILED = "COMPOSITION_FAILED"


STATUS_CODES = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_PATH: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.GALLERY_NOT_FOUND: 404,
    ErrorCode.GALLERY_NOT_PUBLISHED: 403,
    ErrorCode.GALLERY_LOCKED: 403,
    ErrorCode.UNAUTHORIZED_PATH: 403,
    ErrorCode.INVALID_SIGNATURE: 403,
    ErrorCode.AI_SUITE_LOCKED: 403,
    ErrorCode.AI_SUITE_VIDEO_LIMIT: 403,
    ErrorCode.AI_DISABLED: 403,
    ErrorCode.STORAGE_NOT_CONNECTED: 404,
    ErrorCode.UNSUPPORTED_PROVIDER: 501,
    ErrorCode.AUTH_REJECTED: 401,
    ErrorCode.UPSTREAM_UNAVAILABLE: 502,
    ErrorCode.ASSET_UNREACHABLE: 422,
    ErrorCode.ASSET_DOWNLOAD_FAILED: 502,
    ErrorCode.GENERATION_NOT_CONFIGURED: 503,
    ErrorCode.SCHEMA_REJECTED: 502,
    ErrorCode.GENERATION_FAILED: 502,
    ErrorCode.RELAY_FAILED: 502,
    ErrorCode.RELAY_TIMEOUT: 504,
    ErrorCode.COMPOSITION_FAILED: 500,
}


class PipelineError(Exception):
    """
    Base exception for pipeline errors.

    Provides structured error information including:
    - Error code for categorization
    - Detailed message (returned to callers as `error`)
    - Context dictionary for debugging
    - HTTP status derived from the code, overridable for passthrough

    Example:
        >>> raise PipelineError(
        ...     ErrorCode.INVALID_PATH,
        ...     "Invalid path",
        ...     {"path": "/a/../b"}
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.status_code = status_code or STATUS_CODES.get(code, 500)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to the `{success: false, ...}` body used by the API.

        Example:
            >>> PipelineError(ErrorCode.AI_SUITE_LOCKED, "AI_SUITE_LOCKED").to_dict()
            {'success': False, 'error': 'AI_SUITE_LOCKED', 'code': 'AI_SUITE_LOCKED'}
        """
        return {
            "success": False,
            "error": self.message,
            "code": self.code.value,
        }

    def log_error(self) -> None:
        """Log client errors as warnings and provider/system errors as errors."""
        log_data = {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
        }
        if self.status_code < 500:
            logger.warning(f"Client error: {log_data}")
        else:
            logger.error(f"Pipeline error: {log_data}")

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(PipelineError):
    """Input rejected before any provider call."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(ErrorCode.INVALID_INPUT, message, details)


class PathRejectedError(PipelineError):
    """Traversal attempt or path outside the gallery's folders. Never retried."""

    def __init__(self, message: str, path: str, unauthorized: bool = False):
        code = ErrorCode.UNAUTHORIZED_PATH if unauthorized else ErrorCode.INVALID_PATH
        super().__init__(code, message, {"path": path})


class AuthRejectedError(PipelineError):
    """Storage provider rejected the access token even after a refresh."""

    def __init__(self, service: str = "dropbox"):
        super().__init__(
            ErrorCode.AUTH_REJECTED,
            f"{service} rejected the stored credentials",
            {"service": service},
        )


class StorageNotConnectedError(PipelineError):
    """Tenant has no usable storage-provider credentials."""

    def __init__(self, tenant_id: str):
        super().__init__(
            ErrorCode.STORAGE_NOT_CONNECTED,
            "Dropbox not connected",
            {"tenant_id": tenant_id},
        )


class UpstreamUnavailableError(PipelineError):
    """
    Non-2xx from a provider not covered by a more specific error.

    The upstream status is kept so proxies can pass it through.
    """

    def __init__(
        self,
        service: str,
        message: str,
        upstream_status: Optional[int] = None,
        details: Optional[Dict] = None,
    ):
        error_details = details or {}
        error_details["service"] = service
        if upstream_status:
            error_details["upstream_status"] = upstream_status
        self.upstream_status = upstream_status
        super().__init__(ErrorCode.UPSTREAM_UNAVAILABLE, message, error_details)


class SchemaRejectedError(PipelineError):
    """Generation provider refused every input payload shape."""

    def __init__(self, message: str, attempts: int):
        super().__init__(ErrorCode.SCHEMA_REJECTED, message, {"attempts": attempts})


class FeatureLockedError(PipelineError):
    def __init__(self, ai_suite: Optional[Dict] = None):
        super().__init__(ErrorCode.AI_SUITE_LOCKED, "AI_SUITE_LOCKED", {"aiSuite": ai_suite or {}})


class QuotaExhaustedError(PipelineError):
    def __init__(self, ai_suite: Optional[Dict] = None):
        super().__init__(ErrorCode.AI_SUITE_VIDEO_LIMIT, "AI_SUITE_VIDEO_LIMIT", {"aiSuite": ai_suite or {}})


class FeatureDisabledError(PipelineError):
    def __init__(self, ai_suite: Optional[Dict] = None):
        super().__init__(ErrorCode.AI_DISABLED, "AI_DISABLED", {"aiSuite": ai_suite or {}})


# ===== Failure policy =====

class Operation(Enum):
    """Call sites that consult the failure-policy table."""

    STORAGE_CALL = "storage_call"
    TOKEN_REFRESH = "token_refresh"
    THUMBNAIL = "thumbnail"
    LOCAL_RESIZE = "local_resize"
    WATERMARK = "watermark"
    LOGO_FETCH = "logo_fetch"
    BASE_DIR_LOOKUP = "base_dir_lookup"
    TEMPORARY_LINK = "temporary_link"
    PREDICTION_SUBMIT = "prediction_submit"
    FOLDER_CREATE = "folder_create"
    SHARED_LINK_CREATE = "shared_link_create"
    RELAY = "relay"


class FailurePolicy(Enum):
    RETRY_ONCE = "retry_once"
    DEGRADE = "degrade"
    FAIL = "fail"


# (operation, error code) -> policy; an error code of None matches any failure
FAILURE_POLICIES = {
    (Operation.STORAGE_CALL, ErrorCode.AUTH_REJECTED): FailurePolicy.RETRY_ONCE,
    (Operation.TOKEN_REFRESH, None): FailurePolicy.DEGRADE,
    (Operation.THUMBNAIL, ErrorCode.UPSTREAM_UNAVAILABLE): FailurePolicy.DEGRADE,
    (Operation.LOCAL_RESIZE, None): FailurePolicy.DEGRADE,
    (Operation.WATERMARK, None): FailurePolicy.DEGRADE,
    (Operation.LOGO_FETCH, None): FailurePolicy.DEGRADE,
    (Operation.BASE_DIR_LOOKUP, None): FailurePolicy.DEGRADE,
    (Operation.TEMPORARY_LINK, None): FailurePolicy.DEGRADE,
    (Operation.PREDICTION_SUBMIT, ErrorCode.SCHEMA_REJECTED): FailurePolicy.RETRY_ONCE,
    (Operation.PREDICTION_SUBMIT, ErrorCode.UPSTREAM_UNAVAILABLE): FailurePolicy.RETRY_ONCE,
    (Operation.FOLDER_CREATE, None): FailurePolicy.DEGRADE,
    (Operation.SHARED_LINK_CREATE, None): FailurePolicy.DEGRADE,
    (Operation.RELAY, None): FailurePolicy.DEGRADE,
}


def policy_for(
    operation: Operation,
    error: Union[Exception, ErrorCode, None] = None,
) -> FailurePolicy:
    """
    Look up how a failure at `operation` must be handled.

    `error` may be the raised exception or a bare ErrorCode. Specific
    (operation, code) entries win over the operation's catch-all; anything not
    listed fails.

    Example:
        >>> policy_for(Operation.WATERMARK, ValueError("bad logo"))
        <FailurePolicy.DEGRADE: 'degrade'>
        >>> policy_for(Operation.THUMBNAIL, AuthRejectedError())
        <FailurePolicy.FAIL: 'fail'>
    """
    if isinstance(error, ErrorCode):
        code = error
    elif isinstance(error, PipelineError):
        code = error.code
    else:
        code = None
    if code is not None and (operation, code) in FAILURE_POLICIES:
        return FAILURE_POLICIES[(operation, code)]
    return FAILURE_POLICIES.get((operation, None), FailurePolicy.FAIL)
