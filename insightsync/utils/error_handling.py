"""
Centralized Error Handling

This module provides the error taxonomy shared by the whole pipeline:
- Custom exception classes per error category
- Classification of Graph API responses into typed errors
- Classification of httpx transport failures
- Severity-aware error logging
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

# Graph API error codes signalling application or user throttling
GRAPH_RATE_LIMIT_CODES = {4, 17, 32, 613}
GRAPH_INVALID_TOKEN_CODE = 190
GRAPH_INVALID_PARAMETER_CODE = 100
DEFAULT_RATE_LIMIT_RETRY_AFTER = 3600
SERVER_ERROR_STATUSES = {500, 502, 503, 504}


class ErrorCategory(str, Enum):
    """Categories of errors for classification."""
    RATE_LIMIT = "RATE_LIMIT"
    AUTH_ERROR = "AUTH_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InsightSyncError(Exception):
    """Base exception class for InsightSync errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.API_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        platform: Optional[str] = None,
        code: Optional[str] = None,
        retryable: bool = False,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.platform = platform
        self.code = code
        self.retryable = retryable
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for results and API responses."""
        return {
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "platform": self.platform,
            "code": self.code,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }


class RateLimitError(InsightSyncError):
    """Platform throttling, retried after the advertised delay."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("code", "RATE_LIMITED")
        super().__init__(
            message,
            category=ErrorCategory.RATE_LIMIT,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            **kwargs
        )
        self.retry_after = retry_after


class AuthenticationError(InsightSyncError):
    """Invalid, expired or under-scoped credentials."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "UNAUTHORIZED")
        super().__init__(
            message,
            category=ErrorCategory.AUTH_ERROR,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


class NetworkError(InsightSyncError):
    """Timeouts, DNS failures and dropped connections."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "CONNECTION_ERROR")
        super().__init__(
            message,
            category=ErrorCategory.NETWORK_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            **kwargs
        )


class PlatformAPIError(InsightSyncError):
    """Error response from the platform API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        graph_code: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("code", "API_ERROR")
        kwargs.setdefault("retryable", status_code in SERVER_ERROR_STATUSES)
        super().__init__(
            message,
            category=ErrorCategory.API_ERROR,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )
        self.status_code = status_code
        self.graph_code = graph_code

    @property
    def is_unsupported_metric(self) -> bool:
        """True when the platform rejected the requested metric combination."""
        if self.graph_code == GRAPH_INVALID_PARAMETER_CODE:
            return True
        return "metric" in self.message.lower()


class MetricSetsExhaustedError(PlatformAPIError):
    """Every fallback metric set was rejected for one media item."""

    def __init__(self, media_id: str, attempts: int, **kwargs):
        super().__init__(
            f"No insights available for media {media_id} after {attempts} metric sets",
            code="METRICS_UNAVAILABLE",
            retryable=False,
            **kwargs
        )
        self.media_id = media_id
        self.attempts = attempts


class SnapshotValidationError(InsightSyncError):
    """A normalized snapshot violates one or more invariants."""

    def __init__(self, subject_id: str, violations: List[str], **kwargs):
        super().__init__(
            f"Snapshot {subject_id or '<missing>'} failed validation: " + "; ".join(violations),
            category=ErrorCategory.VALIDATION_ERROR,
            severity=ErrorSeverity.LOW,
            code="INVALID_SNAPSHOT",
            retryable=False,
            **kwargs
        )
        self.subject_id = subject_id
        self.violations = violations


class AccountNotFoundError(InsightSyncError):
    """The target account record does not exist."""

    def __init__(self, account_id: str, **kwargs):
        super().__init__(
            f"Account not found: {account_id}",
            category=ErrorCategory.API_ERROR,
            severity=ErrorSeverity.HIGH,
            code="ACCOUNT_NOT_FOUND",
            retryable=False,
            **kwargs
        )
        self.account_id = account_id


def _graph_error(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return {}


def _retry_after(headers: Mapping[str, str], payload: Any) -> Optional[float]:
    header_value = headers.get("retry-after") if headers else None
    if header_value:
        try:
            return float(header_value)
        except ValueError:
            pass
    if isinstance(payload, dict):
        body_value = payload.get("retry_after") or _graph_error(payload).get("retry_after")
        if body_value is not None:
            try:
                return float(body_value)
            except (TypeError, ValueError):
                return None
    return None


def classify_http_error(
    platform: str,
    status_code: int,
    payload: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> InsightSyncError:
    """
    Translate a non-2xx Graph API response into the error taxonomy.

    Args:
        platform: Platform the request was issued for
        status_code: HTTP status of the response
        payload: Decoded JSON body, if any
        headers: Response headers

    Returns:
        Typed error instance (not raised)
    """
    headers = headers or {}
    error = _graph_error(payload)
    message = error.get("message") or f"HTTP {status_code}"
    graph_code = error.get("code")
    if isinstance(graph_code, str) and graph_code.isdigit():
        graph_code = int(graph_code)

    if status_code == 429 or graph_code in GRAPH_RATE_LIMIT_CODES:
        retry_after = _retry_after(headers, payload)
        if retry_after is None and status_code == 429:
            retry_after = DEFAULT_RATE_LIMIT_RETRY_AFTER
        return RateLimitError(
            f"Rate limit exceeded: {message}",
            retry_after=retry_after,
            platform=platform,
        )

    if graph_code == GRAPH_INVALID_TOKEN_CODE:
        return AuthenticationError(
            f"Access token invalid or expired: {message}",
            platform=platform,
            code="INVALID_TOKEN",
        )

    if status_code == 401:
        return AuthenticationError(message, platform=platform, code="UNAUTHORIZED")

    if status_code == 403:
        return AuthenticationError(message, platform=platform, code="FORBIDDEN")

    if status_code in SERVER_ERROR_STATUSES:
        return PlatformAPIError(
            f"Platform server error: {message}",
            status_code=status_code,
            graph_code=graph_code,
            platform=platform,
            code="SERVER_ERROR",
        )

    return PlatformAPIError(
        message,
        status_code=status_code,
        graph_code=graph_code,
        platform=platform,
        code=str(graph_code) if graph_code is not None else "API_ERROR",
    )


def classify_transport_error(platform: str, error: Exception) -> InsightSyncError:
    """Translate an httpx transport exception into a retryable network error."""
    if isinstance(error, httpx.TimeoutException):
        return NetworkError(
            f"Request timed out: {error.__class__.__name__}",
            platform=platform,
            code="TIMEOUT",
            original_error=error,
        )
    return NetworkError(
        f"Connection failed: {error}",
        platform=platform,
        code="CONNECTION_ERROR",
        original_error=error,
    )


def log_error(error: InsightSyncError, **context) -> None:
    """Log error with appropriate level and context."""
    log_data = {
        "error_message": error.message,
        "error_category": error.category.value,
        "error_severity": error.severity.value,
        "error_code": error.code,
        "platform": error.platform,
        "retryable": error.retryable,
        **context
    }

    if error.original_error:
        log_data["original_error"] = str(error.original_error)

    if error.severity == ErrorSeverity.CRITICAL:
        logger.critical("Critical error occurred", **log_data)
    elif error.severity == ErrorSeverity.HIGH:
        logger.error("High severity error occurred", **log_data)
    elif error.severity == ErrorSeverity.MEDIUM:
        logger.warning("Medium severity error occurred", **log_data)
    else:
        logger.info("Low severity error occurred", **log_data)
