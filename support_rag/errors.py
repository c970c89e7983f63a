"""
Structured Error Handling for the support chat pipeline

Provides a hierarchy of exceptions for provider, retrieval and streaming
failures, plus helpers that classify any failure into a user-safe category.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ErrorKind(str, Enum):
    """Failure classes the chat orchestrator degrades on."""
    CREDENTIAL = "credential"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"


class SupportRAGError(Exception):
    """
    Base exception for the support chat pipeline.

    All project-specific errors should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "SUPPORT_RAG_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize error.

        Args:
            message: Human-readable error message (for logs, never for end users)
            error_code: Machine-readable error code for API responses
            severity: Error severity level
            context: Additional context for debugging
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


class RetriableError(SupportRAGError):
    """
    Error that may succeed if attempted again later.

    Typically temporary issues like timeouts, rate limits, transient failures.
    """

    def __init__(self, message: str, error_code: str = "RETRIABLE_ERROR", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(message, error_code, **kwargs)


class NonRetriableError(SupportRAGError):
    """
    Error that should NOT be retried.

    Typically permanent issues like a missing API key, bad configuration, malformed input.
    """

    def __init__(self, message: str, error_code: str = "NON_RETRIABLE_ERROR", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, error_code, **kwargs)


# ============================================================================
# Specific Error Types
# ============================================================================


class ConfigurationError(NonRetriableError):
    """Invalid configuration detected at startup"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)


class InputValidationError(NonRetriableError):
    """User input rejected before reaching the provider"""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="VALIDATION_ERROR", severity=ErrorSeverity.LOW, **kwargs)
        self.field = field


class CredentialMissingError(NonRetriableError):
    """No usable API key could be resolved"""

    def __init__(self, message: str = "No API key configured for the AI provider", **kwargs):
        super().__init__(message, error_code="CREDENTIAL_MISSING", severity=ErrorSeverity.INFO, **kwargs)


class ProviderError(RetriableError):
    """Non-2xx response from the AI provider"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error_code: str = "PROVIDER_ERROR",
        **kwargs,
    ):
        super().__init__(message, error_code=error_code, **kwargs)
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        return data


class AuthenticationError(ProviderError):
    """Provider rejected the API key (401/403)"""

    def __init__(self, message: str, status: Optional[int] = 401, **kwargs):
        super().__init__(message, status=status, error_code="PROVIDER_AUTH_ERROR", **kwargs)


class RateLimitedError(ProviderError):
    """Provider rate limit exceeded (429)"""

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None, **kwargs):
        super().__init__(message, status=429, error_code="PROVIDER_RATE_LIMIT", **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ServiceUnavailableError(ProviderError):
    """Provider temporarily unavailable (503/504)"""

    def __init__(self, message: str, status: Optional[int] = 503, **kwargs):
        super().__init__(message, status=status, error_code="PROVIDER_UNAVAILABLE", **kwargs)


class ProviderNetworkError(RetriableError):
    """Connection, DNS or timeout failure talking to the provider"""

    def __init__(self, message: str, base_url: Optional[str] = None, timed_out: bool = False, **kwargs):
        super().__init__(message, error_code="PROVIDER_NETWORK_ERROR", **kwargs)
        self.base_url = base_url
        self.timed_out = timed_out


class MalformedStreamFrameError(SupportRAGError):
    """A single SSE frame could not be parsed; the stream continues"""

    def __init__(self, message: str, frame: str = "", **kwargs):
        super().__init__(message, error_code="MALFORMED_STREAM_FRAME", severity=ErrorSeverity.LOW, **kwargs)
        self.frame = frame[:200]


class DimensionMismatchError(SupportRAGError):
    """Embedding length differs from the configured dimension"""

    def __init__(self, message: str, expected: int = 0, actual: int = 0, **kwargs):
        super().__init__(message, error_code="DIMENSION_MISMATCH", severity=ErrorSeverity.LOW, **kwargs)
        self.expected = expected
        self.actual = actual


class CircuitOpenError(NonRetriableError):
    """Circuit breaker is open - service temporarily unavailable"""

    def __init__(self, message: str, service: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CIRCUIT_OPEN", **kwargs)
        self.service = service


# ============================================================================
# Error Utilities
# ============================================================================


def _extract_message(body: str) -> str:
    """Pull error.message / message out of a provider error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body.strip()[:300]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if data.get("message"):
            return str(data["message"])
    return body.strip()[:300]


def error_from_response(status: int, body: str, retry_after: Optional[str] = None) -> ProviderError:
    """Map a non-2xx provider response onto the matching ProviderError subclass."""
    message = _extract_message(body) or f"HTTP {status}"
    context = {"status": status}
    if status in (401, 403):
        return AuthenticationError(message, status=status, context=context)
    if status == 429:
        seconds: Optional[float] = None
        if retry_after:
            try:
                seconds = float(retry_after)
            except ValueError:
                seconds = None
        return RateLimitedError(message, retry_after_seconds=seconds, context=context)
    if status in (503, 504):
        return ServiceUnavailableError(message, status=status, context=context)
    return ProviderError(message, status=status, context=context)


def classify_error(error: BaseException) -> ErrorKind:
    """Classify any failure into the category the end user is told about."""
    if isinstance(error, CredentialMissingError):
        return ErrorKind.CREDENTIAL
    if isinstance(error, AuthenticationError):
        return ErrorKind.AUTHENTICATION
    if isinstance(error, RateLimitedError):
        return ErrorKind.RATE_LIMIT
    if isinstance(error, (ServiceUnavailableError, CircuitOpenError)):
        return ErrorKind.SERVICE_UNAVAILABLE
    if isinstance(error, ProviderNetworkError):
        return ErrorKind.NETWORK
    if isinstance(error, ProviderError) and error.status is not None and error.status >= 500:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN


_USER_MESSAGES = {
    ErrorKind.CREDENTIAL: "智能客服暂未接入AI服务，以下为常见问题的参考解答。",
    ErrorKind.AUTHENTICATION: "AI服务认证失败，以下为常见问题的参考解答。",
    ErrorKind.RATE_LIMIT: "抱歉，当前咨询人数较多，服务繁忙，请稍后重试。",
    ErrorKind.NETWORK: "网络连接异常，请检查网络后重试。",
    ErrorKind.SERVICE_UNAVAILABLE: "AI服务暂时不可用，请稍后重试。",
    ErrorKind.UNKNOWN: "AI服务暂时无法处理您的请求，以下为参考解答。",
}


def user_message(kind: ErrorKind) -> str:
    """Natural-language notice for a failure class; never includes raw status or JSON."""
    return _USER_MESSAGES.get(kind, _USER_MESSAGES[ErrorKind.UNKNOWN])


def is_retryable(error: Exception) -> bool:
    """Check if error may succeed on a later attempt.

    Network failures, 408, 429 and 5xx only. A rejected key or any other
    4xx fails the same way every time.
    """
    if not isinstance(error, RetriableError):
        return False
    if isinstance(error, AuthenticationError):
        return False
    if isinstance(error, ProviderError) and not isinstance(error, (RateLimitedError, ServiceUnavailableError)):
        return error.status is None or error.status == 408 or error.status >= 500
    return True


def get_error_severity(error: Exception) -> ErrorSeverity:
    """Get severity level of error"""
    if isinstance(error, SupportRAGError):
        return error.severity
    return ErrorSeverity.HIGH  # Default for foreign exceptions


def format_error_for_logging(error: BaseException, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Format error for structured logging"""
    result: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error),
    }

    if request_id:
        result["request_id"] = request_id

    if isinstance(error, SupportRAGError):
        result.update(error.to_dict())

    if error.__cause__:
        result["caused_by"] = {
            "type": type(error.__cause__).__name__,
            "message": str(error.__cause__),
        }

    return result
