"""
Custom exceptions for the integration gateway with structured error context.

Every exception carries a stable ``code`` so that delivery logs, DLQ
entries and API responses can be filtered without parsing messages.

Exception Hierarchy:
    GatewayError (base)
    ├── ConfigurationError
    │   ├── InvalidIdentifierError
    │   └── MissingFieldError
    ├── SourceAdapterError
    ├── TransformationError
    │   ├── ScriptExecutionError
    │   └── UnmappedCodeError
    ├── AuthError
    │   ├── AuthConfigError
    │   ├── TokenEndpointError
    │   ├── TokenRequestError
    │   ├── TokenResponseError
    │   └── TokenPathError
    ├── TargetUrlError
    ├── DeliveryError
    │   ├── PermanentDeliveryError
    │   ├── RetryableDeliveryError
    │   └── CircuitOpenError
    ├── SchedulingError
    ├── CheckpointError
    ├── DLQError
    │   ├── DLQStateError
    │   └── DLQEntryNotFoundError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class GatewayError(Exception):
    """
    Base exception for all gateway errors.

    Attributes:
        message: Human-readable error message
        code: Stable machine-readable error code
        context: Additional context information (rule id, event id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    default_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        code: Optional[str] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}[{self.code}]: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(GatewayError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts and refused connections
    - Rate limiting (HTTP 429)
    - Server errors (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        code: Optional[str] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception, code)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class NonRetryableError(GatewayError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Invalid rule configuration
    - Client errors (HTTP 4xx)
    - Script failures and unmapped codes
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """
    Raised when a rule or adapter configuration is invalid.

    Raised eagerly at construction/validation time, never against the network.
    """
    default_code = "INVALID_CONFIGURATION"


class InvalidIdentifierError(ConfigurationError):
    """
    Raised when a table or column identifier fails validation.

    Context should include:
        - identifier: The rejected identifier
        - field: The configuration field that supplied it
    """
    default_code = "INVALID_IDENTIFIER"


class MissingFieldError(ConfigurationError):
    """Raised when a required configuration field is absent."""
    default_code = "MISSING_FIELD"


# ============================================================================
# Source Adapter Errors
# ============================================================================

class SourceAdapterError(GatewayError):
    """
    Raised when an event source fails to poll or acknowledge.

    ``code`` is one of TABLE_NOT_FOUND, COLUMN_NOT_FOUND, ACCESS_DENIED,
    HOST_UNREACHABLE, MISSING_CREDENTIALS, INVALID_IDENTIFIER, QUERY_FAILED,
    CONSUMER_FAILED, INVALID_SIGNATURE, INVALID_EVENT.
    """
    default_code = "QUERY_FAILED"


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(NonRetryableError):
    """Base exception for payload transformation failures."""
    default_code = "TRANSFORMATION_FAILED"


class ScriptExecutionError(TransformationError):
    """
    Raised when a sandboxed script fails.

    ``code`` is one of SCRIPT_COMPILE_ERROR, SCRIPT_SECURITY_VIOLATION,
    SCRIPT_RUNTIME_ERROR, SCRIPT_TIMEOUT, SCRIPT_DEPTH_EXCEEDED,
    SCRIPT_CIRCULAR_REFERENCE, SCRIPT_INVALID_OUTPUT.
    """
    default_code = "SCRIPT_RUNTIME_ERROR"


class UnmappedCodeError(TransformationError):
    """Raised by a FAIL lookup when a source code has no mapping."""
    default_code = "UNMAPPED_CODE"


# ============================================================================
# Auth Errors
# ============================================================================

class AuthError(NonRetryableError):
    """Base exception for outbound auth header construction."""
    default_code = "AUTH_FAILED"


class AuthConfigError(AuthError):
    """Required credentials for the auth scheme are missing."""
    default_code = "AUTH_CONFIG_INVALID"


class TokenEndpointError(AuthError):
    """Token endpoint could not be reached."""
    default_code = "TOKEN_ENDPOINT_UNREACHABLE"


class TokenRequestError(AuthError):
    """Token endpoint answered with a non-2xx status."""
    default_code = "TOKEN_REQUEST_FAILED"


class TokenResponseError(AuthError):
    """Token endpoint answered with a body that is not JSON."""
    default_code = "TOKEN_RESPONSE_INVALID"


class TokenPathError(AuthError):
    """The configured response path does not resolve to a token string."""
    default_code = "TOKEN_PATH_UNRESOLVED"


# ============================================================================
# Delivery Errors
# ============================================================================

class TargetUrlError(NonRetryableError):
    """Target URL rejected by the SSRF guard."""
    default_code = "INVALID_TARGET_URL"


class DeliveryError(GatewayError):
    """Base exception for outbound delivery failures."""
    default_code = "DELIVERY_FAILED"


class PermanentDeliveryError(NonRetryableError, DeliveryError):
    """Client errors (HTTP 4xx except 429) that must not be retried."""
    default_code = "CLIENT_ERROR"


class RetryableDeliveryError(RetryableError, DeliveryError):
    """Server errors, rate limiting and network failures."""
    default_code = "SERVER_ERROR"


class CircuitOpenError(NonRetryableError, DeliveryError):
    """Delivery short-circuited because the rule's circuit is open."""
    default_code = "CIRCUIT_OPEN"


# ============================================================================
# Scheduling, Checkpoint and DLQ Errors
# ============================================================================

class SchedulingError(NonRetryableError):
    """
    Raised when a scheduling script result is invalid.

    Context should include:
        - rule_id: Rule whose script ran
        - result: The rejected script result
    """
    default_code = "INVALID_SCHEDULE"


class CheckpointError(GatewayError):
    """
    Raised when checkpoint management fails.

    Context should include:
        - worker_id: Logical poller id
        - checkpoint_value: The checkpoint value that failed
    """
    default_code = "CHECKPOINT_FAILED"


class DLQError(GatewayError):
    """Base exception for dead-letter queue operations."""
    default_code = "DLQ_ERROR"


class DLQStateError(DLQError):
    """Operation not allowed in the entry's current status."""
    default_code = "DLQ_INVALID_STATE"


class DLQEntryNotFoundError(DLQError):
    """No DLQ entry with the requested id."""
    default_code = "DLQ_ENTRY_NOT_FOUND"
