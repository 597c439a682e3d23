"""
Core utilities and configuration for the integration gateway.

Modules:
    config: Application configuration and environment variable management
    database: Database engine and session management
    exceptions: Custom exception hierarchy with stable error codes
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import ScriptExecutionError, AuthConfigError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "GatewayError",
    "ConfigurationError",
    "InvalidIdentifierError",
    "MissingFieldError",
    "SourceAdapterError",
    "TransformationError",
    "ScriptExecutionError",
    "UnmappedCodeError",
    "AuthError",
    "AuthConfigError",
    "TokenEndpointError",
    "TokenRequestError",
    "TokenResponseError",
    "TokenPathError",
    "TargetUrlError",
    "DeliveryError",
    "PermanentDeliveryError",
    "RetryableDeliveryError",
    "CircuitOpenError",
    "SchedulingError",
    "CheckpointError",
    "DLQError",
    "DLQStateError",
    "DLQEntryNotFoundError",
    "RetryableError",
    "NonRetryableError",
]
