"""
Outbound delivery: auth headers, URL guard, HTTP execution, retries, DLQ
and circuit breaking.
"""

from gateway.delivery.auth import build_auth_headers, TokenCache
from gateway.delivery.executor import execute_delivery, DeliveryResult
from gateway.delivery.url_validator import validate_target_url, UrlValidationResult

__all__ = [
    "build_auth_headers",
    "TokenCache",
    "execute_delivery",
    "DeliveryResult",
    "validate_target_url",
    "UrlValidationResult",
]
