"""
Single outbound HTTP delivery.

The executor never raises for HTTP or network failures; it returns a
DeliveryResult that classifies the outcome so the caller can decide
between success, retry and permanent failure.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from models.base import DeliveryStatus
from models.delivery_log import RESPONSE_BODY_LIMIT

logger = logging.getLogger(__name__)

BODYLESS_METHODS = {"GET", "DELETE"}

# Error codes
TIMEOUT = "TIMEOUT"
NETWORK_ERROR = "NETWORK_ERROR"
CLIENT_ERROR = "CLIENT_ERROR"
SERVER_ERROR = "SERVER_ERROR"
RATE_LIMITED = "RATE_LIMITED"
REDIRECT_NOT_FOLLOWED = "REDIRECT_NOT_FOLLOWED"
UNEXPECTED_STATUS = "UNEXPECTED_STATUS"


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: float = 0.0
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS


def truncate_body(text: Optional[str], limit: int = RESPONSE_BODY_LIMIT) -> Optional[str]:
    if text is None:
        return None
    return text if len(text) <= limit else text[:limit]


def classify_status(status_code: int) -> DeliveryResult:
    """Map an HTTP status onto a result skeleton (body and timing filled by caller)."""
    if 200 <= status_code < 300:
        return DeliveryResult(status=DeliveryStatus.SUCCESS, response_status=status_code)
    if status_code == 429:
        return DeliveryResult(
            status=DeliveryStatus.FAILED,
            response_status=status_code,
            error_message="HTTP 429: rate limited",
            error_code=RATE_LIMITED,
            retryable=True
        )
    if status_code >= 500:
        return DeliveryResult(
            status=DeliveryStatus.FAILED,
            response_status=status_code,
            error_message=f"HTTP {status_code}: server error",
            error_code=SERVER_ERROR,
            retryable=True
        )
    if 300 <= status_code < 400:
        return DeliveryResult(
            status=DeliveryStatus.FAILED,
            response_status=status_code,
            error_message=f"HTTP {status_code}: redirect not followed, update the target URL",
            error_code=REDIRECT_NOT_FOLLOWED,
            retryable=False
        )
    if status_code < 200:
        return DeliveryResult(
            status=DeliveryStatus.FAILED,
            response_status=status_code,
            error_message=f"HTTP {status_code}: unexpected informational response",
            error_code=UNEXPECTED_STATUS,
            retryable=True
        )
    return DeliveryResult(
        status=DeliveryStatus.FAILED,
        response_status=status_code,
        error_message=f"HTTP {status_code}: client error",
        error_code=CLIENT_ERROR,
        retryable=False
    )


async def execute_delivery(
    url: str,
    method: str,
    headers: Optional[Dict[str, str]],
    body: Any,
    timeout_ms: int
) -> DeliveryResult:
    """
    Send one request and classify the outcome.

    2xx is success, 3xx (never followed) and 4xx other than 429 are
    permanent, 5xx, 429 and 1xx are retryable. Timeouts and connection
    failures are retryable with codes TIMEOUT and NETWORK_ERROR.
    """
    method = (method or "POST").upper()
    timeout_s = max(timeout_ms or 0, 1) / 1000.0

    request_headers = {"Content-Type": "application/json"}
    request_headers.update(headers or {})

    content = None
    if method not in BODYLESS_METHODS and body is not None:
        content = json.dumps(body, default=str)

    started = time.perf_counter()
    try:
        # Redirect targets are not validated, so they are never followed
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=False) as client:
            response = await asyncio.wait_for(
                client.request(method, url, headers=request_headers, content=content),
                timeout=timeout_s
            )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        elapsed = (time.perf_counter() - started) * 1000
        logger.warning(f"Delivery to {url} timed out after {timeout_ms} ms")
        return DeliveryResult(
            status=DeliveryStatus.FAILED,
            response_time_ms=elapsed,
            error_message=f"Request timed out after {timeout_ms} ms",
            error_code=TIMEOUT,
            retryable=True
        )
    except httpx.HTTPError as e:
        elapsed = (time.perf_counter() - started) * 1000
        logger.warning(f"Delivery to {url} failed: {type(e).__name__}: {e}")
        return DeliveryResult(
            status=DeliveryStatus.FAILED,
            response_time_ms=elapsed,
            error_message=f"{type(e).__name__}: {e}",
            error_code=NETWORK_ERROR,
            retryable=True
        )

    elapsed = (time.perf_counter() - started) * 1000
    result = classify_status(response.status_code)
    result.response_body = truncate_body(response.text)
    result.response_time_ms = elapsed

    logger.debug(f"{method} {url} -> {response.status_code} in {elapsed:.0f} ms")
    return result
