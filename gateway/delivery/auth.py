"""
Outbound authentication headers.

Supported auth types:
- NONE: no headers
- API_KEY: {header_name: api_key}
- BASIC: Authorization: Basic base64(username:password)
- BEARER: Authorization: Bearer <token>
- CUSTOM_HEADERS: arbitrary static headers
- OAUTH2: client-credentials token fetched from token_endpoint
- CUSTOM: token fetched from any endpoint and placed in a configurable header
"""

import base64
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from core.exceptions import (
    AuthConfigError,
    TokenEndpointError,
    TokenRequestError,
    TokenResponseError,
    TokenPathError
)
from models.base import AuthType

logger = logging.getLogger(__name__)

TOKEN_REQUEST_TIMEOUT_SECONDS = 10.0
TOKEN_EXPIRY_MARGIN_SECONDS = 300


class TokenCache:
    """
    In-memory token cache keyed by rule (or any caller-chosen key).

    Tokens without ``expires_in`` are not cached.
    """

    def __init__(self, expiry_margin_seconds: int = TOKEN_EXPIRY_MARGIN_SECONDS):
        self.expiry_margin_seconds = expiry_margin_seconds
        self._tokens: Dict[str, tuple] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self._tokens.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._tokens[key]
            return None
        return token

    def put(self, key: str, token: str, expires_in: Any) -> None:
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError):
            return
        usable = lifetime - self.expiry_margin_seconds
        if usable <= 0:
            return
        self._tokens[key] = (token, time.monotonic() + usable)

    def invalidate(self, key: str) -> None:
        self._tokens.pop(key, None)

    def clear(self) -> None:
        self._tokens.clear()


def _require(config: Dict[str, Any], auth_type: str, *fields: str) -> None:
    missing = [f for f in fields if not config.get(f)]
    if missing:
        raise AuthConfigError(
            f"{auth_type} auth requires {', '.join(missing)}",
            context={"auth_type": auth_type, "missing_fields": missing}
        )


def _resolve_path(data: Any, path: str) -> Any:
    current = data
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


async def _request_token(
    url: str,
    method: str = "POST",
    data: Optional[Dict[str, Any]] = None,
    json_body: Any = None,
    headers: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Call a token endpoint and return its JSON body."""
    try:
        async with httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT_SECONDS) as client:
            response = await client.request(
                method,
                url,
                data=data,
                json=json_body,
                headers=headers or {}
            )
    except httpx.HTTPError as e:
        raise TokenEndpointError(
            f"Token endpoint unreachable: {e}",
            context={"token_endpoint": url},
            original_exception=e
        )

    if not 200 <= response.status_code < 300:
        raise TokenRequestError(
            f"Token request failed with status {response.status_code}",
            context={"token_endpoint": url, "status_code": response.status_code}
        )

    try:
        return response.json()
    except ValueError as e:
        raise TokenResponseError(
            "Token endpoint returned a non-JSON response",
            context={"token_endpoint": url},
            original_exception=e
        )


async def _oauth2_headers(config: Dict[str, Any], token_cache: Optional[TokenCache], cache_key: Optional[str]) -> Dict[str, str]:
    endpoint = config.get("token_endpoint") or config.get("token_url")
    if not endpoint:
        raise AuthConfigError(
            "OAUTH2 auth requires token_endpoint",
            context={"auth_type": "OAUTH2", "missing_fields": ["token_endpoint"]}
        )
    _require(config, "OAUTH2", "client_id", "client_secret")

    if token_cache and cache_key:
        cached = token_cache.get(cache_key)
        if cached:
            return {"Authorization": f"Bearer {cached}"}

    form = {
        "grant_type": "client_credentials",
        "client_id": config["client_id"],
        "client_secret": config["client_secret"],
    }
    if config.get("scope"):
        form["scope"] = config["scope"]

    body = await _request_token(endpoint, "POST", data=form)
    token = body.get("access_token") if isinstance(body, dict) else None
    if not isinstance(token, str) or not token:
        raise TokenPathError(
            "Token response is missing access_token",
            context={"token_endpoint": endpoint}
        )

    if token_cache and cache_key:
        token_cache.put(cache_key, token, body.get("expires_in"))
    return {"Authorization": f"Bearer {token}"}


async def _custom_token_headers(config: Dict[str, Any], token_cache: Optional[TokenCache], cache_key: Optional[str]) -> Dict[str, str]:
    endpoint = config.get("token_endpoint") or config.get("token_url")
    if not endpoint:
        raise AuthConfigError(
            "CUSTOM auth requires token_endpoint",
            context={"auth_type": "CUSTOM", "missing_fields": ["token_endpoint"]}
        )

    header_name = config.get("token_header_name") or "Authorization"
    prefix = config.get("token_header_prefix", "Bearer")
    path = config.get("token_response_path") or "access_token"

    def as_header(token: str) -> Dict[str, str]:
        return {header_name: f"{prefix} {token}" if prefix else token}

    if token_cache and cache_key:
        cached = token_cache.get(cache_key)
        if cached:
            return as_header(cached)

    method = str(config.get("token_request_method") or "POST").upper()
    request_body = config.get("token_request_body")
    if isinstance(request_body, str) and request_body.strip():
        try:
            request_body = json.loads(request_body)
        except ValueError as e:
            raise AuthConfigError(
                "token_request_body is not valid JSON",
                context={"auth_type": "CUSTOM"},
                original_exception=e
            )
    if method == "GET":
        request_body = None

    body = await _request_token(
        endpoint,
        method,
        json_body=request_body or None,
        headers=config.get("token_request_headers")
    )
    token = _resolve_path(body, path)
    if not isinstance(token, str) or not token:
        raise TokenPathError(
            f"Token not found at response path '{path}'",
            context={"token_endpoint": endpoint, "token_response_path": path}
        )

    if token_cache and cache_key and isinstance(body, dict):
        token_cache.put(cache_key, token, body.get("expires_in"))
    return as_header(token)


async def build_auth_headers(
    auth_type: Any,
    auth_config: Optional[Dict[str, Any]],
    token_cache: Optional[TokenCache] = None,
    cache_key: Optional[str] = None
) -> Dict[str, str]:
    """
    Build the headers for one outbound request.

    Raises:
        AuthConfigError: Missing credentials or unsupported auth type
        TokenEndpointError / TokenRequestError / TokenResponseError /
        TokenPathError: Token fetch failures for OAUTH2 and CUSTOM
    """
    if isinstance(auth_type, AuthType):
        kind = auth_type.value
    else:
        kind = str(auth_type or AuthType.NONE.value).upper()
    config = auth_config or {}

    if kind == AuthType.NONE.value:
        return {}

    if kind == AuthType.API_KEY.value:
        _require(config, kind, "header_name", "api_key")
        return {str(config["header_name"]): str(config["api_key"])}

    if kind == AuthType.BASIC.value:
        _require(config, kind, "username", "password")
        raw = f"{config['username']}:{config['password']}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}

    if kind == AuthType.BEARER.value:
        _require(config, kind, "token")
        return {"Authorization": f"Bearer {config['token']}"}

    if kind == AuthType.CUSTOM_HEADERS.value:
        headers = config.get("headers")
        if not isinstance(headers, dict) or not headers:
            raise AuthConfigError(
                "CUSTOM_HEADERS auth requires a non-empty headers map",
                context={"auth_type": kind}
            )
        result = {}
        for name, value in headers.items():
            if value is None:
                raise AuthConfigError(
                    f"Header '{name}' has no value",
                    context={"auth_type": kind, "header": name}
                )
            result[str(name)] = str(value)
        return result

    if kind == AuthType.OAUTH2.value:
        return await _oauth2_headers(config, token_cache, cache_key)

    if kind == AuthType.CUSTOM.value:
        return await _custom_token_headers(config, token_cache, cache_key)

    raise AuthConfigError(
        f"Unsupported auth type: {auth_type}",
        context={"auth_type": kind}
    )
