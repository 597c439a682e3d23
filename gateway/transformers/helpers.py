"""
Helper functions exposed to tenant scripts.

These run inside the sandbox child process. Dates are handled as
timezone-aware datetimes; ``to_timestamp`` converts to epoch milliseconds,
which is what scheduling scripts return.
"""

import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from gateway.delivery.url_validator import validate_target_url

MAX_SET_TIMEOUT_MS = 30000
MAX_HTTP_TIMEOUT_MS = 30000
DEFAULT_TIMEZONE = "+05:30"

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_DMY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?)?$")
_D_MON_Y_RE = re.compile(r"^(\d{1,2})-([A-Za-z]{3})[A-Za-z]*-(\d{4})")


class ScriptHelperError(Exception):
    """Raised by helpers on invalid use; surfaces as a script runtime error."""


def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse a date into an aware datetime (UTC when no offset is given).

    Supports datetimes, epoch seconds or milliseconds, ISO-8601 strings,
    ``DD/MM/YYYY [HH:MM [AM|PM]]`` and ``D-Mon-YYYY``. Returns None when
    the value cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 10_000_000_000 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    match = _DMY_RE.match(text)
    if match:
        day, month, year, hour, minute, second, meridiem = match.groups()
        hour_value = int(hour) if hour else 0
        if meridiem:
            hour_value = hour_value % 12 + (12 if meridiem.lower() == "pm" else 0)
        try:
            return datetime(int(year), int(month), int(day), hour_value,
                            int(minute or 0), int(second or 0), tzinfo=timezone.utc)
        except ValueError:
            return None

    match = _D_MON_Y_RE.match(text)
    if match:
        day, month_name, year = match.groups()
        month_value = _MONTHS.get(month_name.lower())
        if month_value is None:
            return None
        try:
            return datetime(int(year), month_value, int(day), tzinfo=timezone.utc)
        except ValueError:
            return None

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _require_date(value: Any) -> datetime:
    parsed = parse_date(value)
    if parsed is None:
        raise ScriptHelperError(f"Invalid date: {value!r}")
    return parsed


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Any) -> int:
    """Epoch milliseconds for a date-like value."""
    return int(_require_date(value).timestamp() * 1000)


def epoch(value: Any = None) -> Optional[int]:
    """Epoch seconds for a date-like value (now when omitted)."""
    if value is None:
        return int(time.time())
    parsed = parse_date(value)
    return int(parsed.timestamp()) if parsed else None


def datetime_string(date: Any, time_of_day: Optional[str] = None, tz: Optional[str] = None) -> Optional[int]:
    """Epoch seconds for a ``YYYY-MM-DD`` date plus optional time and offset."""
    if not date:
        return None
    offset = tz or DEFAULT_TIMEZONE
    clock = time_of_day or "00:00:00"
    return epoch(f"{date}T{clock}{offset}")


def add_minutes(value: Any, minutes: float) -> datetime:
    return _require_date(value) + timedelta(minutes=minutes)


def add_hours(value: Any, hours: float) -> datetime:
    return _require_date(value) + timedelta(hours=hours)


def add_days(value: Any, days: float) -> datetime:
    return _require_date(value) + timedelta(days=days)


def subtract_minutes(value: Any, minutes: float) -> datetime:
    return _require_date(value) - timedelta(minutes=minutes)


def subtract_hours(value: Any, hours: float) -> datetime:
    return _require_date(value) - timedelta(hours=hours)


def subtract_days(value: Any, days: float) -> datetime:
    return _require_date(value) - timedelta(days=days)


def uppercase(value: Any) -> Any:
    return str(value).upper() if value else value


def lowercase(value: Any) -> Any:
    return str(value).lower() if value else value


def trim(value: Any) -> Any:
    return str(value).strip() if value else value


def format_phone(phone: Any, country_code: Optional[str] = None) -> Any:
    """Normalize a phone number to ``+<country code><digits>``."""
    if not phone:
        return phone
    code = country_code or "91"
    digits = re.sub(r"\D", "", str(phone))
    if digits.startswith(code):
        return f"+{digits}"
    return f"+{code}{digits}"


def get(obj: Any, path: str, default: Any = None) -> Any:
    """Nested dict lookup by dot path with a default."""
    if not path or obj is None:
        return default
    current = obj
    for key in str(path).split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return default
    return current


def set_timeout(callback: Callable[[], Any], delay_ms: float = 0) -> Any:
    """Run ``callback`` after ``delay_ms``; delays above 30 s are refused."""
    if not callable(callback):
        raise ScriptHelperError("set_timeout requires a callable")
    if delay_ms < 0 or delay_ms > MAX_SET_TIMEOUT_MS:
        raise ScriptHelperError(f"set_timeout delay must be between 0 and {MAX_SET_TIMEOUT_MS} ms")
    time.sleep(delay_ms / 1000.0)
    return callback()


class ScriptHttpClient:
    """
    Minimal HTTP client for scripts.

    Every call is bounded by a timeout of at most 30 s and private or
    loopback targets are refused.
    """

    def _request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[float] = None
    ) -> Dict[str, Any]:
        check = validate_target_url(url, enforce_https=False, block_private_networks=True)
        if not check.valid:
            raise ScriptHelperError(f"HTTP {method} refused: {check.reason}")

        timeout = min(timeout_ms or MAX_HTTP_TIMEOUT_MS, MAX_HTTP_TIMEOUT_MS) / 1000.0
        try:
            response = httpx.request(
                method,
                url,
                json=body if method not in ("GET", "DELETE") else None,
                headers=headers or {},
                params=params,
                timeout=timeout
            )
        except httpx.HTTPError as e:
            raise ScriptHelperError(f"HTTP {method} failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = response.text
        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "data": data,
        }

    def get(self, url, headers=None, params=None, timeout_ms=None):
        return self._request("GET", url, headers=headers, params=params, timeout_ms=timeout_ms)

    def delete(self, url, headers=None, params=None, timeout_ms=None):
        return self._request("DELETE", url, headers=headers, params=params, timeout_ms=timeout_ms)

    def post(self, url, body=None, headers=None, timeout_ms=None):
        return self._request("POST", url, body=body, headers=headers, timeout_ms=timeout_ms)

    def put(self, url, body=None, headers=None, timeout_ms=None):
        return self._request("PUT", url, body=body, headers=headers, timeout_ms=timeout_ms)

    def patch(self, url, body=None, headers=None, timeout_ms=None):
        return self._request("PATCH", url, body=body, headers=headers, timeout_ms=timeout_ms)


DATE_HELPERS = {
    "parse_date": parse_date,
    "now": now,
    "to_timestamp": to_timestamp,
    "epoch": epoch,
    "datetime_string": datetime_string,
    "add_minutes": add_minutes,
    "add_hours": add_hours,
    "add_days": add_days,
    "subtract_minutes": subtract_minutes,
    "subtract_hours": subtract_hours,
    "subtract_days": subtract_days,
}

STRING_HELPERS = {
    "uppercase": uppercase,
    "lowercase": lowercase,
    "trim": trim,
    "format_phone": format_phone,
    "get": get,
}


def build_helpers(allow_http: bool = True) -> Dict[str, Any]:
    helpers: Dict[str, Any] = {}
    helpers.update(DATE_HELPERS)
    helpers.update(STRING_HELPERS)
    helpers["set_timeout"] = set_timeout
    if allow_http:
        helpers["http"] = ScriptHttpClient()
    return helpers
