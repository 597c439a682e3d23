"""
Declarative (SIMPLE mode) payload transformation.

transform_config:
    {
        "mappings": [
            {"source_field": "patient.name", "target_field": "name", "transform": "trim"},
            {"source_field": "items[].code", "target_field": "items[].sku", "transform": "upper"},
            {"source_field": "status", "target_field": "status", "transform": "default",
             "default_value": "NEW"}
        ],
        "static_fields": [{"key": "channel", "value": "whatsapp"}]
    }
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from gateway.transformers.paths import MISSING, get_path, set_path, is_array_path, present_values

logger = logging.getLogger(__name__)

SUPPORTED_TRANSFORMS = {"trim", "upper", "lower", "date", "default", "lookup"}


def to_iso8601(value: Any) -> Any:
    """
    Parse a date-like value into an ISO-8601 UTC string.

    Accepts ISO strings (``Z`` suffix allowed; naive values are read as
    UTC), epoch milliseconds and datetime objects. Anything unparseable is
    returned unchanged.
    """
    if value is None or value is MISSING or isinstance(value, bool):
        return value

    parsed: Optional[datetime] = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return value
    else:
        return value

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def apply_value_transform(value: Any, transform: Optional[str], default_value: Any = None) -> Any:
    """Apply one built-in transform to a single (non-array) value."""
    if transform == "default":
        if value is MISSING or value is None:
            return default_value
        return value

    if value is MISSING:
        return MISSING

    if transform == "trim":
        return value.strip() if isinstance(value, str) else value
    if transform == "upper":
        return value.upper() if isinstance(value, str) else value
    if transform == "lower":
        return value.lower() if isinstance(value, str) else value
    if transform == "date":
        return to_iso8601(value)

    # "lookup" is resolved later by the lookup resolver; unknown names pass through
    return value


def apply_field_mappings(payload: Dict[str, Any], transform_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Apply declarative mappings and static fields over a copy of the payload.

    Original fields are kept unless a mapping or static field overwrites
    them. A mapping whose source is absent writes nothing.
    """
    source = payload if isinstance(payload, dict) else {}
    result = copy.deepcopy(source)
    config = transform_config or {}

    mappings: List[Dict[str, Any]] = config.get("mappings") or []
    for mapping in mappings:
        if not isinstance(mapping, dict):
            continue
        source_field = mapping.get("source_field")
        target_field = mapping.get("target_field")
        if not source_field or not target_field:
            continue

        transform = mapping.get("transform")
        if transform and transform not in SUPPORTED_TRANSFORMS:
            logger.warning(f"Unknown transform '{transform}' on mapping {source_field} -> {target_field}")

        default_value = mapping.get("default_value")
        raw = get_path(source, source_field)

        if is_array_path(source_field):
            if raw is MISSING:
                continue
            values = [apply_value_transform(v, transform, default_value) for v in raw]
            if is_array_path(target_field):
                set_path(result, target_field, values)
            else:
                set_path(result, target_field, present_values(values))
            continue

        value = apply_value_transform(raw, transform, default_value)
        if value is MISSING:
            continue
        set_path(result, target_field, value)

    static_fields: List[Dict[str, Any]] = config.get("static_fields") or []
    for field in static_fields:
        if isinstance(field, dict) and field.get("key"):
            set_path(result, field["key"], field.get("value"))

    return result


def inline_lookup_configs(transform_config: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Turn mappings using the ``lookup`` transform into PASSTHROUGH lookups
    on their target field, so unmapped codes keep the source value.
    """
    lookups = []
    for mapping in (transform_config or {}).get("mappings") or []:
        if not isinstance(mapping, dict) or mapping.get("transform") != "lookup":
            continue
        lookup_type = mapping.get("lookup_type")
        target_field = mapping.get("target_field")
        if lookup_type and target_field:
            lookups.append({
                "type": lookup_type,
                "source_field": target_field,
                "target_field": target_field,
                "unmapped_behavior": "PASSTHROUGH",
            })
    return lookups
