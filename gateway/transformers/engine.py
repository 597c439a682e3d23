"""
Transformation entry point shared by immediate, scheduled and retried
deliveries.
"""

import logging
from typing import Any, Dict, Optional

from core.config import settings
from core.exceptions import TransformationError
from gateway.transformers.lookups import LookupResolveFn, apply_lookups
from gateway.transformers.mapping import apply_field_mappings, inline_lookup_configs
from gateway.transformers.sandbox import run_script_async
from models.base import TransformMode

logger = logging.getLogger(__name__)

TRANSFORM_FUNCTION = "transform"
TRANSFORM_ARGS = ("payload", "context")


def _mode_of(rule: Any) -> str:
    mode = getattr(rule, "transform_mode", None) or TransformMode.SIMPLE
    return mode.value if isinstance(mode, TransformMode) else str(mode).upper()


async def apply_transform(
    payload: Dict[str, Any],
    rule: Any,
    context: Optional[Dict[str, Any]] = None,
    lookup_resolver: Optional[LookupResolveFn] = None
) -> Optional[Dict[str, Any]]:
    """
    Transform an event payload for one rule.

    ``rule`` is anything exposing ``transform_mode``, ``transform_config``
    and ``lookups`` (an IntegrationRule row or a preview request). Lookups
    run on the transformed payload, so they see the post-mapping field
    names. Returns None when a script returns nothing.

    Raises:
        TransformationError: Script failure, unmapped code or a script
            returning something other than an object
    """
    config = getattr(rule, "transform_config", None) or {}
    mode = _mode_of(rule)
    context = dict(context or {})

    if mode == TransformMode.SCRIPT.value:
        script = config.get("script")
        if not script:
            raise TransformationError(
                "Script transform mode requires transform_config.script",
                context={"rule_id": getattr(rule, "id", None)}
            )
        timeout_ms = config.get("timeout_ms") or settings.TRANSFORM_SCRIPT_TIMEOUT_MS
        result = await run_script_async(
            script,
            TRANSFORM_FUNCTION,
            TRANSFORM_ARGS,
            [payload, context],
            timeout_ms=timeout_ms
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise TransformationError(
                f"Transform script must return an object, got {type(result).__name__}",
                context={"rule_id": getattr(rule, "id", None)},
                code="SCRIPT_INVALID_OUTPUT"
            )
        transformed = result
        lookups = []
    else:
        transformed = apply_field_mappings(payload, config)
        lookups = inline_lookup_configs(config)

    lookups.extend(getattr(rule, "lookups", None) or [])
    if lookups:
        if lookup_resolver is None:
            logger.warning(
                f"Rule {getattr(rule, 'id', None)} has {len(lookups)} lookups but no resolver; skipping"
            )
            return transformed
        transformed = await apply_lookups(
            transformed,
            lookups,
            lookup_resolver,
            org_id=context.get("org_id"),
            org_unit_id=context.get("org_unit_id")
        )

    return transformed
