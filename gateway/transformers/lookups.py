"""
Code-mapping lookups applied after the main transformation.

Each lookup config:
    {
        "type": "gender",
        "source_field": "patient.gender",
        "target_field": "patient.genderCode",   # defaults to source_field
        "unmapped_behavior": "PASSTHROUGH" | "DEFAULT" | "FAIL",
        "default_value": "U"
    }

Lookups run sequentially over a copy of the payload. Null, missing and
empty source values are skipped without calling the resolver.
"""

import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import UnmappedCodeError
from gateway.transformers.paths import MISSING, get_path, set_path, is_array_path, present_values
from models.base import UnmappedBehavior
from models.lookup_mapping import LookupMapping

logger = logging.getLogger(__name__)

# resolve(source_value, lookup_type, org_id, org_unit_id) -> mapped value or None
LookupResolveFn = Callable[[Any, str, Optional[int], Optional[int]], Awaitable[Any]]


def _is_empty(value: Any) -> bool:
    return value is MISSING or value is None or (isinstance(value, str) and value == "")


async def _resolve_one(
    value: Any,
    lookup: Dict[str, Any],
    resolve: LookupResolveFn,
    org_id: Optional[int],
    org_unit_id: Optional[int]
) -> Any:
    """Resolve a single source value according to the lookup's unmapped behavior."""
    lookup_type = lookup.get("type")
    behavior = str(lookup.get("unmapped_behavior") or UnmappedBehavior.PASSTHROUGH.value).upper()

    try:
        mapped = await resolve(value, lookup_type, org_id, org_unit_id)
    except Exception as e:
        if behavior == UnmappedBehavior.FAIL.value:
            raise UnmappedCodeError(
                f"Unmapped code: {value}",
                context={"lookup_type": lookup_type, "source_field": lookup.get("source_field")},
                original_exception=e
            )
        logger.warning(
            f"Lookup resolution failed for {lookup_type}={value!r}, treating as unmapped: {e}"
        )
        mapped = None

    if mapped is not None:
        return mapped

    if behavior == UnmappedBehavior.FAIL.value:
        raise UnmappedCodeError(
            f"Unmapped code: {value}",
            context={"lookup_type": lookup_type, "source_field": lookup.get("source_field")}
        )
    if behavior == UnmappedBehavior.DEFAULT.value:
        return lookup.get("default_value")
    return value


async def apply_lookups(
    payload: Dict[str, Any],
    lookups: Optional[List[Dict[str, Any]]],
    resolve: LookupResolveFn,
    org_id: Optional[int] = None,
    org_unit_id: Optional[int] = None
) -> Dict[str, Any]:
    """
    Apply lookup configs in order and return the updated copy.

    Raises:
        UnmappedCodeError: A FAIL lookup met an unmapped code; later lookups
            do not run
    """
    if not lookups:
        return payload

    result = copy.deepcopy(payload) if isinstance(payload, dict) else {}

    for lookup in lookups:
        if not isinstance(lookup, dict):
            continue
        source_field = lookup.get("source_field")
        if not source_field or not lookup.get("type"):
            logger.warning(f"Skipping lookup with missing type or source_field: {lookup}")
            continue
        target_field = lookup.get("target_field") or source_field

        source_value = get_path(result, source_field)

        if is_array_path(source_field):
            if source_value is MISSING:
                continue
            resolved = []
            for item in source_value:
                if _is_empty(item):
                    resolved.append(MISSING)
                    continue
                resolved.append(await _resolve_one(item, lookup, resolve, org_id, org_unit_id))
            if is_array_path(target_field):
                set_path(result, target_field, resolved)
            else:
                set_path(result, target_field, present_values(resolved))
            continue

        if _is_empty(source_value):
            continue
        mapped = await _resolve_one(source_value, lookup, resolve, org_id, org_unit_id)
        set_path(result, target_field, mapped)

    return result


class DatabaseLookupResolver:
    """
    Resolves codes through the lookup_mappings table.

    A mapping defined for the unit wins over an org-wide mapping
    (org_unit_id NULL).
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def __call__(
        self,
        source_value: Any,
        lookup_type: str,
        org_id: Optional[int],
        org_unit_id: Optional[int]
    ) -> Any:
        async with self.session_factory() as session:
            return await self.resolve(session, source_value, lookup_type, org_id, org_unit_id)

    async def resolve(
        self,
        session: AsyncSession,
        source_value: Any,
        lookup_type: str,
        org_id: Optional[int],
        org_unit_id: Optional[int]
    ) -> Any:
        query = select(LookupMapping).where(
            LookupMapping.org_id == org_id,
            LookupMapping.type == lookup_type,
            LookupMapping.source_code == str(source_value),
            LookupMapping.is_active.is_(True),
            or_(
                LookupMapping.org_unit_id.is_(None),
                LookupMapping.org_unit_id == org_unit_id
            )
        )
        rows = (await session.execute(query)).scalars().all()
        if not rows:
            return None
        # Unit-specific rows first
        rows.sort(key=lambda row: row.org_unit_id is None)
        return rows[0].target_code
