"""
Payload transformation: declarative mappings, sandboxed scripts and lookups.
"""

from gateway.transformers.engine import apply_transform
from gateway.transformers.lookups import apply_lookups, DatabaseLookupResolver
from gateway.transformers.mapping import apply_field_mappings

__all__ = [
    "apply_transform",
    "apply_lookups",
    "apply_field_mappings",
    "DatabaseLookupResolver",
]
