"""
Integration gateway: turns tenant business events into authenticated
outbound HTTP deliveries.

Packages:
    sources: Event source adapters (relational, Kafka, HTTP push)
    transformers: Field mappings, sandboxed scripts and lookups
    delivery: Auth headers, URL guard, executor, retries, DLQ, circuit breaker
    scheduling: Delayed and recurring deliveries

Preview functions (used by the admin UI to test a rule before saving it):
    apply_transform, build_auth_headers, validate_target_url,
    execute_scheduling_script, calculate_next_occurrence
"""

from gateway.transformers.engine import apply_transform
from gateway.delivery.auth import build_auth_headers
from gateway.delivery.url_validator import validate_target_url
from gateway.scheduling.scripts import calculate_next_occurrence, execute_scheduling_script

__all__ = [
    "apply_transform",
    "build_auth_headers",
    "validate_target_url",
    "execute_scheduling_script",
    "calculate_next_occurrence",
]
