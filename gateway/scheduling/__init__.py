"""
Delayed and recurring deliveries.
"""

from gateway.scheduling.scripts import (
    CANCELLATION_EVENT_TYPES,
    RecurringConfig,
    calculate_next_occurrence,
    execute_scheduling_script,
    extract_cancellation_info
)
from gateway.scheduling.service import ScheduledDeliveryService

__all__ = [
    "CANCELLATION_EVENT_TYPES",
    "RecurringConfig",
    "calculate_next_occurrence",
    "execute_scheduling_script",
    "extract_cancellation_info",
    "ScheduledDeliveryService",
]
