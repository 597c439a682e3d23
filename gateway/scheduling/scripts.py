"""
Scheduling scripts and recurrence arithmetic.

A scheduling script is the body of ``def schedule(event, context)``. For
DELAYED rules it returns the send time as epoch milliseconds; for
RECURRING rules it returns a dict:

    {
        "first_occurrence": 1767225600000,   # epoch ms, in the future
        "interval_ms": 86400000,             # >= 60000
        "max_occurrences": 5                 # 2..365, or
        # "end_date": 1767830400000          # epoch ms after first_occurrence
    }

camelCase keys (firstOccurrence, intervalMs, maxOccurrences, endDate) are
accepted as well.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from core.config import settings
from core.exceptions import SchedulingError
from gateway.transformers.sandbox import run_script_async
from models.base import DeliveryMode

logger = logging.getLogger(__name__)

SCHEDULE_FUNCTION = "schedule"
SCHEDULE_ARGS = ("event", "context")

MAX_SCHEDULE_AHEAD_MS = 365 * 24 * 60 * 60 * 1000
MIN_INTERVAL_MS = 60000
MIN_OCCURRENCES = 2
MAX_OCCURRENCES = 365

CANCELLATION_EVENT_TYPES = frozenset({
    "OPU_RESCHEDULED",
    "ET_RESCHEDULED",
    "APPOINTMENT_RESCHEDULED",
    "APPOINTMENT_CANCELLATION",
    "OPU_CANCELLED",
    "ET_CANCELLED",
    "SURGERY_CANCELLED",
})

PATIENT_ID_FIELDS = ("patientRid", "patient_rid", "patientId", "patient_id", "ridPatient", "rid_patient")
SCHEDULED_DATETIME_FIELDS = (
    "scheduledDateTime", "scheduled_date_time",
    "appointmentDateTime", "appointment_date_time",
    "scheduledDate", "scheduled_date",
    "appointmentDate", "appointment_date",
    "scheduledTime", "scheduled_time",
)

_ALIASES = {
    "first_occurrence": ("first_occurrence", "firstOccurrence"),
    "interval_ms": ("interval_ms", "intervalMs"),
    "max_occurrences": ("max_occurrences", "maxOccurrences"),
    "end_date": ("end_date", "endDate"),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _pick(raw: Dict[str, Any], field: str) -> Any:
    for key in _ALIASES[field]:
        if raw.get(key) is not None:
            return raw[key]
    return None


@dataclass(frozen=True)
class RecurringConfig:
    first_occurrence: int
    interval_ms: int
    max_occurrences: Optional[int] = None
    end_date: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], now_ms: Optional[int] = None, check_future: bool = True) -> "RecurringConfig":
        """
        Validate a recurring config.

        Raises:
            SchedulingError: Any rule violation
        """
        if not isinstance(raw, dict):
            raise SchedulingError("Recurring config must be an object", context={"result": raw})

        first = _pick(raw, "first_occurrence")
        interval = _pick(raw, "interval_ms")
        max_occurrences = _pick(raw, "max_occurrences")
        end_date = _pick(raw, "end_date")
        now = now_ms if now_ms is not None else _now_ms()

        if not _is_number(first):
            raise SchedulingError("Recurring config must have first_occurrence (epoch ms)", context={"result": raw})
        if check_future and first <= now:
            raise SchedulingError("first_occurrence must be in the future", context={"result": raw})
        if not _is_number(interval) or interval < MIN_INTERVAL_MS:
            raise SchedulingError(f"interval_ms must be at least {MIN_INTERVAL_MS}", context={"result": raw})

        if max_occurrences is not None and end_date is not None:
            raise SchedulingError(
                "Recurring config must have exactly one of max_occurrences or end_date",
                context={"result": raw}
            )
        if max_occurrences is not None:
            if (not _is_number(max_occurrences) or int(max_occurrences) != max_occurrences
                    or not MIN_OCCURRENCES <= max_occurrences <= MAX_OCCURRENCES):
                raise SchedulingError(
                    f"max_occurrences must be an integer between {MIN_OCCURRENCES} and {MAX_OCCURRENCES}",
                    context={"result": raw}
                )
            max_occurrences = int(max_occurrences)
        elif end_date is not None:
            if not _is_number(end_date) or end_date <= first:
                raise SchedulingError("end_date must be after first_occurrence", context={"result": raw})
            end_date = int(end_date)
        else:
            raise SchedulingError(
                "Recurring config must have either max_occurrences or end_date",
                context={"result": raw}
            )

        return cls(
            first_occurrence=int(first),
            interval_ms=int(interval),
            max_occurrences=max_occurrences,
            end_date=end_date
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"first_occurrence": self.first_occurrence, "interval_ms": self.interval_ms}
        if self.max_occurrences is not None:
            data["max_occurrences"] = self.max_occurrences
        if self.end_date is not None:
            data["end_date"] = self.end_date
        return data


def calculate_next_occurrence(config: Union[RecurringConfig, Dict[str, Any]], occurrence_number: int) -> Optional[int]:
    """
    Send time of the ``occurrence_number``-th occurrence (1-based).

    Returns None when the number is below 1, beyond max_occurrences, or the
    time falls after end_date.
    """
    if not isinstance(config, RecurringConfig):
        config = RecurringConfig.from_dict(config, check_future=False)

    if occurrence_number < 1:
        return None
    if config.max_occurrences is not None and occurrence_number > config.max_occurrences:
        return None

    timestamp = config.first_occurrence + (occurrence_number - 1) * config.interval_ms
    if config.end_date is not None and timestamp > config.end_date:
        return None
    return timestamp


def validate_delayed_result(result: Any, now_ms: Optional[int] = None) -> int:
    now = now_ms if now_ms is not None else _now_ms()
    if not _is_number(result):
        raise SchedulingError(
            "DELAYED scheduling script must return a timestamp in epoch milliseconds",
            context={"result": result}
        )
    if result <= now:
        raise SchedulingError("Scheduled time must be in the future", context={"result": result})
    if result > now + MAX_SCHEDULE_AHEAD_MS:
        raise SchedulingError(
            "Scheduled time cannot be more than 1 year in the future",
            context={"result": result}
        )
    return int(result)


async def execute_scheduling_script(
    script: str,
    event: Dict[str, Any],
    delivery_mode: Any,
    context: Optional[Dict[str, Any]] = None,
    timeout_ms: Optional[int] = None,
    now_ms: Optional[int] = None
) -> Union[int, RecurringConfig]:
    """
    Run a scheduling script and validate its result for the delivery mode.

    Returns epoch ms for DELAYED and a RecurringConfig for RECURRING.

    Raises:
        SchedulingError: Invalid result or delivery mode
        ScriptExecutionError: The script itself failed
    """
    mode = delivery_mode.value if isinstance(delivery_mode, DeliveryMode) else str(delivery_mode).upper()
    if mode not in (DeliveryMode.DELAYED.value, DeliveryMode.RECURRING.value):
        raise SchedulingError(
            f"Scheduling scripts only apply to DELAYED or RECURRING rules, got {mode}",
            context={"delivery_mode": mode}
        )

    result = await run_script_async(
        script,
        SCHEDULE_FUNCTION,
        SCHEDULE_ARGS,
        [event or {}, dict(context or {})],
        timeout_ms=timeout_ms or settings.SCHEDULING_SCRIPT_TIMEOUT_MS,
        allow_http=False
    )

    if mode == DeliveryMode.DELAYED.value:
        return validate_delayed_result(result, now_ms)
    return RecurringConfig.from_dict(result, now_ms=now_ms)


def extract_cancellation_info(payload: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Patient and appointment time used to match later cancellations.

    Returns None when the payload carries no patient identifier.
    """
    if not isinstance(payload, dict):
        return None

    info: Dict[str, Any] = {}
    for field in PATIENT_ID_FIELDS:
        if payload.get(field):
            info["patient_id"] = str(payload[field])
            break
    for field in SCHEDULED_DATETIME_FIELDS:
        if payload.get(field):
            info["scheduled_datetime"] = payload[field]
            break

    return info if info.get("patient_id") else None
