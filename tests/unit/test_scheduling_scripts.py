"""
Unit tests for scheduling scripts and recurrence arithmetic
"""

import pytest

from core.exceptions import SchedulingError, ScriptExecutionError
from gateway.scheduling.scripts import (
    RecurringConfig,
    calculate_next_occurrence,
    execute_scheduling_script,
    extract_cancellation_info,
    validate_delayed_result
)
from gateway.scheduling.service import datetimes_match
from models.base import DeliveryMode

NOW = 1_700_000_000_000
HOUR = 3_600_000
DAY = 24 * HOUR


class TestDelayedScripts:

    @pytest.mark.asyncio
    async def test_two_hours_ahead(self):
        script = f"return {NOW} + 2 * 3600 * 1000"
        result = await execute_scheduling_script(script, {}, DeliveryMode.DELAYED, now_ms=NOW, timeout_ms=10000)
        assert result == NOW + 2 * HOUR

    @pytest.mark.asyncio
    async def test_script_reads_event_and_helpers(self):
        script = "return to_timestamp(event['appointmentDateTime']) - 24 * 3600 * 1000"
        event = {"appointmentDateTime": "2023-11-20T10:00:00Z"}
        result = await execute_scheduling_script(script, event, "DELAYED", now_ms=NOW, timeout_ms=10000)
        assert result == 1700388000000 - DAY

    def test_past_rejected(self):
        with pytest.raises(SchedulingError) as exc:
            validate_delayed_result(NOW - 1, now_ms=NOW)
        assert exc.value.message == "Scheduled time must be in the future"

    def test_more_than_a_year_rejected(self):
        with pytest.raises(SchedulingError) as exc:
            validate_delayed_result(NOW + 400 * DAY, now_ms=NOW)
        assert "1 year" in exc.value.message

    @pytest.mark.parametrize("result", ["tomorrow", None, True, {"at": 1}])
    def test_non_numeric_rejected(self, result):
        with pytest.raises(SchedulingError):
            validate_delayed_result(result, now_ms=NOW)

    @pytest.mark.asyncio
    async def test_immediate_mode_rejected(self):
        with pytest.raises(SchedulingError):
            await execute_scheduling_script("return 1", {}, DeliveryMode.IMMEDIATE, now_ms=NOW)

    @pytest.mark.asyncio
    async def test_script_failure_propagates(self):
        with pytest.raises(ScriptExecutionError) as exc:
            await execute_scheduling_script("import os\nreturn 1", {}, "DELAYED", now_ms=NOW)
        assert exc.value.code == "SCRIPT_SECURITY_VIOLATION"


class TestRecurringConfig:

    @pytest.mark.asyncio
    async def test_recurring_script(self):
        script = (
            f"return {{'firstOccurrence': {NOW + HOUR}, 'intervalMs': {DAY}, 'maxOccurrences': 5}}"
        )
        config = await execute_scheduling_script(script, {}, "RECURRING", now_ms=NOW, timeout_ms=10000)
        assert config == RecurringConfig(first_occurrence=NOW + HOUR, interval_ms=DAY, max_occurrences=5)

    @pytest.mark.parametrize("raw,message", [
        ({"interval_ms": DAY, "max_occurrences": 5}, "first_occurrence"),
        ({"first_occurrence": NOW - 1, "interval_ms": DAY, "max_occurrences": 5}, "future"),
        ({"first_occurrence": NOW + HOUR, "interval_ms": 59999, "max_occurrences": 5}, "interval_ms"),
        ({"first_occurrence": NOW + HOUR, "interval_ms": DAY}, "either"),
        ({"first_occurrence": NOW + HOUR, "interval_ms": DAY, "max_occurrences": 5, "end_date": NOW + 9 * DAY},
         "exactly one"),
        ({"first_occurrence": NOW + HOUR, "interval_ms": DAY, "max_occurrences": 1}, "between"),
        ({"first_occurrence": NOW + HOUR, "interval_ms": DAY, "max_occurrences": 366}, "between"),
        ({"first_occurrence": NOW + HOUR, "interval_ms": DAY, "end_date": NOW}, "end_date"),
    ])
    def test_invalid_configs(self, raw, message):
        with pytest.raises(SchedulingError) as exc:
            RecurringConfig.from_dict(raw, now_ms=NOW)
        assert message in exc.value.message

    def test_round_trip_dict(self):
        config = RecurringConfig.from_dict(
            {"first_occurrence": NOW + HOUR, "interval_ms": DAY, "end_date": NOW + 3 * DAY}, now_ms=NOW
        )
        assert config.to_dict() == {"first_occurrence": NOW + HOUR, "interval_ms": DAY, "end_date": NOW + 3 * DAY}


class TestNextOccurrence:

    CONFIG = {"first_occurrence": NOW, "interval_ms": DAY, "max_occurrences": 5}

    def test_first_occurrence(self):
        assert calculate_next_occurrence(self.CONFIG, 1) == NOW

    def test_nth_occurrence(self):
        assert calculate_next_occurrence(self.CONFIG, 5) == NOW + 4 * DAY

    def test_beyond_max(self):
        assert calculate_next_occurrence(self.CONFIG, 6) is None
        assert calculate_next_occurrence(self.CONFIG, 0) is None

    def test_end_date_bound(self):
        config = {"first_occurrence": NOW, "interval_ms": DAY, "end_date": NOW + 2 * DAY}
        assert calculate_next_occurrence(config, 3) == NOW + 2 * DAY
        assert calculate_next_occurrence(config, 4) is None


class TestCancellationInfo:

    def test_extracts_patient_and_time(self):
        info = extract_cancellation_info({"patient_id": 77, "appointmentDateTime": "2024-01-15T10:00:00Z"})
        assert info == {"patient_id": "77", "scheduled_datetime": "2024-01-15T10:00:00Z"}

    def test_first_alias_wins(self):
        info = extract_cancellation_info({"patientRid": "P-1", "patientId": "P-2"})
        assert info == {"patient_id": "P-1"}

    def test_no_patient(self):
        assert extract_cancellation_info({"appointmentDateTime": "2024-01-15T10:00:00Z"}) is None
        assert extract_cancellation_info(None) is None

    def test_datetimes_match_within_an_hour(self):
        assert datetimes_match("2024-01-15T10:00:00Z", "2024-01-15T10:45:00Z")
        assert not datetimes_match("2024-01-15T10:00:00Z", "2024-01-15T12:00:00Z")
        assert datetimes_match("slot-7", "slot-7")
        assert not datetimes_match(None, "slot-7")
