"""
Unit tests for the script sandbox and script helpers
"""

import pytest
from datetime import datetime, timezone

from core.exceptions import ScriptExecutionError
from gateway.transformers.helpers import format_phone, parse_date, to_timestamp
from gateway.transformers.sandbox import (
    check_result_structure,
    run_script,
    run_script_async,
    validate_script
)

ARGS = ("payload", "context")


def nested_script(depth: int) -> str:
    """Script returning a dict nested ``depth`` levels deep"""
    return (
        "result = {}\n"
        "node = result\n"
        f"for i in range({depth - 1}):\n"
        "    child = {}\n"
        "    node['child'] = child\n"
        "    node = child\n"
        "return result"
    )


class TestValidation:

    def test_syntax_error_is_compile_error(self):
        with pytest.raises(ScriptExecutionError) as exc:
            validate_script("return {", "transform", ARGS)
        assert exc.value.code == "SCRIPT_COMPILE_ERROR"

    def test_empty_script_rejected(self):
        with pytest.raises(ScriptExecutionError) as exc:
            validate_script("   ", "transform", ARGS)
        assert exc.value.code == "SCRIPT_COMPILE_ERROR"

    @pytest.mark.parametrize("body", [
        "import os\nreturn {}",
        "from os import path\nreturn {}",
        "return eval('1')",
        "return open('/etc/passwd').read()",
        "return payload.__class__",
        "return ().__class__.__bases__",
        "return __builtins__",
        "class X:\n    pass\nreturn {}",
    ])
    def test_dangerous_constructs_rejected(self, body):
        with pytest.raises(ScriptExecutionError) as exc:
            validate_script(body, "transform", ARGS)
        assert exc.value.code == "SCRIPT_SECURITY_VIOLATION"

    def test_plain_script_accepted(self):
        wrapped = validate_script("return {'a': payload.get('a')}", "transform", ARGS)
        assert wrapped.startswith("def transform(payload, context):")


class TestResultStructure:

    def test_circular_reference(self):
        value = {"a": {}}
        value["a"]["self"] = value
        with pytest.raises(ScriptExecutionError) as exc:
            check_result_structure(value)
        assert exc.value.code == "SCRIPT_CIRCULAR_REFERENCE"

    def test_shared_reference_is_not_circular(self):
        shared = {"x": 1}
        check_result_structure({"a": shared, "b": shared})

    def test_depth_limit(self):
        value = current = {}
        for _ in range(59):
            current["child"] = {}
            current = current["child"]
        with pytest.raises(ScriptExecutionError) as exc:
            check_result_structure(value)
        assert exc.value.code == "SCRIPT_DEPTH_EXCEEDED"


class TestExecution:

    def test_returns_result(self):
        result = run_script(
            "return {'id': payload['id'], 'type': context['event_type']}",
            "transform", ARGS, [{"id": 7}, {"event_type": "X"}],
            timeout_ms=10000
        )
        assert result == {"id": 7, "type": "X"}

    def test_depth_60_rejected(self):
        with pytest.raises(ScriptExecutionError) as exc:
            run_script(nested_script(60), "transform", ARGS, [{}, {}], timeout_ms=10000)
        assert exc.value.code == "SCRIPT_DEPTH_EXCEEDED"

    def test_depth_40_accepted(self):
        result = run_script(nested_script(40), "transform", ARGS, [{}, {}], timeout_ms=10000)
        depth = 0
        while isinstance(result, dict):
            depth += 1
            result = result.get("child")
        assert depth == 40

    def test_runtime_error(self):
        with pytest.raises(ScriptExecutionError) as exc:
            run_script("return payload['missing']", "transform", ARGS, [{}, {}], timeout_ms=10000)
        assert exc.value.code == "SCRIPT_RUNTIME_ERROR"
        assert "KeyError" in exc.value.message

    def test_timeout_terminates_child(self):
        with pytest.raises(ScriptExecutionError) as exc:
            run_script("while True:\n    pass", "transform", ARGS, [{}, {}], timeout_ms=1500)
        assert exc.value.code == "SCRIPT_TIMEOUT"

    def test_helpers_available(self):
        result = run_script(
            "return {'phone': format_phone(payload['phone']), 'name': uppercase(payload['name'])}",
            "transform", ARGS, [{"phone": "98765 43210", "name": "asha"}, {}],
            timeout_ms=10000
        )
        assert result == {"phone": "+919876543210", "name": "ASHA"}

    def test_http_helper_absent_when_disabled(self):
        with pytest.raises(ScriptExecutionError) as exc:
            run_script("return http.get('https://example.com')", "schedule", ("event", "context"),
                       [{}, {}], timeout_ms=10000, allow_http=False)
        assert exc.value.code == "SCRIPT_RUNTIME_ERROR"

    @pytest.mark.asyncio
    async def test_async_wrapper(self):
        result = await run_script_async("return len(payload['items'])", "transform", ARGS,
                                        [{"items": [1, 2, 3]}, {}], timeout_ms=10000)
        assert result == 3


class TestHelpers:

    def test_parse_date_formats(self):
        expected = datetime(2024, 1, 15, tzinfo=timezone.utc)
        assert parse_date("2024-01-15T00:00:00Z") == expected
        assert parse_date("15/01/2024") == expected
        assert parse_date("15-Jan-2024") == expected
        assert parse_date("garbage") is None

    def test_parse_date_12_hour_clock(self):
        assert parse_date("15/01/2024 02:30 PM") == datetime(2024, 1, 15, 14, 30, tzinfo=timezone.utc)

    def test_to_timestamp_millis(self):
        assert to_timestamp("1970-01-01T00:00:01Z") == 1000

    def test_format_phone(self):
        assert format_phone("9876543210") == "+919876543210"
        assert format_phone("+91 98765 43210") == "+919876543210"
        assert format_phone("5551234", "1") == "+15551234"
