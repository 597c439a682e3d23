"""
Unit tests for payload transformation (mappings, lookups, engine)
"""

import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock

from core.exceptions import TransformationError, UnmappedCodeError
from gateway.transformers.engine import apply_transform
from gateway.transformers.lookups import DatabaseLookupResolver, apply_lookups
from gateway.transformers.mapping import apply_field_mappings, inline_lookup_configs, to_iso8601
from gateway.transformers.paths import MISSING, get_path, set_path
from models.base import TransformMode
from models.lookup_mapping import LookupMapping


def make_resolver(table):
    """Resolver backed by a {(type, code): target} dict"""

    async def resolve(value, lookup_type, org_id, org_unit_id):
        return table.get((lookup_type, value))

    return resolve


class TestPaths:

    def test_get_nested_and_missing(self):
        payload = {"patient": {"phone": "123"}}
        assert get_path(payload, "patient.phone") == "123"
        assert get_path(payload, "patient.email") is MISSING
        assert get_path(payload, "visit.id") is MISSING

    def test_explicit_none_is_not_missing(self):
        assert get_path({"a": None}, "a") is None

    def test_array_path_reads_each_element(self):
        payload = {"items": [{"code": "a"}, {"name": "x"}, {"code": "c"}]}
        assert get_path(payload, "items[].code") == ["a", MISSING, "c"]

    def test_set_creates_intermediate_objects(self):
        target = {}
        set_path(target, "patient.contact.phone", "123")
        assert target == {"patient": {"contact": {"phone": "123"}}}

    def test_set_array_path_skips_missing(self):
        target = {"items": [{"code": "a"}, {"code": "b"}]}
        set_path(target, "items[].sku", ["A", MISSING])
        assert target["items"] == [{"code": "a", "sku": "A"}, {"code": "b"}]


class TestFieldMappings:

    def test_builtin_transforms(self, sample_payload):
        config = {
            "mappings": [
                {"source_field": "patient.name", "target_field": "name", "transform": "trim"},
                {"source_field": "status", "target_field": "state", "transform": "lower"},
                {"source_field": "patient.gender", "target_field": "gender", "transform": "upper"},
            ]
        }
        result = apply_field_mappings(sample_payload, config)

        assert result["name"] == "Asha Rao"
        assert result["state"] == "confirmed"
        assert result["gender"] == "F"
        # Original fields are kept
        assert result["patientRid"] == "P-1001"

    def test_missing_source_field_is_omitted(self, sample_payload):
        config = {"mappings": [{"source_field": "patient.email", "target_field": "email", "transform": "trim"}]}
        result = apply_field_mappings(sample_payload, config)
        assert "email" not in result

    def test_default_transform_fills_missing(self):
        config = {"mappings": [
            {"source_field": "priority", "target_field": "priority", "transform": "default", "default_value": "LOW"}
        ]}
        assert apply_field_mappings({}, config)["priority"] == "LOW"
        assert apply_field_mappings({"priority": "HIGH"}, config)["priority"] == "HIGH"

    def test_date_transform_to_iso(self):
        config = {"mappings": [{"source_field": "when", "target_field": "when", "transform": "date"}]}
        result = apply_field_mappings({"when": "2024-01-15T10:00:00Z"}, config)
        assert result["when"] == "2024-01-15T10:00:00.000Z"
        assert to_iso8601(0) == "1970-01-01T00:00:00.000Z"
        assert to_iso8601("not a date") == "not a date"

    def test_array_mapping(self, sample_payload):
        config = {"mappings": [{"source_field": "items[].code", "target_field": "items[].sku", "transform": "upper"}]}
        result = apply_field_mappings(sample_payload, config)
        assert [item["sku"] for item in result["items"]] == ["CBC", "LFT"]

    def test_static_fields(self):
        config = {"static_fields": [{"key": "meta.channel", "value": "whatsapp"}]}
        assert apply_field_mappings({}, config) == {"meta": {"channel": "whatsapp"}}

    def test_source_payload_not_mutated(self, sample_payload):
        before = dict(sample_payload)
        apply_field_mappings(sample_payload, {"static_fields": [{"key": "status", "value": "X"}]})
        assert sample_payload == before

    def test_lookup_transform_becomes_passthrough_lookup(self):
        config = {"mappings": [
            {"source_field": "g", "target_field": "gender", "transform": "lookup", "lookup_type": "gender"}
        ]}
        assert inline_lookup_configs(config) == [{
            "type": "gender",
            "source_field": "gender",
            "target_field": "gender",
            "unmapped_behavior": "PASSTHROUGH",
        }]


class TestLookups:

    @pytest.mark.asyncio
    async def test_mapped_code_is_replaced(self):
        resolve = make_resolver({("gender", "F"): "FEMALE"})
        lookups = [{"type": "gender", "source_field": "gender", "target_field": "genderCode"}]

        result = await apply_lookups({"gender": "F"}, lookups, resolve)

        assert result == {"gender": "F", "genderCode": "FEMALE"}

    @pytest.mark.asyncio
    async def test_passthrough_keeps_source_value(self):
        resolve = make_resolver({})
        lookups = [{"type": "gender", "source_field": "gender", "unmapped_behavior": "PASSTHROUGH"}]
        assert (await apply_lookups({"gender": "X"}, lookups, resolve))["gender"] == "X"

    @pytest.mark.asyncio
    async def test_default_writes_default_value(self):
        resolve = make_resolver({})
        lookups = [{"type": "gender", "source_field": "gender", "unmapped_behavior": "DEFAULT", "default_value": "U"}]
        assert (await apply_lookups({"gender": "X"}, lookups, resolve))["gender"] == "U"

    @pytest.mark.asyncio
    async def test_fail_raises_and_stops_chain(self):
        resolve = AsyncMock(return_value=None)
        lookups = [
            {"type": "gender", "source_field": "gender", "unmapped_behavior": "FAIL"},
            {"type": "dept", "source_field": "dept"},
        ]

        with pytest.raises(UnmappedCodeError) as exc:
            await apply_lookups({"gender": "X", "dept": "D1"}, lookups, resolve)

        assert exc.value.message == "Unmapped code: X"
        assert exc.value.code == "UNMAPPED_CODE"
        assert resolve.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_values_are_not_resolved(self):
        resolve = AsyncMock(return_value="never")
        lookups = [{"type": "gender", "source_field": "gender", "unmapped_behavior": "FAIL"}]

        for payload in ({}, {"gender": None}, {"gender": ""}):
            assert await apply_lookups(payload, lookups, resolve) == payload
        resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_array_lookup(self):
        resolve = make_resolver({("test", "cbc"): "T-1"})
        lookups = [{"type": "test", "source_field": "items[].code", "target_field": "items[].testCode"}]

        result = await apply_lookups({"items": [{"code": "cbc"}, {"code": "zzz"}]}, lookups, resolve)

        assert result["items"] == [{"code": "cbc", "testCode": "T-1"}, {"code": "zzz", "testCode": "zzz"}]

    @pytest.mark.asyncio
    async def test_resolver_error_treated_as_unmapped(self):
        resolve = AsyncMock(side_effect=RuntimeError("db down"))
        lookups = [{"type": "gender", "source_field": "gender", "unmapped_behavior": "DEFAULT", "default_value": "U"}]
        assert (await apply_lookups({"gender": "F"}, lookups, resolve))["gender"] == "U"


class TestDatabaseLookupResolver:

    @pytest.mark.asyncio
    async def test_unit_mapping_wins_over_org_mapping(self, db_session, session_factory):
        db_session.add_all([
            LookupMapping(org_id=1, org_unit_id=None, type="gender", source_code="F", target_code="FEMALE"),
            LookupMapping(org_id=1, org_unit_id=100, type="gender", source_code="F", target_code="W"),
        ])
        await db_session.commit()
        resolver = DatabaseLookupResolver(session_factory)

        assert await resolver("F", "gender", 1, 100) == "W"
        assert await resolver("F", "gender", 1, 101) == "FEMALE"
        assert await resolver("M", "gender", 1, 100) is None
        assert await resolver("F", "gender", 2, 100) is None


class TestApplyTransform:

    @pytest.mark.asyncio
    async def test_simple_mode_with_rule_lookups(self, sample_payload):
        rule = SimpleNamespace(
            id=1,
            transform_mode=TransformMode.SIMPLE,
            transform_config={"mappings": [
                {"source_field": "patient.gender", "target_field": "gender"}
            ]},
            lookups=[{"type": "gender", "source_field": "gender"}]
        )
        resolve = make_resolver({("gender", "F"): "FEMALE"})

        result = await apply_transform(sample_payload, rule, {"org_id": 1}, resolve)

        assert result["gender"] == "FEMALE"

    @pytest.mark.asyncio
    async def test_lookups_skipped_without_resolver(self):
        rule = SimpleNamespace(id=1, transform_mode="SIMPLE", transform_config=None,
                               lookups=[{"type": "gender", "source_field": "g", "unmapped_behavior": "FAIL"}])
        assert await apply_transform({"g": "F"}, rule) == {"g": "F"}

    @pytest.mark.asyncio
    async def test_script_mode_requires_script(self):
        rule = SimpleNamespace(id=1, transform_mode=TransformMode.SCRIPT, transform_config={}, lookups=None)
        with pytest.raises(TransformationError):
            await apply_transform({}, rule)

    @pytest.mark.asyncio
    async def test_script_mode(self, sample_payload):
        rule = SimpleNamespace(
            id=1,
            transform_mode=TransformMode.SCRIPT,
            transform_config={"script": (
                "return {\n"
                "    'patient': payload['patientRid'],\n"
                "    'name': trim(payload['patient']['name']),\n"
                "    'event': context['event_type'],\n"
                "}"
            )},
            lookups=None
        )

        result = await apply_transform(sample_payload, rule, {"event_type": "APPOINTMENT_CONFIRMATION"})

        assert result == {"patient": "P-1001", "name": "Asha Rao", "event": "APPOINTMENT_CONFIRMATION"}

    @pytest.mark.asyncio
    async def test_script_returning_none_skips(self):
        rule = SimpleNamespace(id=1, transform_mode="SCRIPT",
                               transform_config={"script": "if payload.get('status') != 'OK':\n    return None\nreturn payload"},
                               lookups=None)
        assert await apply_transform({"status": "NO"}, rule) is None

    @pytest.mark.asyncio
    async def test_script_returning_non_object_fails(self):
        rule = SimpleNamespace(id=1, transform_mode="SCRIPT", transform_config={"script": "return [1, 2]"}, lookups=None)
        with pytest.raises(TransformationError) as exc:
            await apply_transform({}, rule)
        assert exc.value.code == "SCRIPT_INVALID_OUTPUT"
