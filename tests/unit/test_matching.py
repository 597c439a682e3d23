"""
Unit tests for rule matching and duplicate suppression
"""

import pytest
from types import SimpleNamespace

from gateway.dedup import DedupCache, event_key
from gateway.matching import match_rules, rule_applies
from models.base import RuleScope


def rule(**overrides):
    values = dict(
        id=1,
        org_unit_id=1,
        event_type="APPOINTMENT_CONFIRMATION",
        scope=None,
        excluded_org_unit_ids=None,
        is_active=True,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


# Event at clinic 100, whose ancestors are region 10 and org root 1
EVENT = SimpleNamespace(event_type="APPOINTMENT_CONFIRMATION", org_id=1, org_unit_id=100)
ANCESTORS = [10, 1]


class TestRuleMatching:

    def test_rule_on_own_unit(self):
        assert rule_applies(rule(org_unit_id=100, scope=RuleScope.ENTITY_ONLY), EVENT, ANCESTORS)

    def test_ancestor_rule_with_children_scope(self):
        assert rule_applies(rule(scope=RuleScope.INCLUDE_CHILDREN), EVENT, ANCESTORS)
        assert rule_applies(rule(scope=None), EVENT, ANCESTORS)

    def test_ancestor_rule_entity_only(self):
        assert not rule_applies(rule(scope=RuleScope.ENTITY_ONLY), EVENT, ANCESTORS)

    def test_excluded_unit(self):
        assert not rule_applies(rule(excluded_org_unit_ids=[100]), EVENT, ANCESTORS)
        assert rule_applies(rule(excluded_org_unit_ids=[101]), EVENT, ANCESTORS)

    def test_exclusion_ignored_on_own_unit(self):
        assert rule_applies(rule(org_unit_id=100, excluded_org_unit_ids=[100]), EVENT, ANCESTORS)

    def test_unrelated_unit(self):
        assert not rule_applies(rule(org_unit_id=11), EVENT, ANCESTORS)

    def test_event_type(self):
        assert rule_applies(rule(event_type="*"), EVENT, ANCESTORS)
        assert not rule_applies(rule(event_type="BILL_CREATED"), EVENT, ANCESTORS)

    def test_inactive(self):
        assert not rule_applies(rule(is_active=False), EVENT, ANCESTORS)

    def test_match_rules_keeps_order(self):
        rules = [
            rule(id=1),
            rule(id=2, org_unit_id=11),
            rule(id=3, org_unit_id=100),
            rule(id=4, org_unit_id=10, scope=RuleScope.ENTITY_ONLY),
        ]
        assert [r.id for r in match_rules(rules, EVENT, ANCESTORS)] == [1, 3]


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestDedupCache:

    def test_event_key_is_order_independent(self):
        assert event_key("A", 1, {"x": 1, "y": 2}) == event_key("A", 1, {"y": 2, "x": 1})
        assert event_key("A", 1, {"x": 1}) != event_key("A", 2, {"x": 1})
        assert event_key("A", 1, {"x": 1}) != event_key("B", 1, {"x": 1})

    def test_duplicate_within_window(self):
        clock = FakeClock()
        cache = DedupCache(window_seconds=60, max_entries=100, clock=clock)

        assert cache.check_and_mark("k") is False
        clock.now += 30
        assert cache.check_and_mark("k") is True

    def test_expires_after_window(self):
        clock = FakeClock()
        cache = DedupCache(window_seconds=60, max_entries=100, clock=clock)

        cache.mark("k")
        clock.now += 61
        assert cache.seen("k") is False
        assert len(cache) == 0

    def test_evicts_oldest_beyond_capacity(self):
        cache = DedupCache(window_seconds=60, max_entries=2, clock=FakeClock())
        for key in ("a", "b", "c"):
            cache.mark(key)
        assert not cache.seen("a")
        assert cache.seen("b") and cache.seen("c")

    def test_sweep(self):
        clock = FakeClock()
        cache = DedupCache(window_seconds=60, max_entries=100, clock=clock)
        cache.mark("old")
        clock.now += 45
        cache.mark("new")
        clock.now += 30

        assert cache.sweep() == 1
        assert cache.seen("new")

    def test_forget_unmarks_key(self):
        cache = DedupCache(window_seconds=60, max_entries=100, clock=FakeClock())
        assert cache.check_and_mark("k") is False
        cache.forget("k")
        assert cache.check_and_mark("k") is False
        cache.forget("missing")
