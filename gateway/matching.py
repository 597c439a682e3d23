"""
Hierarchical rule matching.
"""

from typing import Iterable, List, Sequence

from models.base import RuleScope

WILDCARD_EVENT_TYPE = "*"


def rule_applies(rule, event, ancestor_unit_ids: Sequence[int]) -> bool:
    """
    A rule applies when it is active, its event type matches (or is '*'),
    and either:
    - it is defined on the event's own unit (scope does not matter), or
    - it is defined on an ancestor unit, its scope includes children (or is
      unset) and the event's unit is not excluded.
    """
    if not rule.is_active:
        return False
    if rule.event_type not in (event.event_type, WILDCARD_EVENT_TYPE):
        return False

    if rule.org_unit_id == event.org_unit_id:
        return True

    if rule.org_unit_id not in ancestor_unit_ids:
        return False
    if rule.scope == RuleScope.ENTITY_ONLY:
        return False
    excluded = rule.excluded_org_unit_ids or []
    return event.org_unit_id not in excluded


def match_rules(rules: Iterable, event, ancestor_unit_ids: Sequence[int]) -> List:
    """Filter candidate rules down to those that apply to ``event``."""
    ancestors = set(ancestor_unit_ids or [])
    return [rule for rule in rules if rule_applies(rule, event, ancestors)]
