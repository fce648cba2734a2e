import pytest

from flow_steering.applier import compute_diff
from flow_steering.model import (
    MAX_PORT,
    AppliedRule,
    AppliedRuleTable,
    FlowRule,
    Protocol,
    RuleScope,
    RuleSet,
)


def test_ruleset_rejects_duplicate_keys():
    with pytest.raises(ValueError):
        RuleSet((FlowRule(Protocol.UDP, 8000, 0), FlowRule(Protocol.UDP, 8000, 1)))


def test_ruleset_lookup():
    rules = RuleSet((FlowRule(Protocol.UDP, 8000, 0), FlowRule(Protocol.UDP, 8001, 0)))

    assert (Protocol.UDP, 8001) in rules
    assert (Protocol.TCP, 8001) not in rules
    assert rules.get((Protocol.UDP, 8000)) == FlowRule(Protocol.UDP, 8000, 0)
    assert rules.get((Protocol.UDP, 9000)) is None


def test_scope_only_owns_exact_rules_in_range():
    scope = RuleScope(Protocol.UDP, 8000, 8020)

    assert scope.contains(AppliedRule(1, Protocol.UDP, 8000, 0))
    assert scope.contains(AppliedRule(2, Protocol.UDP, 8020, 3))
    assert not scope.contains(AppliedRule(3, Protocol.UDP, 8021, 0))
    assert not scope.contains(AppliedRule(4, Protocol.TCP, 8005, 0))
    assert not scope.contains(AppliedRule(5, Protocol.UDP, 8005, 0, exact=False))
    assert not scope.contains(AppliedRule(6, None, None, None, exact=False))


def test_rule_table_groups_owned_rules_by_key():
    table = AppliedRuleTable(
        (
            AppliedRule(1, Protocol.UDP, 8000, 0),
            AppliedRule(2, Protocol.UDP, 8000, 1),
            AppliedRule(3, Protocol.UDP, 9000, 0),
        )
    )

    grouped = table.by_key(RuleScope(Protocol.UDP, 8000, 8020))

    assert list(grouped) == [(Protocol.UDP, 8000)]
    assert [r.rule_id for r in grouped[(Protocol.UDP, 8000)]] == [1, 2]


def test_ruleset_lookup_over_full_port_range():
    rules = RuleSet(tuple(FlowRule(Protocol.UDP, port, 0) for port in range(MAX_PORT + 1)))
    table = AppliedRuleTable(
        tuple(AppliedRule(port + 1, Protocol.UDP, port, 0) for port in range(MAX_PORT + 1))
    )

    diff = compute_diff(rules, table, RuleScope(Protocol.UDP, 0, MAX_PORT))

    assert diff.empty
    assert len(diff.present) == MAX_PORT + 1
    assert rules.get((Protocol.UDP, MAX_PORT)) == FlowRule(Protocol.UDP, MAX_PORT, 0)
