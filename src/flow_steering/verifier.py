"""Compare the device's live rule table with the desired rule set."""

from __future__ import annotations

import logging
from typing import Set

from .device import DeviceControl
from .model import AppliedRuleTable, RuleScope, RuleSet
from .result import VerificationVerdict

LOG = logging.getLogger(__name__)


def compare(
    desired: RuleSet, actual: AppliedRuleTable, scope: RuleScope
) -> VerificationVerdict:
    grouped = actual.by_key(scope)
    missing: Set[int] = set()
    unexpected: Set[int] = set()

    for rule in desired:
        if not any(r.queue == rule.queue for r in grouped.get(rule.key, [])):
            missing.add(rule.dest_port)

    for key, rules in grouped.items():
        wanted = desired.get(key)
        correct = 0
        for rule in rules:
            if wanted is None or rule.queue != wanted.queue:
                unexpected.add(key[1])
            else:
                correct += 1
        if correct > 1:
            unexpected.add(key[1])

    return VerificationVerdict(frozenset(missing), frozenset(unexpected))


class RuleVerifier:
    """Re-read the rule table; acceptance of a write proves nothing."""

    def __init__(self, device: DeviceControl) -> None:
        self._device = device

    def verify(
        self, desired: RuleSet, interface_name: str, scope: RuleScope
    ) -> VerificationVerdict:
        verdict = compare(desired, self._device.list_rules(interface_name), scope)
        if verdict.matched:
            LOG.info("Rule table of %s matches %d desired rules", interface_name, len(desired))
        else:
            LOG.warning(
                "Rule table of %s mismatch: missing=%s unexpected=%s",
                interface_name,
                sorted(verdict.missing),
                sorted(verdict.unexpected),
            )
        return verdict
