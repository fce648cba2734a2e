"""Converge a device rule table towards a desired :class:`RuleSet`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .device import DeviceControl
from .exceptions import DeviceCommandError, OperationUnsupported
from .model import (
    AppliedRule,
    AppliedRuleTable,
    CapabilityStatus,
    FlowRule,
    Interface,
    RuleKey,
    RuleScope,
    RuleSet,
)
from .result import ReconciliationResult, RuleOutcome, RuleStatus

LOG = logging.getLogger(__name__)

DELETE_FAILED = "DeleteFailed"


class AddPolicy(Enum):
    """What to do once the device rejects a rule addition.

    ``FAIL_FAST`` stops adding for the rest of the run so that a full rule
    table surfaces immediately; ``BEST_EFFORT`` keeps trying later ports.
    """

    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


@dataclass(frozen=True)
class RuleDiff:
    to_delete: Tuple[AppliedRule, ...]
    to_add: Tuple[FlowRule, ...]
    present: Dict[RuleKey, AppliedRule]

    @property
    def empty(self) -> bool:
        return not self.to_delete and not self.to_add


def compute_diff(
    desired: RuleSet, actual: AppliedRuleTable, scope: RuleScope
) -> RuleDiff:
    """Split owned device rules into keep/delete and desired rules into add.

    Only rules inside ``scope`` are ever candidates for deletion.  For each
    desired key the first rule pointing at the right queue is kept; any other
    rule for that key (wrong queue or duplicate) is deleted.
    """

    grouped = actual.by_key(scope)
    to_delete: List[AppliedRule] = []
    to_add: List[FlowRule] = []
    present: Dict[RuleKey, AppliedRule] = {}

    for key, rules in grouped.items():
        if key not in desired:
            to_delete.extend(rules)

    for rule in desired:
        candidates = grouped.get(rule.key, [])
        keep = next((c for c in candidates if c.queue == rule.queue), None)
        if keep is None:
            to_add.append(rule)
        else:
            present[rule.key] = keep
        to_delete.extend(c for c in candidates if c is not keep)

    return RuleDiff(
        to_delete=tuple(sorted(to_delete, key=lambda r: r.rule_id)),
        to_add=tuple(sorted(to_add, key=lambda r: r.dest_port)),
        present=present,
    )


class RuleApplier:
    """Apply the delete/add diff against a device, recording each outcome."""

    def __init__(
        self,
        device: DeviceControl,
        add_policy: AddPolicy = AddPolicy.FAIL_FAST,
    ) -> None:
        self._device = device
        self._add_policy = add_policy

    def reconcile(
        self,
        interface: Interface,
        desired: RuleSet,
        actual: AppliedRuleTable,
        scope: RuleScope,
        result: Optional[ReconciliationResult] = None,
    ) -> ReconciliationResult:
        result = result or ReconciliationResult(interface.name)
        diff = compute_diff(desired, actual, scope)
        LOG.debug(
            "Diff for %s: delete=%s add=%s present=%d",
            interface.name,
            [r.rule_id for r in diff.to_delete],
            [r.dest_port for r in diff.to_add],
            len(diff.present),
        )
        if diff.empty:
            LOG.info("%s already carries all %d desired rules", interface.name, len(desired))

        blocked = self._delete(interface.name, diff.to_delete, desired, result)

        if diff.to_add and not interface.ntuple_enabled:
            status = self._enable_ntuple(interface.name)
            result.capabilities["ntuple"] = status
            if status is not CapabilityStatus.APPLIED:
                result.warnings.append(
                    f"failed to enable ntuple filters on {interface.name} ({status.value}), "
                    "continuing anyway"
                )

        self._add(interface.name, desired, diff, blocked, result)
        return result

    # ------------------------------------------------------------------
    def _delete(
        self,
        iface: str,
        rules: Tuple[AppliedRule, ...],
        desired: RuleSet,
        result: ReconciliationResult,
    ) -> Set[RuleKey]:
        blocked: Set[RuleKey] = set()
        for rule in rules:
            protocol, port = rule.key  # owned rules always carry a key
            try:
                self._device.delete_rule(iface, rule.rule_id)
            except DeviceCommandError as exc:
                LOG.warning("Failed to delete rule %s on %s: %s", rule.rule_id, iface, exc)
                if rule.key in desired:
                    blocked.add(rule.key)
                result.record(
                    RuleOutcome(
                        port=port,
                        protocol=protocol,
                        status=RuleStatus.FAILED,
                        queue=rule.queue,
                        rule_id=rule.rule_id,
                        reason=DELETE_FAILED,
                        detail=exc.stderr or str(exc),
                    )
                )
                continue
            LOG.info("Deleted rule %s (port %s) on %s", rule.rule_id, rule.dest_port, iface)
            result.record(
                RuleOutcome(
                    port=port,
                    protocol=protocol,
                    status=RuleStatus.DELETED,
                    queue=rule.queue,
                    rule_id=rule.rule_id,
                )
            )
        return blocked

    def _enable_ntuple(self, iface: str) -> CapabilityStatus:
        LOG.info("Enabling ntuple filters on %s", iface)
        try:
            self._device.set_capability_flag(iface, "ntuple", True)
        except OperationUnsupported as exc:
            LOG.warning("ntuple filters not supported on %s: %s", iface, exc)
            return CapabilityStatus.UNSUPPORTED
        except DeviceCommandError as exc:
            LOG.warning("failed to enable ntuple filters on %s: %s", iface, exc)
            return CapabilityStatus.ERROR
        return CapabilityStatus.APPLIED

    def _add(
        self,
        iface: str,
        desired: RuleSet,
        diff: RuleDiff,
        blocked: Set[RuleKey],
        result: ReconciliationResult,
    ) -> None:
        stop: Optional[Tuple[int, DeviceCommandError]] = None

        for rule in sorted(desired, key=lambda r: r.dest_port):
            kept = diff.present.get(rule.key)
            if kept is not None:
                result.record(
                    RuleOutcome(
                        port=rule.dest_port,
                        protocol=rule.protocol,
                        status=RuleStatus.ALREADY_PRESENT,
                        queue=rule.queue,
                        rule_id=kept.rule_id,
                    )
                )
                continue

            if rule.key in blocked:
                result.record(
                    RuleOutcome(
                        port=rule.dest_port,
                        protocol=rule.protocol,
                        status=RuleStatus.FAILED,
                        queue=rule.queue,
                        reason=DELETE_FAILED,
                        detail="stale rule for this port could not be removed",
                    )
                )
                continue

            if stop is not None:
                stopped_port, error = stop
                result.record(
                    RuleOutcome(
                        port=rule.dest_port,
                        protocol=rule.protocol,
                        status=RuleStatus.FAILED,
                        queue=rule.queue,
                        reason=error.reason,
                        detail=f"not attempted after port {stopped_port} was rejected",
                    )
                )
                continue

            try:
                rule_id = self._device.add_rule(iface, rule)
            except DeviceCommandError as exc:
                LOG.warning(
                    "Failed to set rule for port %d on %s: %s", rule.dest_port, iface, exc
                )
                result.record(
                    RuleOutcome(
                        port=rule.dest_port,
                        protocol=rule.protocol,
                        status=RuleStatus.FAILED,
                        queue=rule.queue,
                        reason=exc.reason,
                        detail=exc.stderr or str(exc),
                    )
                )
                if self._add_policy is AddPolicy.FAIL_FAST:
                    stop = (rule.dest_port, exc)
                continue

            LOG.info("Port %d -> queue %d on %s", rule.dest_port, rule.queue, iface)
            result.record(
                RuleOutcome(
                    port=rule.dest_port,
                    protocol=rule.protocol,
                    status=RuleStatus.APPLIED,
                    queue=rule.queue,
                    rule_id=rule_id,
                )
            )
