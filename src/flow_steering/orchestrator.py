"""Top-level apply/teardown sequencing.

:class:`ReconciliationOrchestrator` mirrors how an operator would run the
steps by hand: inspect the NIC, plan the rules, diff them against what the NIC
reports, apply the diff and re-read the table to verify.  Each public call
holds the per-interface lock for its whole duration and starts from a fresh
read of the device, so a call interrupted half way is repaired by simply
running ``apply`` (or ``teardown``) again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .applier import AddPolicy, RuleApplier
from .device import DeviceControl
from .inspector import DeviceCapabilityInspector
from .lock import DEFAULT_LOCK_DIR, InterfaceLock
from .model import (
    AppliedRule,
    AppliedRuleTable,
    Interface,
    RuleScope,
    RuleSet,
    TrafficSplitPolicy,
    VFSet,
)
from .planner import RulePlanner
from .result import ReconciliationResult
from .sriov import VFProvisioner
from .verifier import RuleVerifier

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterfaceStatus:
    """Read-only view used by ``status`` reporting."""

    interface: Interface
    rules: AppliedRuleTable
    scope: Optional[RuleScope] = None

    def owned(self) -> List[AppliedRule]:
        if self.scope is None:
            return []
        return self.rules.owned(self.scope)


class ReconciliationOrchestrator:
    def __init__(
        self,
        device: DeviceControl,
        *,
        lock_dir: Path = DEFAULT_LOCK_DIR,
        lock_timeout: Optional[float] = 30.0,
        add_policy: AddPolicy = AddPolicy.FAIL_FAST,
        provisioner: Optional[VFProvisioner] = None,
    ) -> None:
        self._device = device
        self._lock_dir = Path(lock_dir)
        self._lock_timeout = lock_timeout
        self._inspector = DeviceCapabilityInspector(device)
        self._planner = RulePlanner()
        self._applier = RuleApplier(device, add_policy=add_policy)
        self._verifier = RuleVerifier(device)
        self._provisioner = provisioner or VFProvisioner(device)

    def _lock(self, interface: str) -> InterfaceLock:
        return InterfaceLock(interface, self._lock_dir, timeout=self._lock_timeout)

    # ------------------------------------------------------------------
    # Flow steering
    # ------------------------------------------------------------------
    def apply(self, policy: TrafficSplitPolicy) -> ReconciliationResult:
        """Converge the NIC rule table to ``policy`` and verify the outcome."""

        with self._lock(policy.interface):
            interface = self._inspector.inspect(policy.interface)
            result = ReconciliationResult(interface.name, warnings=list(interface.warnings))
            for warning in self._planner.validate(policy, interface):
                LOG.warning(warning)
                result.warnings.append(warning)
            desired = self._planner.rules_for(policy, interface)

            actual = self._device.list_rules(interface.name)
            self._applier.reconcile(interface, desired, actual, policy.scope, result)
            result.verdict = self._verifier.verify(desired, interface.name, policy.scope)

        LOG.info(
            "Applied %s ports %d-%d -> queue %d on %s: added=%d present=%d deleted=%d failed=%d",
            policy.protocol.value,
            policy.port_start,
            policy.port_end,
            policy.xdp_queue,
            policy.interface,
            result.added,
            result.already_present,
            result.deleted,
            result.failed,
        )
        return result

    def teardown(self, interface_name: str, scope: RuleScope) -> ReconciliationResult:
        """Delete every rule this system owns within ``scope``."""

        with self._lock(interface_name):
            interface = self._inspector.inspect(interface_name)
            result = ReconciliationResult(interface.name, warnings=list(interface.warnings))
            actual = self._device.list_rules(interface.name)
            owned = actual.owned(scope)
            if not owned:
                LOG.info("No flow rules to remove on %s", interface.name)
            else:
                LOG.info("Found %d rules on %s, removing", len(owned), interface.name)
            self._applier.reconcile(interface, RuleSet(), actual, scope, result)
            result.verdict = self._verifier.verify(RuleSet(), interface.name, scope)
        return result

    def status(self, interface_name: str, scope: Optional[RuleScope] = None) -> InterfaceStatus:
        interface = self._inspector.inspect(interface_name)
        return InterfaceStatus(
            interface=interface,
            rules=self._device.list_rules(interface_name),
            scope=scope,
        )

    # ------------------------------------------------------------------
    # SR-IOV
    # ------------------------------------------------------------------
    def provision_vfs(
        self,
        interface_name: str,
        count: int,
        *,
        mirror: Optional[Tuple[int, int]] = None,
        macs: Sequence[str] = (),
    ) -> VFSet:
        with self._lock(interface_name):
            interface = self._inspector.inspect(interface_name)
            return self._provisioner.enable_vfs(interface, count, mirror=mirror, macs=macs)

    def remove_vfs(self, interface_name: str) -> VFSet:
        with self._lock(interface_name):
            interface = self._inspector.inspect(interface_name)
            return self._provisioner.disable_vfs(interface)
