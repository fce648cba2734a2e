"""Translate a traffic-split policy into the rules the NIC must carry."""

from __future__ import annotations

import logging
from typing import List

from .exceptions import InvalidPolicy
from .model import MAX_PORT, FlowRule, Interface, Protocol, RuleSet, TrafficSplitPolicy

LOG = logging.getLogger(__name__)


class RulePlanner:
    """Compute a deterministic :class:`RuleSet` for a policy.

    One rule is planned per destination port, in ascending port order, all
    directed at the policy's queue.  The output depends only on the policy and
    the inspected interface, so planning twice yields identical rule sets.
    """

    def validate(self, policy: TrafficSplitPolicy, interface: Interface) -> List[str]:
        """Raise :class:`InvalidPolicy` or return non-fatal warnings."""

        if policy.protocol is not Protocol.UDP:
            raise InvalidPolicy(
                f"{policy.protocol.value} steering is not supported, only udp"
            )
        for port in (policy.port_start, policy.port_end):
            if not 0 <= port <= MAX_PORT:
                raise InvalidPolicy(f"port {port} outside 0-{MAX_PORT}")
        if policy.port_start > policy.port_end:
            raise InvalidPolicy(
                f"empty port range {policy.port_start}-{policy.port_end}"
            )
        if policy.xdp_queue < 0:
            raise InvalidPolicy(f"queue index {policy.xdp_queue} is negative")

        warnings: List[str] = []
        if interface.queue_count is None:
            warnings.append(
                f"cannot check queue {policy.xdp_queue} against the unknown "
                f"queue count of {interface.name}"
            )
        elif policy.xdp_queue >= interface.queue_count:
            raise InvalidPolicy(
                f"queue {policy.xdp_queue} does not exist on {interface.name} "
                f"({interface.queue_count} queues)"
            )
        return warnings

    def plan(self, policy: TrafficSplitPolicy, interface: Interface) -> RuleSet:
        for warning in self.validate(policy, interface):
            LOG.warning(warning)
        return self.rules_for(policy, interface)

    def rules_for(self, policy: TrafficSplitPolicy, interface: Interface) -> RuleSet:
        """Build the rule set for a policy that already passed :meth:`validate`."""

        rules = tuple(
            FlowRule(protocol=policy.protocol, dest_port=port, queue=policy.xdp_queue)
            for port in range(policy.port_start, policy.port_end + 1)
        )
        LOG.debug(
            "Planned %d %s rules for %s -> queue %d",
            len(rules),
            policy.protocol.value,
            interface.name,
            policy.xdp_queue,
        )
        return RuleSet(rules)
