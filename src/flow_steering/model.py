"""Data structures shared by the flow-steering components.

Everything here is an immutable value object.  Desired state (``RuleSet``) is
recomputed from a :class:`TrafficSplitPolicy` on every run and actual state
(``AppliedRuleTable``, ``Interface``) is re-read from the device, so nothing in
this module is meant to outlive a single reconciliation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

MAX_PORT = 65535


class Protocol(Enum):
    """Transport protocols a flow rule can match on.

    Only UDP is ever planned today.  TCP is kept so that rules already present
    on the device can be represented faithfully.
    """

    UDP = "udp"
    TCP = "tcp"

    @property
    def flow_type(self) -> str:
        return f"{self.value}4"


RuleKey = Tuple[Protocol, int]


class CapabilityStatus(Enum):
    """Outcome of an opportunistic, capability-gated device operation."""

    APPLIED = "applied"
    UNSUPPORTED = "unsupported"
    ERROR = "error"


@dataclass(frozen=True)
class Interface:
    """Snapshot of a NIC as reported by the device at inspection time."""

    name: str
    driver: str
    queue_count: Optional[int]
    ntuple_supported: bool
    ntuple_enabled: bool
    sriov_supported: bool
    max_vfs: int = 0
    current_vfs: int = 0
    pci_address: Optional[str] = None
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FlowRule:
    protocol: Protocol
    dest_port: int
    queue: int

    @property
    def key(self) -> RuleKey:
        return self.protocol, self.dest_port


@dataclass(frozen=True)
class RuleSet:
    """Ordered, duplicate-free collection of desired rules, indexed by key."""

    rules: Tuple[FlowRule, ...] = ()
    _index: Dict[RuleKey, FlowRule] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        for rule in self.rules:
            if rule.key in self._index:
                raise ValueError(
                    f"duplicate rule for {rule.protocol.value} port {rule.dest_port}"
                )
            self._index[rule.key] = rule

    def __iter__(self) -> Iterator[FlowRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def keys(self) -> List[RuleKey]:
        return [rule.key for rule in self.rules]

    def ports(self) -> List[int]:
        return [rule.dest_port for rule in self.rules]

    def get(self, key: RuleKey) -> Optional[FlowRule]:
        return self._index.get(key)


@dataclass(frozen=True)
class RuleScope:
    """The key space owned by this system on a given interface.

    Rules outside the scope belong to somebody else and must never be deleted.
    """

    protocol: Protocol
    port_start: int
    port_end: int

    def contains(self, rule: "AppliedRule") -> bool:
        return (
            rule.exact
            and rule.protocol is self.protocol
            and rule.dest_port is not None
            and self.port_start <= rule.dest_port <= self.port_end
        )


@dataclass(frozen=True)
class AppliedRule:
    """A rule as reported by the device, carrying its device-local id.

    ``exact`` is only true for rules that match on the destination port alone
    and direct traffic to a queue; anything else is foreign by construction.
    """

    rule_id: int
    protocol: Optional[Protocol]
    dest_port: Optional[int]
    queue: Optional[int]
    exact: bool = True

    @property
    def key(self) -> Optional[RuleKey]:
        if self.protocol is None or self.dest_port is None:
            return None
        return self.protocol, self.dest_port


@dataclass(frozen=True)
class AppliedRuleTable:
    rules: Tuple[AppliedRule, ...] = ()

    def __iter__(self) -> Iterator[AppliedRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def owned(self, scope: RuleScope) -> List[AppliedRule]:
        return [rule for rule in self.rules if scope.contains(rule)]

    def by_key(self, scope: RuleScope) -> Dict[RuleKey, List[AppliedRule]]:
        grouped: Dict[RuleKey, List[AppliedRule]] = {}
        for rule in self.owned(scope):
            grouped.setdefault(rule.key, []).append(rule)
        return grouped


@dataclass(frozen=True)
class TrafficSplitPolicy:
    """Steer ``[port_start, port_end]`` to ``xdp_queue`` on ``interface``."""

    interface: str
    xdp_queue: int
    port_start: int
    port_end: int
    protocol: Protocol = Protocol.UDP

    @property
    def scope(self) -> RuleScope:
        return RuleScope(self.protocol, self.port_start, self.port_end)


class VFState(Enum):
    DOWN = "down"
    UP = "up"


@dataclass(frozen=True)
class VF:
    index: int
    name: str
    state: VFState = VFState.DOWN


@dataclass(frozen=True)
class VFSet:
    interface: str
    requested_count: int
    max_supported: int
    entries: Tuple[VF, ...] = ()
    mirror: Optional[CapabilityStatus] = None
    warnings: Tuple[str, ...] = ()

    def names(self) -> List[str]:
        return [vf.name for vf in self.entries]

    def by_index(self, index: int) -> Optional[VF]:
        return next((vf for vf in self.entries if vf.index == index), None)
