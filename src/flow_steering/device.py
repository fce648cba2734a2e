"""Abstract control surface of a NIC as consumed by the engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from .model import AppliedRuleTable, FlowRule


@dataclass(frozen=True)
class FeatureFlag:
    """State of a driver feature such as ``ntuple-filters``.

    ``fixed`` means the driver does not allow the value to be changed.
    """

    enabled: bool
    fixed: bool = False


class DeviceControl(ABC):
    """Typed query/mutate operations against one host's NICs.

    Every call takes the interface name explicitly; implementations must not
    cache device state between calls.
    """

    @abstractmethod
    def interface_exists(self, iface: str) -> bool:
        """Return ``True`` when ``iface`` is present on the host."""

    @abstractmethod
    def get_driver_info(self, iface: str) -> str:
        """Return the kernel driver name bound to ``iface``."""

    @abstractmethod
    def get_queue_count(self, iface: str) -> Optional[int]:
        """Return the active receive queue count or ``None`` if unreported."""

    @abstractmethod
    def get_capability_flag(self, iface: str, name: str) -> Optional[FeatureFlag]:
        """Return the state of feature ``name`` or ``None`` if not reported."""

    @abstractmethod
    def set_capability_flag(self, iface: str, name: str, enabled: bool) -> None:
        """Toggle feature ``name``."""

    @abstractmethod
    def list_rules(self, iface: str) -> AppliedRuleTable:
        """Return the classification rules currently installed."""

    @abstractmethod
    def add_rule(self, iface: str, rule: FlowRule) -> Optional[int]:
        """Install ``rule`` and return the device-assigned id when reported."""

    @abstractmethod
    def delete_rule(self, iface: str, rule_id: int) -> None:
        """Remove the rule with device-local id ``rule_id``."""

    @abstractmethod
    def get_pci_address(self, iface: str) -> Optional[str]:
        """Return the PCI address backing ``iface`` if it has one."""

    @abstractmethod
    def get_sriov_total_vfs(self, iface: str) -> Optional[int]:
        """Return the VF limit or ``None`` when SR-IOV is not available."""

    @abstractmethod
    def get_sriov_current_vfs(self, iface: str) -> int:
        """Return the number of VFs currently enabled."""

    @abstractmethod
    def set_sriov_num_vfs(self, iface: str, count: int) -> None:
        """Request ``count`` VFs (0 destroys all of them)."""

    @abstractmethod
    def list_vf_interface_names(self, iface: str, vf_index: int) -> List[str]:
        """Return netdev names of VF ``vf_index``; empty until materialised."""

    @abstractmethod
    def set_interface_up(self, name: str) -> None:
        """Bring ``name`` administratively up."""

    @abstractmethod
    def set_vf_mac(self, iface: str, vf_index: int, mac: str) -> None:
        """Assign ``mac`` to VF ``vf_index`` of ``iface``."""

    @abstractmethod
    def set_vf_mirror(self, iface: str, src_vf: int, dst_vf: int) -> None:
        """Mirror traffic of ``src_vf`` to ``dst_vf``."""
