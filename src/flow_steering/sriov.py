"""SR-IOV virtual function provisioning.

VF creation is asynchronous: writing ``sriov_numvfs`` returns before the VF
netdevs exist, so :class:`VFProvisioner` polls (bounded, with exponential
backoff) until every requested VF has a name.  Lifecycle per interface::

    ABSENT -> ENABLING -> CREATED -> ACTIVATING -> ACTIVE
    ACTIVE -> DISABLING -> ABSENT
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .device import DeviceControl
from .exceptions import (
    CountExceedsMax,
    DeviceCommandError,
    DeviceNotFound,
    InvalidPolicy,
    OperationUnsupported,
    SRIOVUnsupported,
    VFMaterializationTimeout,
)
from .model import VF, CapabilityStatus, Interface, VFSet, VFState

LOG = logging.getLogger(__name__)


class VFPhase(Enum):
    ABSENT = "absent"
    ENABLING = "enabling"
    CREATED = "created"
    ACTIVATING = "activating"
    ACTIVE = "active"
    DISABLING = "disabling"


class VFProvisioner:
    def __init__(
        self,
        device: DeviceControl,
        *,
        poll_timeout: float = 10.0,
        poll_interval: float = 0.1,
        max_poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._device = device
        self._poll_timeout = poll_timeout
        self._poll_interval = poll_interval
        self._max_poll_interval = max_poll_interval
        self._sleep = sleep
        self._clock = clock

    def _phase(self, iface: str, phase: VFPhase) -> None:
        LOG.debug("SR-IOV %s: %s", iface, phase.value)

    # ------------------------------------------------------------------
    def enable_vfs(
        self,
        interface: Interface,
        count: int,
        *,
        mirror: Optional[Tuple[int, int]] = None,
        macs: Sequence[str] = (),
    ) -> VFSet:
        """Ensure exactly ``count`` VFs exist, are up and optionally mirrored."""

        name = interface.name
        if not interface.sriov_supported:
            raise SRIOVUnsupported(name)
        if count < 0:
            raise InvalidPolicy(f"VF count {count} is negative")
        if count > interface.max_vfs:
            raise CountExceedsMax(name, count, interface.max_vfs)
        if len(macs) > count:
            raise InvalidPolicy(f"{len(macs)} MAC addresses given for {count} VFs")
        if mirror is not None and not all(0 <= vf < count for vf in mirror):
            raise InvalidPolicy(f"mirror {mirror[0]}->{mirror[1]} refers to a missing VF")
        if count == 0:
            return self.disable_vfs(interface)

        current = self._device.get_sriov_current_vfs(name)
        if current == count:
            LOG.info("%s already has %d VFs", name, count)
        else:
            if current:
                self._phase(name, VFPhase.DISABLING)
                LOG.info("Disabling %d existing VFs on %s", current, name)
                self._device.set_sriov_num_vfs(name, 0)
            self._phase(name, VFPhase.ENABLING)
            LOG.info("Enabling %d virtual functions on %s", count, name)
            self._device.set_sriov_num_vfs(name, count)

        names = self._wait_for_vfs(name, count)
        self._phase(name, VFPhase.CREATED)

        warnings: List[str] = []
        self._phase(name, VFPhase.ACTIVATING)
        entries = tuple(
            self._activate(name, index, names[index], warnings) for index in range(count)
        )

        for index, mac in enumerate(macs):
            try:
                self._device.set_vf_mac(name, index, mac)
                LOG.info("VF %d of %s uses MAC %s", index, name, mac)
            except (DeviceCommandError, DeviceNotFound) as exc:
                warnings.append(f"failed to set MAC {mac} on VF {index}: {exc}")
                LOG.warning(warnings[-1])

        mirror_status = None
        if mirror is not None:
            mirror_status = self.mirror_to(interface, *mirror)
            if mirror_status is not CapabilityStatus.APPLIED:
                warnings.append(
                    f"VF mirroring {mirror[0]}->{mirror[1]} on {name}: {mirror_status.value}"
                )

        self._phase(name, VFPhase.ACTIVE)
        return VFSet(
            interface=name,
            requested_count=count,
            max_supported=interface.max_vfs,
            entries=entries,
            mirror=mirror_status,
            warnings=tuple(warnings),
        )

    def disable_vfs(self, interface: Interface) -> VFSet:
        name = interface.name
        current = self._device.get_sriov_current_vfs(name) if interface.sriov_supported else 0
        if current == 0:
            LOG.info("No VFs to remove on %s", name)
        else:
            self._phase(name, VFPhase.DISABLING)
            LOG.info("Disabling all %d VFs on %s", current, name)
            self._device.set_sriov_num_vfs(name, 0)
        self._phase(name, VFPhase.ABSENT)
        return VFSet(interface=name, requested_count=0, max_supported=interface.max_vfs)

    def mirror_to(self, interface: Interface, src_vf: int, dst_vf: int) -> CapabilityStatus:
        """Try to mirror ``src_vf`` to ``dst_vf``; not every NIC can."""

        try:
            self._device.set_vf_mirror(interface.name, src_vf, dst_vf)
        except OperationUnsupported:
            LOG.warning("VF mirroring not supported by %s", interface.name)
            return CapabilityStatus.UNSUPPORTED
        except DeviceCommandError as exc:
            LOG.warning("VF mirroring failed on %s: %s", interface.name, exc)
            return CapabilityStatus.ERROR
        LOG.info(
            "VF mirroring enabled on %s: VF%d mirrors to VF%d", interface.name, src_vf, dst_vf
        )
        return CapabilityStatus.APPLIED

    # ------------------------------------------------------------------
    def _wait_for_vfs(self, iface: str, count: int) -> Dict[int, str]:
        deadline = self._clock() + self._poll_timeout
        delay = self._poll_interval
        while True:
            found: Dict[int, str] = {}
            for index in range(count):
                names = self._device.list_vf_interface_names(iface, index)
                if names:
                    found[index] = names[0]
            missing = [index for index in range(count) if index not in found]
            if not missing:
                LOG.debug("VFs of %s materialised: %s", iface, found)
                return found

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise VFMaterializationTimeout(iface, missing, self._poll_timeout)
            LOG.debug("Waiting for VFs %s of %s", missing, iface)
            self._sleep(min(delay, remaining))
            delay = min(delay * 2, self._max_poll_interval)

    def _activate(self, iface: str, index: int, vf_name: str, warnings: List[str]) -> VF:
        # udev may have renamed the netdev since it was first seen
        current = self._device.list_vf_interface_names(iface, index)
        if current and current[0] != vf_name:
            LOG.debug("VF %d of %s renamed %s -> %s", index, iface, vf_name, current[0])
            vf_name = current[0]
        try:
            self._device.set_interface_up(vf_name)
        except (DeviceCommandError, DeviceNotFound) as exc:
            warnings.append(f"failed to bring up {vf_name}: {exc}")
            LOG.warning(warnings[-1])
            return VF(index=index, name=vf_name, state=VFState.DOWN)
        LOG.info("Brought up %s", vf_name)
        return VF(index=index, name=vf_name, state=VFState.UP)
