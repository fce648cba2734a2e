"""Read-only inspection of NIC capabilities."""

from __future__ import annotations

import logging
from typing import List

from .device import DeviceControl
from .exceptions import DeviceNotFound
from .model import Interface

LOG = logging.getLogger(__name__)

QUEUE_COUNT_UNKNOWN = "QueueCountUnknown"
MIN_STEERING_QUEUES = 2


class DeviceCapabilityInspector:
    """Build an :class:`Interface` snapshot from live device queries."""

    def __init__(self, device: DeviceControl) -> None:
        self._device = device

    def inspect(self, name: str) -> Interface:
        if not self._device.interface_exists(name):
            raise DeviceNotFound(name)

        warnings: List[str] = []
        driver = self._device.get_driver_info(name)

        queue_count = self._device.get_queue_count(name)
        if queue_count is None:
            warnings.append(
                f"{QUEUE_COUNT_UNKNOWN}: {name} does not report its queue count"
            )
        elif queue_count < MIN_STEERING_QUEUES:
            warnings.append(
                f"{name} has fewer than {MIN_STEERING_QUEUES} queues, "
                "flow steering may not work optimally"
            )

        ntuple = self._device.get_capability_flag(name, "ntuple")
        if ntuple is None:
            ntuple_supported = ntuple_enabled = False
            warnings.append(f"{name} does not report ntuple filter support")
        else:
            ntuple_enabled = ntuple.enabled
            ntuple_supported = ntuple.enabled or not ntuple.fixed

        max_vfs = self._device.get_sriov_total_vfs(name)
        sriov_supported = max_vfs is not None
        current_vfs = self._device.get_sriov_current_vfs(name) if sriov_supported else 0

        interface = Interface(
            name=name,
            driver=driver,
            queue_count=queue_count,
            ntuple_supported=ntuple_supported,
            ntuple_enabled=ntuple_enabled,
            sriov_supported=sriov_supported,
            max_vfs=max_vfs or 0,
            current_vfs=current_vfs,
            pci_address=self._device.get_pci_address(name),
            warnings=tuple(warnings),
        )
        for warning in warnings:
            LOG.warning(warning)
        LOG.debug("Inspected %s: %s", name, interface)
        return interface
