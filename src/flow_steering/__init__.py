"""Hardware flow steering for zero-copy receive queues.

This package configures a NIC so that a contiguous UDP destination-port range
is classified in hardware onto one dedicated receive queue (the one an AF_XDP
consumer binds to) while everything else keeps flowing through the kernel
queues.  It also provisions SR-IOV virtual functions for mirroring.

The entry point is :class:`flow_steering.orchestrator.ReconciliationOrchestrator`
which sequences:

* inspecting the NIC (:mod:`flow_steering.inspector`);
* planning one ntuple rule per port (:mod:`flow_steering.planner`);
* diffing and applying against the live rule table (:mod:`flow_steering.applier`);
* re-reading the table to verify (:mod:`flow_steering.verifier`); and
* enabling/disabling VFs (:mod:`flow_steering.sriov`).

All device access goes through :class:`flow_steering.device.DeviceControl` so
the engine can be exercised in tests without touching real hardware.
"""

from .orchestrator import ReconciliationOrchestrator  # noqa: F401

__all__ = ["ReconciliationOrchestrator"]
