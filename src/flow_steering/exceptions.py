"""Error taxonomy for the flow-steering engine."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence


class FlowSteeringError(Exception):
    """Base class for every error raised by this package."""


class DeviceNotFound(FlowSteeringError):
    def __init__(self, interface: str) -> None:
        super().__init__(f"interface '{interface}' not found")
        self.interface = interface


class InvalidPolicy(FlowSteeringError):
    """The requested traffic-split policy cannot be realised."""


class CapabilityUnsupported(FlowSteeringError):
    def __init__(self, interface: str, capability: str, message: str = "") -> None:
        super().__init__(
            message or f"interface '{interface}' does not support {capability}"
        )
        self.interface = interface
        self.capability = capability


class SRIOVUnsupported(CapabilityUnsupported):
    def __init__(self, interface: str) -> None:
        super().__init__(interface, "sriov", f"NIC '{interface}' does not support SR-IOV")


class CountExceedsMax(FlowSteeringError):
    def __init__(self, interface: str, requested: int, maximum: int) -> None:
        super().__init__(
            f"requested {requested} VFs but '{interface}' only supports {maximum}"
        )
        self.interface = interface
        self.requested = requested
        self.maximum = maximum


class DeviceCommunicationError(FlowSteeringError):
    """The control surface itself could not be reached."""


class DeviceCommandError(FlowSteeringError):
    """The control surface answered but refused the command."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stderr: str = "",
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"{' '.join(self.command)} failed (rc={returncode}): {self.stderr}"
        )

    @property
    def reason(self) -> str:
        return type(self).__name__


class RuleTableExhausted(DeviceCommandError):
    """The NIC has no room left in its classification rule table."""


class RuleRejected(DeviceCommandError):
    """The NIC refused a single rule for a reason other than table space."""


class OperationUnsupported(DeviceCommandError):
    """The driver does not implement the requested operation."""


class VFMaterializationTimeout(FlowSteeringError):
    def __init__(self, interface: str, missing: Iterable[int], timeout: float) -> None:
        self.interface = interface
        self.missing = sorted(missing)
        self.timeout = timeout
        super().__init__(
            f"VFs {self.missing} of '{interface}' did not appear within {timeout:.1f}s"
        )


class PartialVerificationMismatch(FlowSteeringError):
    def __init__(
        self,
        interface: str,
        missing: Iterable[int],
        unexpected: Iterable[int],
    ) -> None:
        self.interface = interface
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        super().__init__(
            f"rule table of '{interface}' does not match: "
            f"missing={self.missing} unexpected={self.unexpected}"
        )


class LockTimeout(FlowSteeringError):
    def __init__(self, interface: str, timeout: Optional[float]) -> None:
        self.interface = interface
        self.timeout = timeout
        super().__init__(
            f"another reconciliation holds the lock for '{interface}' "
            f"(waited {timeout or 0:.1f}s)"
        )
