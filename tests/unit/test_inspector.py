import pytest
from fakes import FakeDevice

from flow_steering.device import FeatureFlag
from flow_steering.exceptions import DeviceNotFound
from flow_steering.inspector import QUEUE_COUNT_UNKNOWN, DeviceCapabilityInspector


def test_inspect_reports_capabilities():
    interface = DeviceCapabilityInspector(FakeDevice()).inspect("eth0")

    assert interface.driver == "mlx5_core"
    assert interface.queue_count == 8
    assert interface.ntuple_supported and interface.ntuple_enabled
    assert interface.sriov_supported
    assert interface.max_vfs == 8
    assert interface.pci_address == "0000:c1:00.1"
    assert interface.warnings == ()


def test_inspect_missing_interface():
    with pytest.raises(DeviceNotFound):
        DeviceCapabilityInspector(FakeDevice()).inspect("eth9")


def test_unknown_queue_count_warns():
    interface = DeviceCapabilityInspector(FakeDevice(queue_count=None)).inspect("eth0")

    assert interface.queue_count is None
    assert interface.warnings[0].startswith(QUEUE_COUNT_UNKNOWN)


def test_single_queue_warns():
    interface = DeviceCapabilityInspector(FakeDevice(queue_count=1)).inspect("eth0")

    assert len(interface.warnings) == 1


def test_fixed_off_ntuple_is_unsupported():
    device = FakeDevice(ntuple=FeatureFlag(enabled=False, fixed=True), sriov_total=None)

    interface = DeviceCapabilityInspector(device).inspect("eth0")

    assert not interface.ntuple_supported
    assert not interface.sriov_supported
    assert interface.max_vfs == 0


def test_missing_ntuple_flag_warns():
    interface = DeviceCapabilityInspector(FakeDevice(ntuple=None)).inspect("eth0")

    assert not interface.ntuple_supported
    assert len(interface.warnings) == 1
