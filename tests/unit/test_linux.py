import subprocess

import pyroute2
import pytest

from flow_steering import linux
from flow_steering.exceptions import (
    DeviceCommandError,
    DeviceNotFound,
    OperationUnsupported,
    RuleRejected,
    RuleTableExhausted,
)
from flow_steering.inspector import DeviceCapabilityInspector
from flow_steering.linux import (
    LinuxDevice,
    parse_added_rule_id,
    parse_channels,
    parse_driver_info,
    parse_features,
    parse_rules,
)
from flow_steering.model import FlowRule, Protocol

ETHTOOL_I = """driver: mlx5_core
version: 6.8.0
firmware-version: 22.39.1002 (MT_0000000359)
bus-info: 0000:c1:00.1
"""

ETHTOOL_L = """Channel parameters for enp193s0f1np1:
Pre-set maximums:
RX:		n/a
TX:		n/a
Other:		n/a
Combined:	63
Current hardware settings:
RX:		n/a
TX:		n/a
Other:		n/a
Combined:	8
"""

ETHTOOL_K = """Features for enp193s0f1np1:
rx-checksumming: on
ntuple-filters: off
receive-hashing: on
highdma: on [fixed]
"""

ETHTOOL_N = """8 RX rings available
Total 3 rules

Filter: 1023
	Rule Type: UDP over IPv4
	Src IP addr: 0.0.0.0 mask: 255.255.255.255
	Dest IP addr: 0.0.0.0 mask: 255.255.255.255
	TOS: 0x0 mask: 0xff
	Src port: 0 mask: 0xffff
	Dest port: 8000 mask: 0x0
	Action: Direct to queue 0

Filter: 1022
	Rule Type: UDP over IPv4
	Src IP addr: 10.0.0.1 mask: 0.0.0.0
	Dest IP addr: 0.0.0.0 mask: 255.255.255.255
	TOS: 0x0 mask: 0xff
	Src port: 0 mask: 0xffff
	Dest port: 8001 mask: 0x0
	Action: Direct to queue 0

Filter: 1021
	Rule Type: TCP over IPv4
	Src IP addr: 0.0.0.0 mask: 255.255.255.255
	Dest IP addr: 0.0.0.0 mask: 255.255.255.255
	TOS: 0x0 mask: 0xff
	Src port: 0 mask: 0xffff
	Dest port: 443 mask: 0x0
	Action: Direct to queue 3
"""


# ----------------------------------------------------------------------
# parsers
# ----------------------------------------------------------------------
def test_parse_driver_info():
    assert parse_driver_info(ETHTOOL_I) == "mlx5_core"
    assert parse_driver_info("") == "unknown"


def test_parse_channels_uses_current_settings():
    assert parse_channels(ETHTOOL_L) == 8


def test_parse_channels_falls_back_to_rx():
    text = "Current hardware settings:\nRX:\t\t4\nTX:\t\t4\nCombined:\tn/a\n"

    assert parse_channels(text) == 4


def test_parse_channels_unknown():
    assert parse_channels("Current hardware settings:\nRX:\tn/a\nCombined:\tn/a\n") is None


def test_parse_features():
    features = parse_features(ETHTOOL_K)

    assert not features["ntuple-filters"].enabled
    assert not features["ntuple-filters"].fixed
    assert features["highdma"].enabled and features["highdma"].fixed


def test_parse_rules():
    table = parse_rules(ETHTOOL_N)
    rules = {rule.rule_id: rule for rule in table}

    assert len(table) == 3
    assert rules[1023].key == (Protocol.UDP, 8000)
    assert rules[1023].queue == 0
    assert rules[1023].exact
    # source address constrained, so not one of ours
    assert not rules[1022].exact
    assert rules[1021].protocol is Protocol.TCP
    assert rules[1021].queue == 3


def test_parse_rules_empty_table():
    assert len(parse_rules("8 RX rings available\nTotal 0 rules\n")) == 0


def test_parse_added_rule_id():
    assert parse_added_rule_id("Added rule with ID 1023\n") == 1023
    assert parse_added_rule_id("") is None


# ----------------------------------------------------------------------
# LinuxDevice
# ----------------------------------------------------------------------
class FakeRunner:
    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    def __call__(self, cmd, timeout):
        self.calls.append(list(cmd))
        for prefix, (code, stdout, stderr) in self.responses.items():
            if " ".join(cmd).startswith(prefix):
                return subprocess.CompletedProcess(list(cmd), code, stdout, stderr)
        return subprocess.CompletedProcess(list(cmd), 0, "", "")


def build_sysfs(tmp_path, total_vfs="8", num_vfs="0"):
    pci = tmp_path / "devices" / "0000:c1:00.1"
    pci.mkdir(parents=True)
    (pci / "sriov_totalvfs").write_text(f"{total_vfs}\n")
    (pci / "sriov_numvfs").write_text(f"{num_vfs}\n")
    net = tmp_path / "net" / "eth0"
    net.mkdir(parents=True)
    (net / "device").symlink_to(pci)
    return tmp_path / "net", pci


def build_device(tmp_path, responses=None):
    sysfs, pci = build_sysfs(tmp_path)
    runner = FakeRunner(responses)
    return LinuxDevice(sysfs_root=sysfs, runner=runner), runner, pci


def test_queries_through_ethtool(tmp_path):
    device, runner, _ = build_device(
        tmp_path,
        {
            "ethtool -i": (0, ETHTOOL_I, ""),
            "ethtool -l": (0, ETHTOOL_L, ""),
            "ethtool -k": (0, ETHTOOL_K, ""),
            "ethtool -n": (0, ETHTOOL_N, ""),
        },
    )

    assert device.interface_exists("eth0")
    assert not device.interface_exists("eth1")
    assert device.get_driver_info("eth0") == "mlx5_core"
    assert device.get_queue_count("eth0") == 8
    assert device.get_capability_flag("eth0", "ntuple").enabled is False
    assert len(device.list_rules("eth0")) == 3


def test_queue_count_unknown_when_channels_unsupported(tmp_path):
    device, _, _ = build_device(
        tmp_path, {"ethtool -l": (95, "", "netlink error: Operation not supported")}
    )

    assert device.get_queue_count("eth0") is None


def test_list_rules_unsupported_is_empty(tmp_path):
    device, _, _ = build_device(
        tmp_path,
        {"ethtool -n": (95, "", "rxclass: Cannot get RX class rule count: Operation not supported")},
    )

    assert len(device.list_rules("eth0")) == 0


def test_add_rule_builds_command(tmp_path):
    device, runner, _ = build_device(
        tmp_path, {"ethtool -N eth0 flow-type": (0, "Added rule with ID 1023\n", "")}
    )

    rule_id = device.add_rule("eth0", FlowRule(Protocol.UDP, 8000, 0))

    assert rule_id == 1023
    assert runner.calls[-1] == [
        "ethtool", "-N", "eth0", "flow-type", "udp4", "dst-port", "8000", "action", "0",
    ]


def test_add_rule_table_full(tmp_path):
    device, _, _ = build_device(
        tmp_path,
        {"ethtool -N": (1, "", "rmgr: Cannot insert RX class rule: No space left on device")},
    )

    with pytest.raises(RuleTableExhausted) as excinfo:
        device.add_rule("eth0", FlowRule(Protocol.UDP, 8000, 0))

    assert excinfo.value.reason == "RuleTableExhausted"


def test_add_rule_rejected(tmp_path):
    device, _, _ = build_device(
        tmp_path, {"ethtool -N": (1, "", "rmgr: Cannot insert RX class rule: Invalid argument")}
    )

    with pytest.raises(RuleRejected):
        device.add_rule("eth0", FlowRule(Protocol.UDP, 8000, 0))


def test_delete_rule(tmp_path):
    device, runner, _ = build_device(tmp_path)

    device.delete_rule("eth0", 1023)

    assert runner.calls[-1] == ["ethtool", "-N", "eth0", "delete", "1023"]


def test_set_feature_unsupported(tmp_path):
    device, _, _ = build_device(
        tmp_path, {"ethtool -K": (1, "", "Cannot change ntuple-filters\nOperation not supported")}
    )

    with pytest.raises(OperationUnsupported):
        device.set_capability_flag("eth0", "ntuple", True)


def test_delete_rule_failure(tmp_path):
    device, _, _ = build_device(
        tmp_path, {"ethtool -N": (1, "", "rmgr: Cannot delete RX class rule: Invalid argument")}
    )

    with pytest.raises(DeviceCommandError):
        device.delete_rule("eth0", 7)


def test_sriov_sysfs(tmp_path):
    device, _, pci = build_device(tmp_path)
    (pci / "virtfn0" / "net" / "eth0v0").mkdir(parents=True)

    assert device.get_pci_address("eth0") == "0000:c1:00.1"
    assert device.get_sriov_total_vfs("eth0") == 8
    assert device.get_sriov_current_vfs("eth0") == 0

    device.set_sriov_num_vfs("eth0", 2)

    assert (pci / "sriov_numvfs").read_text() == "2\n"
    assert device.list_vf_interface_names("eth0", 0) == ["eth0v0"]
    assert device.list_vf_interface_names("eth0", 1) == []


def test_sriov_absent(tmp_path):
    device, _, pci = build_device(tmp_path)
    (pci / "sriov_totalvfs").unlink()

    assert device.get_sriov_total_vfs("eth0") is None


def test_mirror_not_supported(tmp_path):
    device, runner, _ = build_device(
        tmp_path,
        {"ip link set": (255, "", 'Error: either "vf" is duplicate, or "mirror" is a garbage.')},
    )

    with pytest.raises(OperationUnsupported):
        device.set_vf_mirror("eth0", 0, 1)

    assert runner.calls[-1] == ["ip", "link", "set", "eth0", "vf", "0", "mirror", "1"]


class FakeIPRoute:
    links = {"eth0": 2, "eth0v0": 7}
    calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def link_lookup(self, ifname):
        return [self.links[ifname]] if ifname in self.links else []

    def link(self, command, **kwargs):
        self.calls.append((command, kwargs))


@pytest.fixture
def ipr(monkeypatch):
    FakeIPRoute.calls = []
    monkeypatch.setattr(linux.pyroute2, "IPRoute", FakeIPRoute)
    return FakeIPRoute


def test_set_interface_up(tmp_path, ipr):
    device, _, _ = build_device(tmp_path)

    device.set_interface_up("eth0v0")

    assert ipr.calls == [("set", {"index": 7, "state": "up"})]


def test_set_vf_mac(tmp_path, ipr):
    device, _, _ = build_device(tmp_path)

    device.set_vf_mac("eth0", 1, "02:00:00:00:00:02")

    assert ipr.calls == [("set", {"index": 2, "vf": {"vf": 1, "mac": "02:00:00:00:00:02"}})]


def test_set_interface_up_missing_link(tmp_path, ipr):
    device, _, _ = build_device(tmp_path)

    with pytest.raises(DeviceNotFound):
        device.set_interface_up("eth9")


def test_netlink_error_becomes_command_error(tmp_path, ipr, monkeypatch):
    def refuse(self, command, **kwargs):
        raise pyroute2.NetlinkError(1, "Operation not permitted")

    monkeypatch.setattr(FakeIPRoute, "link", refuse)
    device, _, _ = build_device(tmp_path)

    with pytest.raises(DeviceCommandError) as excinfo:
        device.set_interface_up("eth0v0")

    assert excinfo.value.returncode == 1


def test_features_unsupported_reports_no_flag(tmp_path):
    device, _, _ = build_device(
        tmp_path, {"ethtool -k": (95, "", "Cannot get device features: Operation not supported")}
    )

    assert device.get_capability_flag("eth0", "ntuple") is None


def test_inspect_survives_unsupported_features(tmp_path):
    device, _, _ = build_device(
        tmp_path,
        {
            "ethtool -i": (0, ETHTOOL_I, ""),
            "ethtool -l": (0, ETHTOOL_L, ""),
            "ethtool -k": (95, "", "Cannot get device features: Operation not supported"),
        },
    )

    interface = DeviceCapabilityInspector(device).inspect("eth0")

    assert not interface.ntuple_supported
    assert any("ntuple" in warning for warning in interface.warnings)
