"""Linux implementation of :class:`~flow_steering.device.DeviceControl`.

Rule tables and driver features are driven through the ``ethtool`` binary,
SR-IOV through sysfs and link state through netlink (pyroute2).  The textual
``ethtool`` output is only ever interpreted by the ``parse_*`` helpers in this
module; the rest of the package sees typed values.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pyroute2

from .device import DeviceControl, FeatureFlag
from .exceptions import (
    DeviceCommandError,
    DeviceCommunicationError,
    DeviceNotFound,
    OperationUnsupported,
    RuleRejected,
    RuleTableExhausted,
)
from .model import AppliedRule, AppliedRuleTable, FlowRule, Protocol

LOG = logging.getLogger(__name__)

SYSFS_NET_PATH = Path("/sys/class/net")

# ethtool -k reports features by their long names
FEATURE_NAMES = {
    "ntuple": "ntuple-filters",
}

RULE_TYPES = {
    "UDP over IPv4": Protocol.UDP,
    "TCP over IPv4": Protocol.TCP,
}

# Match fields other than the destination port; a rule is only "exact" when
# all of them are wildcarded.
WILDCARD_FIELDS = (
    "Src IP addr",
    "Dest IP addr",
    "TOS",
    "Src port",
    "VLAN EtherType",
    "VLAN",
    "User-defined",
    "Dest MAC addr",
)

UNSUPPORTED_MARKERS = (
    "Operation not supported",
    "not supported",
    "is a garbage",
)

_ADDED_RULE_RE = re.compile(r"Added rule with ID (\d+)")
_FIELD_RE = re.compile(r"^\s*([^:]+):\s*(\S+)(?:\s+mask:\s*(\S+))?")
_QUEUE_RE = re.compile(r"Direct to queue (\d+)")

Runner = Callable[[Sequence[str], float], "subprocess.CompletedProcess[str]"]


def run(cmd: Sequence[str], timeout: float) -> subprocess.CompletedProcess[str]:
    LOG.debug("Executing: %s", " ".join(cmd))
    try:
        return subprocess.run(
            list(cmd), check=False, text=True, capture_output=True, timeout=timeout
        )
    except FileNotFoundError as exc:
        raise DeviceCommunicationError(f"{cmd[0]} is not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise DeviceCommunicationError(
            f"{' '.join(cmd)} did not answer within {timeout}s"
        ) from exc


# ----------------------------------------------------------------------
# ethtool output parsers
# ----------------------------------------------------------------------
def parse_driver_info(text: str) -> str:
    for line in text.splitlines():
        if line.startswith("driver:"):
            return line.split(":", 1)[1].strip()
    return "unknown"


def parse_channels(text: str) -> Optional[int]:
    """Return the *current* combined (or RX) channel count from ``ethtool -l``."""

    current: Dict[str, str] = {}
    in_current = False
    for line in text.splitlines():
        if line.startswith("Current hardware settings"):
            in_current = True
            continue
        if in_current and ":" in line:
            name, value = line.split(":", 1)
            current[name.strip()] = value.strip()

    for name in ("Combined", "RX"):
        value = current.get(name, "")
        if value.isdigit() and int(value) > 0:
            return int(value)
    return None


def parse_features(text: str) -> Dict[str, FeatureFlag]:
    features: Dict[str, FeatureFlag] = {}
    for line in text.splitlines():
        if ":" not in line or line.startswith("Features for"):
            continue
        name, value = line.split(":", 1)
        value = value.strip()
        if not value:
            continue
        features[name.strip()] = FeatureFlag(
            enabled=value.split()[0] == "on",
            fixed="[fixed]" in value,
        )
    return features


def _is_wildcard(mask: str) -> bool:
    if "." in mask:
        return all(part == "255" for part in mask.split("."))
    digits = mask.lower()
    if digits.startswith("0x"):
        digits = digits[2:]
    digits = digits.replace(":", "")
    return bool(digits) and set(digits) == {"f"}


def _parse_rule_block(rule_id: int, lines: List[str]) -> AppliedRule:
    protocol: Optional[Protocol] = None
    dest_port: Optional[int] = None
    queue: Optional[int] = None
    exact = True

    for line in lines:
        stripped = line.strip()
        if stripped.startswith("Rule Type:"):
            protocol = RULE_TYPES.get(stripped.split(":", 1)[1].strip())
            continue
        if stripped.startswith("Action:"):
            match = _QUEUE_RE.search(stripped)
            queue = int(match.group(1)) if match else None
            continue
        if stripped.startswith("RSS Context"):
            exact = False
            continue

        match = _FIELD_RE.match(stripped)
        if not match:
            continue
        name, value, mask = match.groups()
        name = name.strip()
        if name == "Dest port":
            if mask is None or int(mask, 0) == 0:
                dest_port = int(value)
            else:
                exact = False
        elif name in WILDCARD_FIELDS and mask is not None and not _is_wildcard(mask):
            exact = False

    if protocol is None or dest_port is None or queue is None:
        exact = False
    return AppliedRule(
        rule_id=rule_id,
        protocol=protocol,
        dest_port=dest_port,
        queue=queue,
        exact=exact,
    )


def parse_rules(text: str) -> AppliedRuleTable:
    """Parse the listing produced by ``ethtool -n <iface>``."""

    rules: List[AppliedRule] = []
    current_id: Optional[int] = None
    block: List[str] = []
    for line in text.splitlines():
        if line.startswith("Filter:"):
            if current_id is not None:
                rules.append(_parse_rule_block(current_id, block))
            current_id = int(line.split(":", 1)[1])
            block = []
        elif current_id is not None:
            block.append(line)
    if current_id is not None:
        rules.append(_parse_rule_block(current_id, block))
    return AppliedRuleTable(tuple(rules))


def parse_added_rule_id(text: str) -> Optional[int]:
    match = _ADDED_RULE_RE.search(text)
    return int(match.group(1)) if match else None


def _unsupported(stderr: str) -> bool:
    return any(marker in stderr for marker in UNSUPPORTED_MARKERS)


class LinuxDevice(DeviceControl):
    """Drive NICs of the local host."""

    def __init__(
        self,
        *,
        ethtool: str = "ethtool",
        ip: str = "ip",
        sysfs_root: Path = SYSFS_NET_PATH,
        command_timeout: float = 10.0,
        runner: Runner = run,
    ) -> None:
        self._ethtool = ethtool
        self._ip = ip
        self._sysfs = Path(sysfs_root)
        self._timeout = command_timeout
        self._runner = runner

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _exec(self, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return self._runner(cmd, self._timeout)

    def _check(self, cmd: Sequence[str]) -> str:
        result = self._exec(cmd)
        if result.returncode != 0:
            if _unsupported(result.stderr):
                raise OperationUnsupported(cmd, result.returncode, result.stderr)
            raise DeviceCommandError(cmd, result.returncode, result.stderr)
        return result.stdout

    def _device_dir(self, iface: str) -> Path:
        return self._sysfs / iface / "device"

    def _read_int(self, path: Path) -> Optional[int]:
        try:
            return int(path.read_text().strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise DeviceCommunicationError(f"cannot read {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # identity and features
    # ------------------------------------------------------------------
    def interface_exists(self, iface: str) -> bool:
        return (self._sysfs / iface).is_dir()

    def get_driver_info(self, iface: str) -> str:
        return parse_driver_info(self._check([self._ethtool, "-i", iface]))

    def get_queue_count(self, iface: str) -> Optional[int]:
        result = self._exec([self._ethtool, "-l", iface])
        if result.returncode != 0:
            LOG.debug("ethtool -l %s failed: %s", iface, result.stderr.strip())
            return None
        return parse_channels(result.stdout)

    def get_capability_flag(self, iface: str, name: str) -> Optional[FeatureFlag]:
        try:
            output = self._check([self._ethtool, "-k", iface])
        except OperationUnsupported:
            LOG.debug("%s does not report driver features", iface)
            return None
        features = parse_features(output)
        return features.get(FEATURE_NAMES.get(name, name))

    def set_capability_flag(self, iface: str, name: str, enabled: bool) -> None:
        self._check([self._ethtool, "-K", iface, name, "on" if enabled else "off"])

    # ------------------------------------------------------------------
    # rule table
    # ------------------------------------------------------------------
    def list_rules(self, iface: str) -> AppliedRuleTable:
        cmd = [self._ethtool, "-n", iface]
        result = self._exec(cmd)
        if result.returncode != 0:
            if _unsupported(result.stderr):
                LOG.debug("%s does not report ntuple rules", iface)
                return AppliedRuleTable()
            raise DeviceCommandError(cmd, result.returncode, result.stderr)
        return parse_rules(result.stdout)

    def add_rule(self, iface: str, rule: FlowRule) -> Optional[int]:
        cmd = [
            self._ethtool,
            "-N",
            iface,
            "flow-type",
            rule.protocol.flow_type,
            "dst-port",
            str(rule.dest_port),
            "action",
            str(rule.queue),
        ]
        result = self._exec(cmd)
        if result.returncode != 0:
            if "No space left on device" in result.stderr:
                raise RuleTableExhausted(cmd, result.returncode, result.stderr)
            raise RuleRejected(cmd, result.returncode, result.stderr)
        return parse_added_rule_id(result.stdout)

    def delete_rule(self, iface: str, rule_id: int) -> None:
        self._check([self._ethtool, "-N", iface, "delete", str(rule_id)])

    # ------------------------------------------------------------------
    # SR-IOV
    # ------------------------------------------------------------------
    def get_pci_address(self, iface: str) -> Optional[str]:
        device = self._device_dir(iface)
        if not device.exists():
            return None
        return device.resolve().name

    def get_sriov_total_vfs(self, iface: str) -> Optional[int]:
        return self._read_int(self._device_dir(iface) / "sriov_totalvfs")

    def get_sriov_current_vfs(self, iface: str) -> int:
        return self._read_int(self._device_dir(iface) / "sriov_numvfs") or 0

    def set_sriov_num_vfs(self, iface: str, count: int) -> None:
        path = self._device_dir(iface) / "sriov_numvfs"
        LOG.debug("Writing %d to %s", count, path)
        try:
            path.write_text(f"{count}\n")
        except OSError as exc:
            raise DeviceCommandError(
                ["write", str(path), str(count)], exc.errno or 1, str(exc)
            ) from exc

    def list_vf_interface_names(self, iface: str, vf_index: int) -> List[str]:
        net_dir = self._device_dir(iface) / f"virtfn{vf_index}" / "net"
        if not net_dir.is_dir():
            return []
        return sorted(entry.name for entry in net_dir.iterdir())

    # ------------------------------------------------------------------
    # link state
    # ------------------------------------------------------------------
    def _link_set(self, name: str, cmd: Sequence[str], **kwargs) -> None:
        try:
            with pyroute2.IPRoute() as ipr:
                links = ipr.link_lookup(ifname=name)
                if not links:
                    raise DeviceNotFound(name)
                ipr.link("set", index=links[0], **kwargs)
        except pyroute2.NetlinkError as exc:
            raise DeviceCommandError(cmd, exc.code, str(exc)) from exc

    def set_interface_up(self, name: str) -> None:
        self._link_set(name, [self._ip, "link", "set", name, "up"], state="up")

    def set_vf_mac(self, iface: str, vf_index: int, mac: str) -> None:
        self._link_set(
            iface,
            [self._ip, "link", "set", iface, "vf", str(vf_index), "mac", mac],
            vf={"vf": vf_index, "mac": mac},
        )

    def set_vf_mirror(self, iface: str, src_vf: int, dst_vf: int) -> None:
        # netlink has no VF mirror attribute; only some vendor iproute2 builds do
        self._check(
            [self._ip, "link", "set", iface, "vf", str(src_vf), "mirror", str(dst_vf)]
        )
