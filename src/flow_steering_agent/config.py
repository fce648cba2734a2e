"""YAML configuration loader for the flow-steering command line."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import yaml

from flow_steering.applier import AddPolicy
from flow_steering.lock import DEFAULT_LOCK_DIR
from flow_steering.model import RuleScope, TrafficSplitPolicy

DEFAULT_XDP_QUEUE = 0
DEFAULT_PORT_START = 8000
DEFAULT_PORT_END = 8020
DEFAULT_NUM_VFS = 2
DEFAULT_MIRROR = (0, 1)


@dataclass
class AgentSettings:
    lock_dir: Path = DEFAULT_LOCK_DIR
    lock_timeout: float = 30.0
    ethtool: str = "ethtool"
    command_timeout: float = 10.0
    add_policy: AddPolicy = AddPolicy.FAIL_FAST
    vf_poll_timeout: float = 10.0
    vf_poll_interval: float = 0.1


@dataclass
class VFConfig:
    count: int = DEFAULT_NUM_VFS
    mirror: Optional[Tuple[int, int]] = DEFAULT_MIRROR
    macs: Sequence[str] = ()


@dataclass
class InterfaceConfig:
    name: str
    xdp_queue: int = DEFAULT_XDP_QUEUE
    port_start: int = DEFAULT_PORT_START
    port_end: int = DEFAULT_PORT_END
    vfs: Optional[VFConfig] = None

    def to_policy(self) -> TrafficSplitPolicy:
        return TrafficSplitPolicy(
            interface=self.name,
            xdp_queue=self.xdp_queue,
            port_start=self.port_start,
            port_end=self.port_end,
        )

    @property
    def scope(self) -> RuleScope:
        return self.to_policy().scope


@dataclass
class AgentConfig:
    settings: AgentSettings = field(default_factory=AgentSettings)
    interfaces: Sequence[InterfaceConfig] = field(default_factory=list)

    def interface(self, name: str) -> Optional[InterfaceConfig]:
        return next((i for i in self.interfaces if i.name == name), None)


def parse_add_policy(value: str) -> AddPolicy:
    try:
        return AddPolicy(str(value).lower())
    except ValueError:
        choices = ", ".join(p.value for p in AddPolicy)
        raise ValueError(f"unsupported add_policy '{value}' (expected {choices})") from None


def parse_port_range(value: Any) -> Tuple[int, int]:
    """Accept ``"8000-8020"``, ``"8000"`` or ``{start: 8000, end: 8020}``."""

    if isinstance(value, dict):
        start = int(value["start"])
        return start, int(value.get("end", start))
    text = str(value)
    if "-" in text:
        start, end = text.split("-", 1)
        return int(start), int(end)
    return int(text), int(text)


def parse_mirror(value: Any) -> Optional[Tuple[int, int]]:
    """Accept ``"0:1"``, ``[0, 1]`` or a false value to disable mirroring."""

    if value is None or value is False:
        return None
    if isinstance(value, (list, tuple)):
        parts = list(value)
    else:
        parts = str(value).split(":")
    if len(parts) != 2:
        raise ValueError(f"mirror must name a source and destination VF, got {value!r}")
    return int(parts[0]), int(parts[1])


def _parse_settings(section: dict) -> AgentSettings:
    defaults = AgentSettings()
    return AgentSettings(
        lock_dir=Path(section.get("lock_dir", defaults.lock_dir)),
        lock_timeout=float(section.get("lock_timeout", defaults.lock_timeout)),
        ethtool=str(section.get("ethtool", defaults.ethtool)),
        command_timeout=float(section.get("command_timeout", defaults.command_timeout)),
        add_policy=parse_add_policy(section.get("add_policy", defaults.add_policy.value)),
        vf_poll_timeout=float(section.get("vf_poll_timeout", defaults.vf_poll_timeout)),
        vf_poll_interval=float(section.get("vf_poll_interval", defaults.vf_poll_interval)),
    )


def _parse_vfs(section: dict) -> VFConfig:
    macs = section.get("macs", [])
    if not isinstance(macs, list):
        raise ValueError("vfs 'macs' must be a list if provided")
    return VFConfig(
        count=int(section.get("count", DEFAULT_NUM_VFS)),
        mirror=parse_mirror(section.get("mirror", DEFAULT_MIRROR)),
        macs=tuple(str(mac) for mac in macs),
    )


def _parse_interfaces(entries: Iterable[dict]) -> List[InterfaceConfig]:
    interfaces: List[InterfaceConfig] = []
    for entry in entries:
        if "name" not in entry:
            raise ValueError("interface entry missing 'name'")
        start, end = parse_port_range(
            entry.get("ports", f"{DEFAULT_PORT_START}-{DEFAULT_PORT_END}")
        )
        vfs = entry.get("vfs")
        if vfs is not None and not isinstance(vfs, dict):
            raise ValueError("interface 'vfs' must be a mapping if provided")
        interfaces.append(
            InterfaceConfig(
                name=str(entry["name"]),
                xdp_queue=int(entry.get("xdp_queue", DEFAULT_XDP_QUEUE)),
                port_start=start,
                port_end=end,
                vfs=_parse_vfs(vfs) if vfs is not None else None,
            )
        )
    return interfaces


def load_config(path: Path) -> AgentConfig:
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError("flow-steering configuration must be a mapping")

    settings_section = data.get("settings", {})
    if not isinstance(settings_section, dict):
        raise ValueError("'settings' section must be a mapping")

    interfaces_section = data.get("interfaces", [])
    if not isinstance(interfaces_section, list):
        raise ValueError("'interfaces' section must be a list")

    return AgentConfig(
        settings=_parse_settings(settings_section),
        interfaces=_parse_interfaces(interfaces_section),
    )
