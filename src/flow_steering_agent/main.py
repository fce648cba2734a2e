"""Entry point for the ``flow-steering`` command line."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, TextIO

from flow_steering.exceptions import FlowSteeringError
from flow_steering.linux import LinuxDevice
from flow_steering.model import RuleScope, TrafficSplitPolicy, VFSet
from flow_steering.orchestrator import InterfaceStatus, ReconciliationOrchestrator
from flow_steering.result import ReconciliationResult
from flow_steering.sriov import VFProvisioner

from .config import (
    DEFAULT_MIRROR,
    DEFAULT_NUM_VFS,
    AgentConfig,
    AgentSettings,
    InterfaceConfig,
    load_config,
    parse_add_policy,
    parse_mirror,
    parse_port_range,
)

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("/etc/flow-steering/flow-steering.yaml")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def build_orchestrator(settings: AgentSettings) -> ReconciliationOrchestrator:
    device = LinuxDevice(ethtool=settings.ethtool, command_timeout=settings.command_timeout)
    return ReconciliationOrchestrator(
        device,
        lock_dir=settings.lock_dir,
        lock_timeout=settings.lock_timeout,
        add_policy=settings.add_policy,
        provisioner=VFProvisioner(
            device,
            poll_timeout=settings.vf_poll_timeout,
            poll_interval=settings.vf_poll_interval,
        ),
    )


def _load(path: Optional[Path]) -> AgentConfig:
    if path is not None:
        return load_config(path)
    if DEFAULT_CONFIG.exists():
        return load_config(DEFAULT_CONFIG)
    return AgentConfig()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flow-steering",
        description="Steer a UDP port range to a dedicated NIC queue and manage SR-IOV VFs",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to the YAML configuration (default: {DEFAULT_CONFIG} if present)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    apply = sub.add_parser("apply", help="Install flow rules for a port range")
    apply.add_argument("interface")
    apply.add_argument("queue", nargs="?", type=int, help="Receive queue for the XDP consumer")
    apply.add_argument("port_start", nargs="?", type=int)
    apply.add_argument("port_end", nargs="?", type=int)
    apply.add_argument(
        "--add-policy",
        default=None,
        help="fail-fast (default) or best-effort once the NIC rejects a rule",
    )

    teardown = sub.add_parser("teardown", help="Remove the flow rules of a port range")
    teardown.add_argument("interface")
    teardown.add_argument("port_start", nargs="?", type=int)
    teardown.add_argument("port_end", nargs="?", type=int)
    teardown.add_argument("--ports", default=None, help="Owned port range, e.g. 8000-8020")

    status = sub.add_parser("status", help="Show NIC capabilities and flow rules")
    status.add_argument("interface")
    status.add_argument("--ports", default=None, help="Highlight rules in this port range")

    vf_enable = sub.add_parser("vf-enable", help="Create SR-IOV virtual functions")
    vf_enable.add_argument("interface")
    vf_enable.add_argument("--count", type=int, default=None)
    vf_enable.add_argument("--mirror", default=None, help="Mirror VFs, e.g. 0:1")
    vf_enable.add_argument("--no-mirror", action="store_true", help="Skip VF mirroring")
    vf_enable.add_argument("--mac", action="append", default=None, help="MAC per VF, in order")

    vf_disable = sub.add_parser("vf-disable", help="Remove all SR-IOV virtual functions")
    vf_disable.add_argument("interface")
    return parser


def _interface_config(config: AgentConfig, name: str, ports: Optional[str]) -> InterfaceConfig:
    base = config.interface(name) or InterfaceConfig(name=name)
    if ports is None:
        return base
    start, end = parse_port_range(ports)
    return InterfaceConfig(
        name=name,
        xdp_queue=base.xdp_queue,
        port_start=start,
        port_end=end,
        vfs=base.vfs,
    )


# ----------------------------------------------------------------------
# output
# ----------------------------------------------------------------------
def _print_result(
    title: str,
    result: ReconciliationResult,
    out: TextIO,
    policy: Optional[TrafficSplitPolicy] = None,
) -> None:
    print(f"{title}: {result.interface}", file=out)
    print(
        f"  added: {result.added}  already present: {result.already_present}  "
        f"deleted: {result.deleted}  failed: {result.failed}",
        file=out,
    )
    for failure in result.failures():
        print(
            f"  port {failure.port}: {failure.reason} ({failure.detail})",
            file=out,
        )
    for name, status in result.capabilities.items():
        print(f"  capability {name}: {status.value}", file=out)
    for warning in result.warnings:
        print(f"  warning: {warning}", file=out)
    if result.verdict is not None:
        if result.verdict.matched:
            print("  verification: match", file=out)
        else:
            print(
                f"  verification: MISMATCH missing={sorted(result.verdict.missing)} "
                f"unexpected={sorted(result.verdict.unexpected)}",
                file=out,
            )
    if policy is not None:
        print("traffic routing:", file=out)
        print(
            f"  * {policy.protocol.value.upper()} ports {policy.port_start}-{policy.port_end}"
            f" -> queue {policy.xdp_queue} (XDP consumer)",
            file=out,
        )
        print("  * all other traffic -> other queues (kernel)", file=out)
        print(
            f"bind the zero-copy consumer to {policy.interface} queue {policy.xdp_queue}",
            file=out,
        )


def _print_status(status: InterfaceStatus, out: TextIO) -> None:
    iface = status.interface
    queues = iface.queue_count if iface.queue_count is not None else "unknown"
    print(f"interface: {iface.name}", file=out)
    print(f"  driver: {iface.driver}  pci: {iface.pci_address or '-'}", file=out)
    print(f"  queues: {queues}", file=out)
    print(
        f"  ntuple: supported={iface.ntuple_supported} enabled={iface.ntuple_enabled}",
        file=out,
    )
    print(
        f"  sriov: supported={iface.sriov_supported} vfs={iface.current_vfs}/{iface.max_vfs}",
        file=out,
    )
    owned = {rule.rule_id for rule in status.owned()}
    print(f"  rules: {len(status.rules)}", file=out)
    for rule in status.rules:
        proto = rule.protocol.value if rule.protocol else "other"
        marker = "*" if rule.rule_id in owned else " "
        print(
            f"  {marker} {rule.rule_id}: {proto} dst-port {rule.dest_port} -> queue {rule.queue}",
            file=out,
        )


def _print_vfs(vfs: VFSet, out: TextIO) -> None:
    print(f"SR-IOV: {vfs.interface} ({len(vfs.entries)}/{vfs.max_supported} VFs)", file=out)
    for vf in vfs.entries:
        print(f"  VF{vf.index}: {vf.name} ({vf.state.value})", file=out)
    if vfs.mirror is not None:
        print(f"  mirror: {vfs.mirror.value}", file=out)
    for warning in vfs.warnings:
        print(f"  warning: {warning}", file=out)


def _vfs_as_dict(vfs: VFSet) -> dict:
    return {
        "interface": vfs.interface,
        "requested": vfs.requested_count,
        "max": vfs.max_supported,
        "vfs": [
            {"index": vf.index, "name": vf.name, "state": vf.state.value}
            for vf in vfs.entries
        ],
        "mirror": vfs.mirror.value if vfs.mirror else None,
        "warnings": list(vfs.warnings),
    }


# ----------------------------------------------------------------------
# commands
# ----------------------------------------------------------------------
def _run(args: argparse.Namespace, config: AgentConfig, out: TextIO) -> int:
    settings = config.settings
    if getattr(args, "add_policy", None):
        settings.add_policy = parse_add_policy(args.add_policy)
    orchestrator = build_orchestrator(settings)

    if args.command == "apply":
        base = config.interface(args.interface) or InterfaceConfig(name=args.interface)
        policy = TrafficSplitPolicy(
            interface=args.interface,
            xdp_queue=base.xdp_queue if args.queue is None else args.queue,
            port_start=base.port_start if args.port_start is None else args.port_start,
            port_end=base.port_end if args.port_end is None else args.port_end,
        )
        result = orchestrator.apply(policy)
        if args.json:
            print(json.dumps(result.as_dict(), indent=2), file=out)
        else:
            _print_result("flow steering", result, out, policy)
        return 0 if result.ok else 1

    if args.command == "teardown":
        scope = _interface_config(config, args.interface, args.ports).scope
        if args.port_start is not None:
            end = args.port_start if args.port_end is None else args.port_end
            scope = RuleScope(scope.protocol, args.port_start, end)
        result = orchestrator.teardown(args.interface, scope)
        if args.json:
            data = result.as_dict()
            data["scope"] = {
                "protocol": scope.protocol.value,
                "port_start": scope.port_start,
                "port_end": scope.port_end,
            }
            print(json.dumps(data, indent=2), file=out)
        else:
            _print_result("flow steering removed", result, out)
            print(
                f"  scope: {scope.protocol.value} ports {scope.port_start}-{scope.port_end}",
                file=out,
            )
        return 0 if result.ok else 1

    if args.command == "status":
        scope = _interface_config(config, args.interface, args.ports).scope
        status = orchestrator.status(args.interface, scope)
        if args.json:
            print(
                json.dumps(
                    {
                        "interface": status.interface.name,
                        "driver": status.interface.driver,
                        "queues": status.interface.queue_count,
                        "rules": [
                            {
                                "id": r.rule_id,
                                "protocol": r.protocol.value if r.protocol else None,
                                "dst_port": r.dest_port,
                                "queue": r.queue,
                                "owned": scope.contains(r),
                            }
                            for r in status.rules
                        ],
                    },
                    indent=2,
                ),
                file=out,
            )
        else:
            _print_status(status, out)
        return 0

    if args.command == "vf-enable":
        iface_cfg = config.interface(args.interface)
        vf_cfg = iface_cfg.vfs if iface_cfg else None
        count = args.count if args.count is not None else (
            vf_cfg.count if vf_cfg else DEFAULT_NUM_VFS
        )
        if args.no_mirror:
            mirror = None
        elif args.mirror is not None:
            mirror = parse_mirror(args.mirror)
        else:
            mirror = vf_cfg.mirror if vf_cfg else DEFAULT_MIRROR
        if mirror is not None and count < 2:
            mirror = None
        macs = args.mac if args.mac is not None else (vf_cfg.macs if vf_cfg else ())
        vfs = orchestrator.provision_vfs(args.interface, count, mirror=mirror, macs=macs)
    else:
        vfs = orchestrator.remove_vfs(args.interface)

    if args.json:
        print(json.dumps(_vfs_as_dict(vfs), indent=2), file=out)
    else:
        _print_vfs(vfs, out)
    return 0


def main(argv: Optional[Sequence[str]] = None, out: Optional[TextIO] = None) -> int:
    out = out or sys.stdout
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        config = _load(args.config)
        return _run(args, config, out)
    except (FlowSteeringError, ValueError) as exc:
        LOG.error("%s", exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
