from pathlib import Path

import pytest

from flow_steering.applier import AddPolicy
from flow_steering.model import Protocol, RuleScope
from flow_steering_agent.config import (
    AgentConfig,
    load_config,
    parse_mirror,
    parse_port_range,
)


def test_load_config(tmp_path: Path):
    config_path = tmp_path / "flow-steering.yaml"
    config_path.write_text(
        """
settings:
  lock_dir: /run/lock/flow-steering
  lock_timeout: 5
  add_policy: best-effort
  vf_poll_timeout: 20
interfaces:
  - name: enp193s0f1np1
    xdp_queue: 2
    ports: 9000-9010
    vfs:
      count: 4
      mirror: "1:2"
      macs:
        - "02:00:00:00:00:01"
  - name: eth1
"""
    )

    cfg = load_config(config_path)

    assert cfg.settings.lock_dir == Path("/run/lock/flow-steering")
    assert cfg.settings.lock_timeout == pytest.approx(5.0)
    assert cfg.settings.add_policy is AddPolicy.BEST_EFFORT
    assert cfg.settings.vf_poll_timeout == pytest.approx(20.0)
    assert cfg.settings.ethtool == "ethtool"
    assert len(cfg.interfaces) == 2

    nic = cfg.interface("enp193s0f1np1")
    assert nic.xdp_queue == 2
    assert (nic.port_start, nic.port_end) == (9000, 9010)
    assert nic.scope == RuleScope(Protocol.UDP, 9000, 9010)
    assert nic.vfs.count == 4
    assert nic.vfs.mirror == (1, 2)
    assert nic.vfs.macs == ("02:00:00:00:00:01",)

    policy = nic.to_policy()
    assert policy.interface == "enp193s0f1np1"
    assert policy.xdp_queue == 2

    other = cfg.interface("eth1")
    assert (other.xdp_queue, other.port_start, other.port_end) == (0, 8000, 8020)
    assert other.vfs is None
    assert cfg.interface("eth2") is None


def test_empty_config_uses_defaults(tmp_path: Path):
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("")

    cfg = load_config(config_path)

    assert cfg == AgentConfig()
    assert cfg.settings.add_policy is AddPolicy.FAIL_FAST


@pytest.mark.parametrize(
    "body",
    [
        "- just a list",
        "settings: [1, 2]",
        "interfaces: {name: eth0}",
        "interfaces:\n  - xdp_queue: 1",
        "interfaces:\n  - name: eth0\n    vfs: 2",
        "settings:\n  add_policy: sometimes",
    ],
)
def test_malformed_config(tmp_path: Path, body):
    config_path = tmp_path / "bad.yaml"
    config_path.write_text(body)

    with pytest.raises(ValueError):
        load_config(config_path)


def test_parse_port_range():
    assert parse_port_range("8000-8020") == (8000, 8020)
    assert parse_port_range(8005) == (8005, 8005)
    assert parse_port_range({"start": 7000, "end": 7001}) == (7000, 7001)


def test_parse_mirror():
    assert parse_mirror("0:1") == (0, 1)
    assert parse_mirror([1, 0]) == (1, 0)
    assert parse_mirror(False) is None
    with pytest.raises(ValueError):
        parse_mirror("0:1:2")
