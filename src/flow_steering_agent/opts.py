"""oslo.config options for services that embed the flow-steering engine.

The standalone command line reads YAML (see :mod:`flow_steering_agent.config`);
oslo-based agents register these options instead and convert them with
:func:`settings_from_conf`.
"""

from pathlib import Path

from oslo_config import cfg

from flow_steering.applier import AddPolicy

from .config import AgentSettings

GROUP = "flow_steering"

flow_steering_opts = [
    cfg.StrOpt('lock_dir',
               default='/run/flow-steering',
               help='Directory holding the per-interface reconciliation '
                    'lock files.'),
    cfg.FloatOpt('lock_timeout',
                 default=30.0,
                 help='Seconds to wait for a concurrent reconciliation of '
                      'the same interface to finish.'),
    cfg.StrOpt('ethtool',
               default='ethtool',
               help='ethtool binary used to manage ntuple rules.'),
    cfg.FloatOpt('command_timeout',
                 default=10.0,
                 help='Timeout in seconds for a single device command.'),
    cfg.StrOpt('add_policy',
               default=AddPolicy.FAIL_FAST.value,
               choices=[p.value for p in AddPolicy],
               help='Behaviour after the NIC rejects a rule: stop adding '
                    '(fail-fast) or keep trying later ports (best-effort).'),
    cfg.FloatOpt('vf_poll_timeout',
                 default=10.0,
                 help='Seconds to wait for SR-IOV VF netdevs to appear.'),
    cfg.FloatOpt('vf_poll_interval',
                 default=0.1,
                 help='Initial delay between VF polls; doubled each round.'),
]


def register_opts(conf):
    """Register the flow-steering options in the ``flow_steering`` group."""
    conf.register_opts(flow_steering_opts, group=GROUP)


def settings_from_conf(conf):
    """Build :class:`AgentSettings` from a registered ``ConfigOpts``."""
    group = getattr(conf, GROUP)
    return AgentSettings(
        lock_dir=Path(group.lock_dir),
        lock_timeout=group.lock_timeout,
        ethtool=group.ethtool,
        command_timeout=group.command_timeout,
        add_policy=AddPolicy(group.add_policy),
        vf_poll_timeout=group.vf_poll_timeout,
        vf_poll_interval=group.vf_poll_interval,
    )


def list_opts():
    """Entry point for ``oslo-config-generator``."""
    return [(GROUP, flow_steering_opts)]
