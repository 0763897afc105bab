"""Primary/standby role management for replicated database clusters."""

from clusterctl.commands import (
    COMMANDS,
    ApplyPrimaryLabels,
    Command,
    GracefulFailover,
    PromoteStandby,
    RollingRestart,
    run_command,
)
from clusterctl.config import Config
from clusterctl.connection import InstanceConnection
from clusterctl.exceptions import (
    ClusterCtlError,
    ConfigError,
    ConnectionError,
    InvariantError,
    NoStandbyError,
    OperationalError,
    PreconditionError,
    ProtocolError,
    RestartError,
    TransitionError,
)
from clusterctl.instance import Cluster, Instance, MemoryCluster, MemoryInstance, Role
from clusterctl.state import (
    ClusterSnapshot,
    InstanceState,
    StatusRow,
    current_primary_and_epoch,
    load_cluster_snapshot,
)

__all__ = [
    "run",
    "COMMANDS",
    "Command",
    "ApplyPrimaryLabels",
    "GracefulFailover",
    "PromoteStandby",
    "RollingRestart",
    "run_command",
    "Config",
    "InstanceConnection",
    "Instance",
    "Cluster",
    "MemoryInstance",
    "MemoryCluster",
    "Role",
    "ClusterSnapshot",
    "InstanceState",
    "StatusRow",
    "current_primary_and_epoch",
    "load_cluster_snapshot",
    "ClusterCtlError",
    "ConfigError",
    "ConnectionError",
    "ProtocolError",
    "OperationalError",
    "InvariantError",
    "PreconditionError",
    "NoStandbyError",
    "TransitionError",
    "RestartError",
]

__version__ = "0.1.0"


async def run(
    command: str,
    cluster: Cluster,
    config: Config | None = None,
) -> None:
    """Run a command by name against a cluster.

    Args:
        command: One of ``applyprimarylabels``, ``gracefulfailover``,
            ``promotestandby``, ``rollingrestart``
        cluster: The cluster to operate on
        config: Command settings; defaults are used when omitted

    Raises:
        KeyError: if ``command`` is not a known command
    """
    config = config or Config()
    config.validate()
    await run_command(COMMANDS[command](), config, cluster)
