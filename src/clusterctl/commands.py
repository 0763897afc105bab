"""Top-level cluster commands."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable

import structlog

from clusterctl.config import Config
from clusterctl.exceptions import (
    InvariantError,
    NoStandbyError,
    PreconditionError,
    TransitionError,
)
from clusterctl.instance import Cluster, Instance, Role
from clusterctl.selection import pick_next_primary, round_robin_successor
from clusterctl.state import (
    ROLE_DETECTED_BROKEN_CONFIG,
    ROLE_PRIMARY,
    ROLE_STANDBY,
    ClusterSnapshot,
    current_primary_and_epoch,
    highest_epoch,
    load_cluster_snapshot,
)
from clusterctl.transitions import assume_role, restart_instance, transition_to_standby
from clusterctl.version import version_supports_transition_to_standby

logger = structlog.get_logger(__name__)


class Command(ABC):
    name: str

    @abstractmethod
    async def run(self, config: Config, cluster: Cluster) -> None: ...


async def _label_all_standby(snapshot: ClusterSnapshot) -> None:
    for state in snapshot:
        await state.instance.mark_role_standby()


class ApplyPrimaryLabels(Command):
    """Make the routing labels match the roles the servers report."""

    name = "applyprimarylabels"

    async def run(self, config: Config, cluster: Cluster) -> None:
        snapshot = await load_cluster_snapshot(config, cluster)
        for state in snapshot:
            if state.err is not None:
                logger.warning(
                    "error loading instance state",
                    instance=state.instance.name,
                    error=str(state.err),
                )

        try:
            current_primary, _ = current_primary_and_epoch(snapshot)
        except InvariantError as e:
            raise InvariantError(f"cannot apply primary labels: {e}") from e

        for i, state in enumerate(snapshot):
            instance = state.instance
            if i == current_primary:
                if instance.role is not Role.PRIMARY:
                    await instance.mark_role_primary()
                    logger.info("applied primary label", instance=instance.name)
            elif instance.role is not Role.STANDBY:
                await instance.mark_role_standby()
                logger.info("applied standby label", instance=instance.name)


class GracefulFailover(Command):
    """Hand the primary role over from a healthy primary to a standby."""

    name = "gracefulfailover"

    async def run(self, config: Config, cluster: Cluster) -> None:
        num_standbys = cluster.num_replicas - 1
        if config.constrained and num_standbys < config.min_caught_up_standbys:
            raise PreconditionError(
                f"invalid min-caughtup-standbys of {config.min_caught_up_standbys}: "
                f"only {cluster.num_replicas} instances are in the cluster, so only "
                f"{num_standbys} standbys can ever be caught up"
            )

        snapshot = await load_cluster_snapshot(config, cluster)
        err_states = [state for state in snapshot if state.err is not None]

        if err_states and not config.constrained:
            # Every standby has to catch up, so every standby has to be reachable.
            raise PreconditionError(
                f"cannot perform graceful failover: {err_states[0].err}"
            ) from err_states[0].err

        if config.constrained:
            num_reachable_standbys = len(snapshot) - len(err_states) - 1
            if num_reachable_standbys < config.min_caught_up_standbys:
                raise PreconditionError(
                    f"could not reach enough standbys to catch up "
                    f"{config.min_caught_up_standbys}: out of {len(snapshot)} instances, "
                    f"{len(err_states)} were unreachable; for example: {err_states[0].err}"
                ) from err_states[0].err

        try:
            current_primary, epoch = current_primary_and_epoch(snapshot)
        except InvariantError as e:
            raise InvariantError(f"cannot perform graceful failover: {e}") from e

        old_state = snapshot[current_primary]
        old_primary = old_state.instance
        next_epoch = epoch + 1

        if config.constrained and not version_supports_transition_to_standby(old_state.version):
            raise PreconditionError(
                f"cannot perform graceful failover with min-caughtup-standbys of "
                f"{config.min_caught_up_standbys}: the version on the current primary "
                f"({old_state.version} on {old_primary.name}) does not support "
                "dolt_cluster_transition_to_standby"
            )

        logger.info("failing over", old_primary=old_primary.name, epoch=next_epoch)

        # Take write traffic away before the handover.
        await _label_all_standby(snapshot)
        logger.info("labeled all instances standby")

        try:
            if config.constrained:
                next_primary = await transition_to_standby(
                    config, old_primary, next_epoch, snapshot
                )
            else:
                next_primary = round_robin_successor(current_primary, cluster.num_replicas)
                await assume_role(config, old_primary, ROLE_STANDBY, next_epoch)
        except Exception:
            logger.warning(
                "failed to transition primary to standby; labeling old primary as primary",
                instance=old_primary.name,
            )
            await self._rollback_label(old_primary)
            raise

        new_primary = snapshot[next_primary].instance
        logger.info("failing over to new primary", new_primary=new_primary.name)

        await assume_role(config, new_primary, ROLE_PRIMARY, next_epoch)
        await new_primary.mark_role_primary()
        logger.info("applied primary label", instance=new_primary.name)

    @staticmethod
    async def _rollback_label(old_primary: Instance) -> None:
        try:
            await old_primary.mark_role_primary()
        except Exception as e:
            logger.error(
                "failed to label old primary as primary; the read-write endpoint is "
                "broken until applyprimarylabels is run",
                instance=old_primary.name,
                error=str(e),
            )


class PromoteStandby(Command):
    """Promote the best standby when the primary is gone."""

    name = "promotestandby"

    async def run(self, config: Config, cluster: Cluster) -> None:
        # Unreachable instances are expected here; the old primary may be among them.
        snapshot = await load_cluster_snapshot(config, cluster)
        for state in snapshot:
            if state.err is not None:
                logger.warning(
                    "instance unreachable", instance=state.instance.name, error=str(state.err)
                )

        next_primary = pick_next_primary(snapshot)
        if next_primary is None:
            raise NoStandbyError("failed to find a reachable standby to promote")

        next_epoch = highest_epoch(snapshot) + 1
        new_primary = snapshot[next_primary].instance
        logger.info("found standby to promote", instance=new_primary.name, epoch=next_epoch)

        await _label_all_standby(snapshot)
        logger.info("labeled all instances standby")

        await assume_role(config, new_primary, ROLE_PRIMARY, next_epoch)
        await new_primary.mark_role_primary()
        logger.info("applied primary label", instance=new_primary.name)


class RollingRestart(Command):
    """Restart every instance, failing the primary over before restarting it."""

    name = "rollingrestart"

    async def run(self, config: Config, cluster: Cluster) -> None:
        snapshot = await load_cluster_snapshot(config, cluster)
        for state in snapshot:
            if state.err is not None:
                raise PreconditionError(
                    f"cannot perform rolling restart: {state.err}"
                ) from state.err
            if state.role == ROLE_DETECTED_BROKEN_CONFIG:
                raise PreconditionError(
                    f"cannot perform rolling restart: found {state.instance.name} "
                    "in detected_broken_config"
                )

        try:
            current_primary, epoch = current_primary_and_epoch(snapshot)
        except InvariantError as e:
            raise InvariantError(f"cannot perform rolling restart: {e}") from e
        next_epoch = epoch + 1

        for i in reversed(range(len(snapshot))):
            if i == current_primary:
                continue
            instance = snapshot[i].instance
            await restart_instance(config, instance)
            # The restart replaced the instance, labels included.
            await instance.mark_role_standby()

        next_primary = await self._pick_restarted_standby(config, cluster, snapshot)
        old_primary = snapshot[current_primary].instance
        new_primary = snapshot[next_primary].instance
        logger.info("decided next primary", instance=new_primary.name)

        await old_primary.mark_role_standby()
        logger.info("labeled existing primary standby", instance=old_primary.name)

        await assume_role(config, old_primary, ROLE_STANDBY, next_epoch)
        await assume_role(config, new_primary, ROLE_PRIMARY, next_epoch)

        await new_primary.mark_role_primary()
        logger.info("labeled new primary primary", instance=new_primary.name)

        await restart_instance(config, old_primary)
        await old_primary.mark_role_standby()

    @staticmethod
    async def _pick_restarted_standby(
        config: Config, cluster: Cluster, before: ClusterSnapshot
    ) -> int:
        """Choose the next primary from the state of the standbys after their restart.

        Falls back to the snapshot taken before the restarts when no
        restarted standby can be read.
        """
        after = await load_cluster_snapshot(config, cluster)
        next_primary = pick_next_primary(after)
        if next_primary is None:
            logger.warning("could not reload standby state after restart; using earlier state")
            next_primary = pick_next_primary(before)
        if next_primary is None:
            raise NoStandbyError("failed to find a reachable standby to promote")
        return next_primary


COMMANDS: dict[str, type[Command]] = {
    cls.name: cls for cls in (ApplyPrimaryLabels, GracefulFailover, PromoteStandby, RollingRestart)
}


async def run_command(
    command: Command, config: Config, cluster: Cluster | Awaitable[Cluster]
) -> None:
    """Run ``command`` under the overall deadline ``config.timeout``.

    ``cluster`` may be an awaitable that loads the cluster, in which case
    loading counts against the same deadline.

    Raises:
        TimeoutError: if the deadline expires; outstanding operations are
            cancelled
    """
    async with asyncio.timeout(config.timeout):
        if inspect.isawaitable(cluster):
            cluster = await cluster
        logger.info("running command", command=command.name, cluster=cluster.name)
        await command.run(config, cluster)
    logger.info("command finished", command=command.name, cluster=cluster.name)
