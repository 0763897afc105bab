"""Role transitions and restarts issued against individual instances."""

import asyncio

import structlog

from clusterctl.config import Config
from clusterctl.connection import open_connection
from clusterctl.exceptions import ClusterCtlError, RestartError, TransitionError
from clusterctl.instance import Instance
from clusterctl.selection import TransitionResult, select_caught_up_instance
from clusterctl.state import ClusterSnapshot

logger = structlog.get_logger(__name__)

ASSUME_ROLE_CALL = "CALL DOLT_ASSUME_CLUSTER_ROLE(?, ?)"
TRANSITION_TO_STANDBY_CALL = "CALL DOLT_CLUSTER_TRANSITION_TO_STANDBY(?, ?)"

READY_POLL_INTERVAL = 0.1


async def assume_role(config: Config, instance: Instance, role: str, epoch: int) -> None:
    """Make ``instance`` take ``role`` at ``epoch``.

    This does not wait for replication to catch up.

    Raises:
        TransitionError: if the call fails or reports a non-zero status
    """
    try:
        async with open_connection(config, instance) as conn:
            rows = await conn.fetchall(ASSUME_ROLE_CALL, [role, epoch])
    except ClusterCtlError as e:
        raise TransitionError(
            f"error calling dolt_assume_cluster_role {role} on {instance.name}: {e}"
        ) from e

    if rows and rows[0]:
        status = rows[0][0]
        if status != 0:
            raise TransitionError(
                f"result from dolt_assume_cluster_role('{role}', {epoch}) "
                f"on {instance.name} was {status}, not 0"
            )

    logger.info("assumed role", instance=instance.name, role=role, epoch=epoch)


async def transition_to_standby(
    config: Config,
    instance: Instance,
    epoch: int,
    snapshot: ClusterSnapshot,
) -> int:
    """Move the primary to standby once enough standbys are caught up.

    The instance blocks until ``config.min_caught_up_standbys`` standbys have
    caught up on every database, then reports which replicas were caught up.

    Returns:
        Index of the instance that was caught up on the most databases

    Raises:
        TransitionError: if the call fails or its result cannot be mapped
            to an instance
    """
    try:
        async with open_connection(config, instance) as conn:
            rows = await conn.fetchall(
                TRANSITION_TO_STANDBY_CALL, [epoch, config.min_caught_up_standbys]
            )
    except ClusterCtlError as e:
        raise TransitionError(
            f"error calling dolt_cluster_transition_to_standby on {instance.name}: {e}"
        ) from e

    try:
        results = [
            TransitionResult(
                caught_up=bool(int(caught_up)),
                database=str(database),
                remote=str(remote),
                remote_url=str(remote_url),
            )
            for caught_up, database, remote, remote_url in rows
        ]
    except (TypeError, ValueError) as e:
        raise TransitionError(
            f"unexpected result from dolt_cluster_transition_to_standby on {instance.name}: {e}"
        ) from e
    for result in results:
        logger.debug(
            "standby transition result",
            database=result.database,
            remote=result.remote,
            caught_up=result.caught_up,
        )

    logger.info("transitioned to standby", instance=instance.name, epoch=epoch)
    return select_caught_up_instance(results, snapshot)


async def wait_for_ready(config: Config, instance: Instance) -> None:
    """Reconnect to ``instance`` until it answers a ping. Callers bound this."""
    while True:
        try:
            async with open_connection(config, instance) as conn:
                await conn.ping()
            return
        except ClusterCtlError as e:
            logger.debug("instance not ready", instance=instance.name, error=str(e))
        await asyncio.sleep(READY_POLL_INTERVAL)


async def restart_instance(config: Config, instance: Instance) -> None:
    """Restart ``instance`` and wait until it serves queries again.

    Both steps together are bounded by ``config.wait_for_ready``.

    Raises:
        RestartError: on failure or timeout
    """
    logger.info("restarting instance", instance=instance.name)
    try:
        async with asyncio.timeout(config.wait_for_ready):
            await instance.restart()
            await wait_for_ready(config, instance)
    except TimeoutError as e:
        raise RestartError(
            f"instance {instance.name} did not become ready within {config.wait_for_ready}s"
        ) from e
    except ClusterCtlError as e:
        raise RestartError(f"error restarting instance {instance.name}: {e}") from e
    logger.info("instance is ready", instance=instance.name)
