"""Loading a snapshot of role, epoch and replication status across a cluster."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from clusterctl.config import Config
from clusterctl.connection import InstanceConnection, open_connection
from clusterctl.exceptions import ClusterCtlError, InvariantError, ProtocolError
from clusterctl.instance import Cluster, Instance
from clusterctl.retry import retry_with_backoff

logger = structlog.get_logger(__name__)

ROLE_PRIMARY = "primary"
ROLE_STANDBY = "standby"
ROLE_DETECTED_BROKEN_CONFIG = "detected_broken_config"

ROLE_AND_EPOCH_QUERY = "SELECT @@global.dolt_cluster_role, @@global.dolt_cluster_role_epoch"
VERSION_QUERY = "SELECT dolt_version()"
STATUS_QUERY = (
    "SELECT `database`, role, epoch, standby_remote, replication_lag_millis, "
    "last_update, current_error FROM `dolt_cluster`.`dolt_cluster_status`"
)
REMOTE_URL_QUERY = "SELECT url FROM `{database}`.`dolt_remotes` WHERE name = ?"


@dataclass
class StatusRow:
    """Replication status of one database as reported by an instance."""

    database: str
    role: str = ""
    epoch: int = 0
    remote: str = ""
    replication_lag_millis: int | None = None
    last_update: datetime | None = None
    current_error: str | None = None


@dataclass
class DBRemote:
    database: str
    name: str
    url: str


@dataclass
class InstanceState:
    """What one instance reported about itself.

    When ``err`` is set, every other field except ``instance`` is invalid.
    """

    instance: Instance
    role: str = ""
    epoch: int = 0
    status: list[StatusRow] = field(default_factory=list)
    remotes: list[DBRemote] = field(default_factory=list)
    version: str = ""
    err: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.err is None

    @property
    def is_primary(self) -> bool:
        return self.ok and self.role == ROLE_PRIMARY

    @property
    def is_standby(self) -> bool:
        return self.ok and self.role == ROLE_STANDBY


ClusterSnapshot = list[InstanceState]


def parse_timestamp(value: Any) -> datetime | None:
    """Normalize a timestamp column to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise ProtocolError(f"cannot parse timestamp {value!r}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise ProtocolError(f"unexpected timestamp value {value!r}")


async def load_role_and_epoch(conn: InstanceConnection) -> tuple[str, int]:
    row = await conn.fetchone(ROLE_AND_EPOCH_QUERY)
    if row is None:
        raise ProtocolError("querying cluster role and epoch returned no rows")
    role, epoch = row[0], row[1]
    return str(role or ""), int(epoch or 0)


async def load_version(conn: InstanceConnection) -> str:
    try:
        version = await conn.fetchval(VERSION_QUERY)
    except ClusterCtlError as e:
        raise ClusterCtlError(f"error loading dolt_version: {e}") from e
    return str(version or "")


async def load_status_rows(conn: InstanceConnection) -> list[StatusRow]:
    try:
        rows = await conn.fetchall(STATUS_QUERY)
    except ClusterCtlError as e:
        raise ClusterCtlError(f"error loading dolt_cluster_status table: {e}") from e

    status = []
    for database, role, epoch, remote, lag, last_update, current_error in rows:
        status.append(
            StatusRow(
                database=database,
                role=role or "",
                epoch=int(epoch or 0),
                remote=remote or "",
                replication_lag_millis=None if lag is None else int(lag),
                last_update=parse_timestamp(last_update),
                current_error=current_error or None,
            )
        )
    return status


async def load_remote_url(conn: InstanceConnection, database: str, remote: str) -> DBRemote:
    """Resolve the URL of ``remote`` in ``database``; exactly one must match."""
    rows = await conn.fetchall(
        REMOTE_URL_QUERY.format(database=database.replace("`", "``")), [remote]
    )
    if not rows:
        raise ClusterCtlError(
            f"error loading remote url for database {database}, remote {remote}: "
            "no remote matches the name"
        )
    if len(rows) > 1:
        raise ClusterCtlError(
            f"error loading remote url for database {database}, remote {remote}: "
            "more than one remote matches the name"
        )
    return DBRemote(database, remote, str(rows[0][0]))


async def _fetch_instance_state(config: Config, instance: Instance) -> InstanceState:
    async with open_connection(config, instance) as conn:
        role, epoch = await load_role_and_epoch(conn)
        state = InstanceState(instance=instance, role=role, epoch=epoch)
        state.version = await load_version(conn)
        state.status = await load_status_rows(conn)

        seen: set[tuple[str, str]] = set()
        for row in state.status:
            key = (row.database, row.remote)
            if key in seen:
                continue
            seen.add(key)
            state.remotes.append(await load_remote_url(conn, row.database, row.remote))

        return state


async def load_instance_state(config: Config, instance: Instance) -> InstanceState:
    """Load the state of one instance, retrying the whole fetch with backoff.

    Attempts and retries together are bounded by ``config.load_state_budget``,
    so an instance that accepts connections and then stalls cannot hold up
    the rest of the snapshot. Never raises for a failed fetch: the returned
    state carries the error instead.
    """
    try:
        async with asyncio.timeout(config.load_state_budget):
            return await retry_with_backoff(
                lambda: _fetch_instance_state(config, instance),
                max_attempts=None,
                max_elapsed=config.load_state_budget,
            )
    except TimeoutError as e:
        reason: str = f"no response within {config.load_state_budget}s"
        cause: Exception = e
    except Exception as e:
        reason, cause = str(e), e

    err = ClusterCtlError(f"error loading role and epoch for {instance.name}: {reason}")
    err.__cause__ = cause
    return InstanceState(instance=instance, err=err)


async def load_cluster_snapshot(config: Config, cluster: Cluster) -> ClusterSnapshot:
    """Load every instance's state concurrently, preserving index order."""
    states = await asyncio.gather(
        *(load_instance_state(config, instance) for instance in cluster)
    )
    for state in states:
        if state.ok:
            logger.debug(
                "loaded instance state",
                instance=state.instance.name,
                role=state.role,
                epoch=state.epoch,
                version=state.version,
                databases=len(state.status),
            )
    return list(states)


def current_primary_and_epoch(snapshot: ClusterSnapshot) -> tuple[int, int]:
    """Find the unique reachable primary and the highest reachable epoch.

    Raises:
        InvariantError: if no reachable instance, or more than one, reports
            role primary
    """
    highest_epoch = 0
    current_primary = -1
    for i, state in enumerate(snapshot):
        if not state.ok:
            continue
        if state.role == ROLE_PRIMARY:
            if current_primary != -1:
                raise InvariantError(
                    "more than one reachable instance was in role primary: "
                    f"{snapshot[current_primary].instance.name} and {state.instance.name}"
                )
            current_primary = i
        highest_epoch = max(highest_epoch, state.epoch)

    if current_primary == -1:
        raise InvariantError("no reachable instance was in role primary")

    return current_primary, highest_epoch


def highest_epoch(snapshot: ClusterSnapshot) -> int:
    """Highest epoch among instances that reported one, or -1 if none did."""
    return max((state.epoch for state in snapshot if state.ok), default=-1)
