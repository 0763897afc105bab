"""Instance and cluster interfaces for the deployment being operated on."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterator
from enum import Enum


class Role(Enum):
    """Traffic role of an instance in the routing layer."""

    UNKNOWN = "unknown"
    PRIMARY = "primary"
    STANDBY = "standby"


class Instance(ABC):
    """One database server instance of a cluster deployment.

    ``role`` is the routing label, which is what steers read and write
    traffic. It is distinct from the role the server itself reports.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name, meaningful to an operator of the deployment."""
        ...

    @property
    @abstractmethod
    def hostname(self) -> str:
        """Hostname or address at which the server can be reached."""
        ...

    @property
    @abstractmethod
    def port(self) -> int:
        """Port the server listens on."""
        ...

    @property
    @abstractmethod
    def role(self) -> Role:
        """Current routing label."""
        ...

    @abstractmethod
    async def mark_role_primary(self) -> None:
        """Label this instance to receive primary traffic. No-op if already labeled."""
        ...

    @abstractmethod
    async def mark_role_standby(self) -> None:
        """Label this instance to receive standby traffic. No-op if already labeled."""
        ...

    @abstractmethod
    async def mark_role_unknown(self) -> None:
        """Remove the routing label. No-op if there is none."""
        ...

    @abstractmethod
    async def restart(self) -> None:
        """Restart the instance and block until the deployment reports it ready.

        Callers bound this with their own timeout. Afterwards the instance
        reflects the deployment's most recent view of it, including labels.
        """
        ...


class Cluster(ABC):
    """A fixed-size, ordered collection of instances.

    Indexes ``0 .. num_replicas - 1`` are stable for one command invocation.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def num_replicas(self) -> int: ...

    @abstractmethod
    def instance(self, i: int) -> Instance: ...

    def __iter__(self) -> Iterator[Instance]:
        for i in range(self.num_replicas):
            yield self.instance(i)

    def __len__(self) -> int:
        return self.num_replicas


RestartHook = Callable[["MemoryInstance"], Awaitable[None]]


class MemoryInstance(Instance):
    """In-memory instance with an address and a routing label.

    Every label change is appended to ``label_updates``; idempotent calls
    that find the label already correct record nothing.
    """

    def __init__(
        self,
        name: str,
        address: str,
        role: Role = Role.UNKNOWN,
        *,
        on_restart: RestartHook | None = None,
    ) -> None:
        host, port_str = address.rsplit(":", 1)
        self._name = name
        self._hostname = host
        self._port = int(port_str)
        self._role = role
        self._on_restart = on_restart
        self.label_updates: list[Role] = []
        self.restarts = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def hostname(self) -> str:
        return self._hostname

    @property
    def port(self) -> int:
        return self._port

    @property
    def role(self) -> Role:
        return self._role

    def _set_role(self, role: Role) -> None:
        if self._role is role:
            return
        self._role = role
        self.label_updates.append(role)

    async def mark_role_primary(self) -> None:
        self._set_role(Role.PRIMARY)

    async def mark_role_standby(self) -> None:
        self._set_role(Role.STANDBY)

    async def mark_role_unknown(self) -> None:
        self._set_role(Role.UNKNOWN)

    async def restart(self) -> None:
        self.restarts += 1
        if self._on_restart is not None:
            await self._on_restart(self)

    def __repr__(self) -> str:
        return f"MemoryInstance({self._name!r}, {self._hostname}:{self._port}, {self._role.value})"


class MemoryCluster(Cluster):
    """In-memory cluster over a list of ``host:port`` addresses."""

    def __init__(
        self,
        name: str,
        addresses: list[str],
        *,
        roles: list[Role] | None = None,
        on_restart: RestartHook | None = None,
    ) -> None:
        roles = roles or [Role.UNKNOWN] * len(addresses)
        if len(roles) != len(addresses):
            raise ValueError("roles and addresses must have the same length")
        self._name = name
        self._instances = [
            MemoryInstance(f"{name}-{i}", addr, role, on_restart=on_restart)
            for i, (addr, role) in enumerate(zip(addresses, roles, strict=True))
        ]

    @property
    def name(self) -> str:
        return self._name

    @property
    def num_replicas(self) -> int:
        return len(self._instances)

    def instance(self, i: int) -> MemoryInstance:
        return self._instances[i]
