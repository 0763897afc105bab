"""Connections used to issue RPCs against a running instance."""

import asyncio
import ssl
from typing import TYPE_CHECKING, Any

from clusterctl.exceptions import ConnectionError
from clusterctl.protocol import InstanceProtocol

if TYPE_CHECKING:
    from clusterctl.config import Config
    from clusterctl.instance import Instance


class InstanceConnection:
    """Async connection to the control database of one instance."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        database: str = "dolt_cluster",
        timeout: float = 5.0,
        ssl_context: ssl.SSLContext | None = None,
        server_hostname: str | None = None,
    ) -> None:
        """Initialize connection (does not connect yet).

        Args:
            host: Hostname or address of the instance
            port: Port the instance listens on
            database: Database to open once connected
            timeout: Connection timeout in seconds
            ssl_context: TLS context, or None for a plaintext connection
            server_hostname: Name to verify against the server certificate
        """
        self._host = host
        self._port = port
        self._database = database
        self._timeout = timeout
        self._ssl = ssl_context
        self._server_hostname = server_hostname
        self._protocol: InstanceProtocol | None = None
        self._db_id: int | None = None

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    @property
    def is_connected(self) -> bool:
        return self._protocol is not None

    async def connect(self) -> None:
        """Establish the connection and open the control database."""
        if self._protocol is not None:
            return

        kwargs: dict[str, Any] = {}
        if self._ssl is not None:
            kwargs["ssl"] = self._ssl
            kwargs["server_hostname"] = self._server_hostname or self._host

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port, **kwargs),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            raise ConnectionError(f"Connection to {self.address} timed out") from e
        except OSError as e:
            raise ConnectionError(f"Failed to connect to {self.address}: {e}") from e

        self._protocol = InstanceProtocol(reader, writer)

        try:
            await self._protocol.handshake()
            self._db_id = await self._protocol.open_database(self._database)
        except Exception:
            self._protocol.close()
            self._protocol = None
            raise

    async def close(self) -> None:
        if self._protocol is None:
            return
        protocol, self._protocol, self._db_id = self._protocol, None, None
        protocol.close()
        try:
            await protocol.wait_closed()
        except OSError as e:
            raise ConnectionError(f"Failed to close connection to {self.address}: {e}") from e

    async def __aenter__(self) -> "InstanceConnection":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_connected(self) -> tuple[InstanceProtocol, int]:
        if self._protocol is None or self._db_id is None:
            raise ConnectionError("Not connected")
        return self._protocol, self._db_id

    async def fetchall(self, sql: str, params: list[Any] | None = None) -> list[list[Any]]:
        """Run a query and return results as a list of lists."""
        protocol, db_id = self._ensure_connected()
        _, rows = await protocol.query_sql(db_id, sql, params)
        return rows

    async def fetchone(self, sql: str, params: list[Any] | None = None) -> list[Any] | None:
        """Run a query and return the first row, if any."""
        rows = await self.fetchall(sql, params)
        return rows[0] if rows else None

    async def fetchval(self, sql: str, params: list[Any] | None = None) -> Any:
        """Run a query and return the first column of the first row."""
        row = await self.fetchone(sql, params)
        if row:
            return row[0]
        return None

    async def ping(self) -> None:
        """Round-trip a trivial query."""
        await self.fetchval("SELECT 1")


def open_connection(config: "Config", instance: "Instance") -> InstanceConnection:
    """Build an (unconnected) connection to ``instance`` using ``config``."""
    return InstanceConnection(
        instance.hostname,
        instance.port,
        database=config.database,
        timeout=config.connect_timeout,
        ssl_context=config.ssl_context(),
        server_hostname=config.server_hostname(instance.hostname),
    )
