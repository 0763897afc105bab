"""Low-level wire protocol handler for instance connections."""

import asyncio
from typing import Any

from clusterctl.exceptions import ConnectionError, OperationalError, ProtocolError
from dqlitewire import MessageDecoder, MessageEncoder
from dqlitewire.exceptions import ProtocolError as WireError
from dqlitewire.exceptions import ServerFailure
from dqlitewire.messages import (
    ClientRequest,
    DbResponse,
    EmptyResponse,
    FailureResponse,
    OpenRequest,
    QuerySqlRequest,
    RowsResponse,
    WelcomeResponse,
)
from dqlitewire.messages.base import Message


class InstanceProtocol:
    """Request/response handler for a single instance stream."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._encoder = MessageEncoder()
        self._decoder = MessageDecoder(is_request=False)

    async def handshake(self, client_id: int = 0) -> None:
        """Send the protocol version and register as a client."""
        self._writer.write(self._encoder.encode_handshake())
        await self._send(ClientRequest(client_id=client_id))

        response = await self._read_response()

        if isinstance(response, FailureResponse):
            raise ProtocolError(f"Handshake failed: {response.message}")

        if not isinstance(response, WelcomeResponse):
            raise ProtocolError(f"Expected WelcomeResponse, got {type(response).__name__}")

    async def open_database(self, name: str, flags: int = 0, vfs: str = "") -> int:
        """Open a database and return its id."""
        await self._send(OpenRequest(name=name, flags=flags, vfs=vfs))
        response = self._expect(await self._read_response(), DbResponse)
        return response.db_id

    async def query_sql(
        self, db_id: int, sql: str, params: list[Any] | None = None
    ) -> tuple[list[str], list[list[Any]]]:
        """Run a query, following multi-part row responses.

        Returns (column_names, rows).
        """
        await self._send(QuerySqlRequest(db_id=db_id, sql=sql, params=params or []))
        response = self._expect(await self._read_response(), RowsResponse)

        column_names = response.column_names
        all_rows = list(response.rows)
        while response.has_more:
            part = await self._read_response(continuation=True)
            if isinstance(part, EmptyResponse):
                break
            response = self._expect(part, RowsResponse)
            all_rows.extend(response.rows)

        return column_names, all_rows

    async def _send(self, request: Message) -> None:
        try:
            frame = self._encoder.encode(request)
        except WireError as e:
            raise ProtocolError(f"cannot encode {type(request).__name__}: {e}") from e
        try:
            self._writer.write(frame)
            await self._writer.drain()
        except OSError as e:
            raise ConnectionError(f"Failed to send request: {e}") from e

    def _expect[M: Message](self, response: Message, kind: type[M]) -> M:
        if isinstance(response, FailureResponse):
            raise OperationalError(response.code, response.message)
        if not isinstance(response, kind):
            raise ProtocolError(f"Expected {kind.__name__}, got {type(response).__name__}")
        return response

    async def _read_response(self, continuation: bool = False) -> Message:
        """Read and decode the next response message.

        With ``continuation`` set, the next frame of a multi-part row set is
        decoded instead; a failure frame there surfaces as OperationalError.
        """
        while not self._decoder.has_message():
            try:
                data = await self._reader.read(4096)
            except OSError as e:
                raise ConnectionError(f"Failed to read response: {e}") from e
            if not data:
                raise ConnectionError("Connection closed by server")
            self._decoder.feed(data)

        try:
            if continuation:
                message = self._decoder.decode_continuation()
            else:
                message = self._decoder.decode()
        except ServerFailure as e:
            raise OperationalError(e.code, e.message) from e
        except WireError as e:
            raise ProtocolError(f"Failed to decode message: {e}") from e
        if message is None:
            raise ProtocolError("Failed to decode message")

        return message

    def close(self) -> None:
        self._writer.close()

    async def wait_closed(self) -> None:
        await self._writer.wait_closed()
