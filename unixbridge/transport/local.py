"""Unix domain socket transport."""
from __future__ import annotations

import asyncio
import logging
import os

from unixbridge.exceptions import AcceptError
from unixbridge.exceptions import DialError

logger = logging.getLogger(__name__)


class LocalConnection:
    """Connection over a Unix domain socket.

    Args:
        reader: Stream reader of the socket.
        writer: Stream writer of the socket.
        path: Socket path the connection is bound to.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        path: str,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._path = path
        self._closed = False

    def __repr__(self) -> str:
        return f'{type(self).__name__}(path={self._path!r})'

    @property
    def name(self) -> str:
        """Socket path the connection is bound to."""
        return f'unix:{self._path}'

    @property
    def closed(self) -> bool:
        """Connection has been closed."""
        return self._closed

    async def read(self, n: int) -> bytes:
        """Read up to `n` bytes. Empty bytes means end-of-stream."""
        return await self._reader.read(n)

    async def write(self, data: bytes) -> None:
        """Write and drain `data`."""
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        """Close the socket."""
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            # Peer reset the socket before we closed it.
            logger.debug(f'Error while closing {self.name}: {e}')


class LocalListener:
    """Listener accepting connections on a Unix domain socket.

    Incoming connections are queued until
    [`accept()`][unixbridge.transport.local.LocalListener.accept] is called.
    Create instances with [`listen()`][unixbridge.transport.local.listen].

    Args:
        path: Socket path.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._server: asyncio.AbstractServer | None = None
        self._queue: asyncio.Queue[LocalConnection | None] = asyncio.Queue()
        self._closed = False

    def __repr__(self) -> str:
        return f'{type(self).__name__}(path={self.path!r})'

    @property
    def closed(self) -> bool:
        """Listener has been closed."""
        return self._closed

    async def _on_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        conn = LocalConnection(reader, writer, self.path)
        if self._closed:
            await conn.close()
        else:
            await self._queue.put(conn)

    async def start(self) -> None:
        """Bind the socket path and start accepting connections."""
        self._server = await asyncio.start_unix_server(
            self._on_connection,
            path=self.path,
        )

    async def accept(self) -> LocalConnection:
        """Wait for the next incoming connection.

        Raises:
            AcceptError: If the listener is closed.
        """
        if self._closed:
            raise AcceptError(f'Listener on {self.path} is closed.')
        conn = await self._queue.get()
        if conn is None:
            raise AcceptError(f'Listener on {self.path} is closed.')
        return conn

    async def close(self) -> None:
        """Stop listening and close connections not yet accepted."""
        if self._closed:
            return
        self._closed = True
        if self._server is not None:
            # Do not wait for the server to close because that would block
            # until every accepted connection has been closed too.
            self._server.close()
        while not self._queue.empty():
            conn = self._queue.get_nowait()
            if conn is not None:
                await conn.close()
        # Wake any pending accept().
        self._queue.put_nowait(None)


async def listen(path: str, permissions: int) -> LocalListener:
    """Listen on a Unix socket path.

    Any existing file at `path` must be removed by the caller first.

    Args:
        path: Socket path.
        permissions: Permission bits to set on the socket file.

    Returns:
        Listener accepting connections on `path`.

    Raises:
        OSError: If the path cannot be bound or its permissions set.
    """
    listener = LocalListener(path)
    await listener.start()
    try:
        os.chmod(path, permissions)
    except OSError:
        await listener.close()
        raise
    logger.debug(f'Listening on Unix socket {path} ({permissions:#o})')
    return listener


async def dial(path: str) -> LocalConnection:
    """Connect to a Unix socket path.

    Raises:
        DialError: If the socket does not exist or refuses the connection.
    """
    try:
        reader, writer = await asyncio.open_unix_connection(path)
    except OSError as e:
        raise DialError(f'Failed to connect to {path}: {e}') from e
    return LocalConnection(reader, writer, path)
