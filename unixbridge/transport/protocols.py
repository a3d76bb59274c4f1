"""Connection, listener, and overlay network interface protocols."""
from __future__ import annotations

import ssl
from typing import Protocol
from typing import runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """Duplex byte stream with explicit close."""

    @property
    def name(self) -> str:
        """Human readable description of the remote end."""
        ...

    @property
    def closed(self) -> bool:
        """Connection has been closed."""
        ...

    async def read(self, n: int) -> bytes:
        """Read up to `n` bytes.

        Returns:
            Bytes read. An empty bytes object means end-of-stream.
        """
        ...

    async def write(self, data: bytes) -> None:
        """Write all of `data` to the stream."""
        ...

    async def close(self) -> None:
        """Close the connection.

        Closing an already closed connection is a no-op.
        """
        ...


@runtime_checkable
class Listener(Protocol):
    """Source of incoming connections."""

    async def accept(self) -> Connection:
        """Wait for the next incoming connection.

        Raises:
            AcceptError: If the listener is closed or failed.
        """
        ...

    async def close(self) -> None:
        """Stop listening.

        Pending and future calls to `accept()` raise
        [`AcceptError`][unixbridge.exceptions.AcceptError].
        """
        ...


@runtime_checkable
class Overlay(Protocol):
    """Overlay network the proxies listen on and dial through."""

    @property
    def node_id(self) -> str:
        """Identifier of the local node."""
        ...

    async def listen_and_advertise(
        self,
        service: str,
        tls: ssl.SSLContext | None,
        metadata: dict[str, str],
    ) -> Listener:
        """Listen on a named service and advertise it to peers.

        Args:
            service: Service name.
            tls: Server TLS context or `None` to disable TLS.
            metadata: Discovery metadata published with the service.

        Raises:
            ServiceInUseError: If the service is already advertised.
            OSError: If the service cannot be bound.
        """
        ...

    async def dial(
        self,
        node: str,
        service: str,
        tls: ssl.SSLContext | None,
    ) -> Connection:
        """Open a connection to a service on a node.

        Args:
            node: Identifier of the remote node.
            service: Service name on the remote node.
            tls: Client TLS context or `None` to disable TLS.

        Raises:
            DialError: If the connection cannot be opened.
        """
        ...
