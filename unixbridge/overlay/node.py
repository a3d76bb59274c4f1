"""Overlay network node built on websockets.

Each node runs a control server which answers service lookups from peers.
Every service advertised on the node is served by its own websocket server
on an ephemeral port, secured by the TLS context the service was advertised
with. Dialing a service looks up its port on the peer's control server and
then opens a websocket to that port. Bytes are carried as binary messages.
"""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
import urllib.parse
from types import TracebackType
from typing import Any

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.asyncio.server import Server
from websockets.asyncio.server import ServerConnection

from unixbridge.config import NodeConfig
from unixbridge.exceptions import AcceptError
from unixbridge.exceptions import DialError
from unixbridge.exceptions import ServiceInUseError
from unixbridge.overlay.messages import decode_overlay_message
from unixbridge.overlay.messages import encode_overlay_message
from unixbridge.overlay.messages import OverlayMessage
from unixbridge.overlay.messages import OverlayMessageDecodeError
from unixbridge.overlay.messages import ServiceAdvertisement
from unixbridge.overlay.messages import ServiceListing
from unixbridge.overlay.messages import ServiceNotFound

logger = logging.getLogger(__name__)

_DIAL_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    websockets.exceptions.WebSocketException,
    OverlayMessageDecodeError,
)


class NetworkConnection:
    """Connection to a service over a websocket.

    Args:
        websocket: Open websocket connection.
        label: Description of the remote end, such as `node/service`.
    """

    def __init__(
        self,
        websocket: ClientConnection | ServerConnection,
        label: str,
    ) -> None:
        self._websocket = websocket
        self._label = label
        self._buffer = b''
        self._closed = False

    def __repr__(self) -> str:
        return f'{type(self).__name__}(label={self._label!r})'

    @property
    def name(self) -> str:
        """Description of the remote end."""
        return f'overlay:{self._label}'

    @property
    def closed(self) -> bool:
        """Connection has been closed."""
        return self._closed

    async def read(self, n: int) -> bytes:
        """Read up to `n` bytes. Empty bytes means end-of-stream.

        Raises:
            websockets.exceptions.ConnectionClosedError: If the websocket
                was closed abnormally.
        """
        if len(self._buffer) == 0:
            try:
                message = await self._websocket.recv()
            except websockets.exceptions.ConnectionClosedOK:
                return b''
            self._buffer = (
                message.encode() if isinstance(message, str) else message
            )
        data, self._buffer = self._buffer[:n], self._buffer[n:]
        return data

    async def write(self, data: bytes) -> None:
        """Send `data` as one binary message."""
        await self._websocket.send(data)

    async def close(self) -> None:
        """Close the websocket."""
        if self._closed:
            return
        self._closed = True
        await self._websocket.close()

    async def wait_closed(self) -> None:
        """Wait until the websocket is closed by either side."""
        await self._websocket.wait_closed()


class ServiceListener:
    """Listener accepting connections to one advertised service.

    Create instances with
    [`OverlayNode.listen_and_advertise()`][unixbridge.overlay.node.OverlayNode.listen_and_advertise].

    Args:
        node: Node the service is advertised on.
        service: Service name.
        tls: Server TLS context or `None`.
        metadata: Discovery metadata.
    """

    def __init__(
        self,
        node: OverlayNode,
        service: str,
        tls: ssl.SSLContext | None,
        metadata: dict[str, str],
    ) -> None:
        self._node = node
        self.service = service
        self._tls = tls
        self._metadata = dict(metadata)
        self._server: Server | None = None
        self._queue: asyncio.Queue[NetworkConnection | None] = asyncio.Queue()
        self._closed = False

    def __repr__(self) -> str:
        return (
            f'{type(self).__name__}(node={self._node.node_id!r}, '
            f'service={self.service!r})'
        )

    @property
    def closed(self) -> bool:
        """Listener has been closed."""
        return self._closed

    @property
    def port(self) -> int:
        """Port the service's websocket server is bound to."""
        assert self._server is not None
        return next(iter(self._server.sockets)).getsockname()[1]

    @property
    def advertisement(self) -> ServiceAdvertisement:
        """Advertisement published for the service."""
        return ServiceAdvertisement(
            node=self._node.node_id,
            service=self.service,
            port=self.port,
            tls=self._tls is not None,
            metadata=dict(self._metadata),
        )

    async def _handler(self, websocket: ServerConnection) -> None:
        host, port = websocket.remote_address[:2]
        conn = NetworkConnection(websocket, f'{host}:{port}/{self.service}')
        if self._closed:
            await conn.close()
            return
        await self._queue.put(conn)
        # The websocket is closed when this handler returns.
        await conn.wait_closed()

    async def start(self, host: str | None) -> None:
        """Start the service's websocket server on an ephemeral port.

        Binding to all interfaces (`host=None`) binds IPv4 only so that
        the service has exactly one port to advertise.
        """
        host = '0.0.0.0' if host is None else host
        self._server = await serve(self._handler, host, 0, ssl=self._tls)

    async def accept(self) -> NetworkConnection:
        """Wait for the next incoming connection.

        Raises:
            AcceptError: If the listener is closed.
        """
        if self._closed:
            raise AcceptError(f'Listener for {self.service} is closed.')
        conn = await self._queue.get()
        if conn is None:
            raise AcceptError(f'Listener for {self.service} is closed.')
        return conn

    async def close(self) -> None:
        """Stop listening and withdraw the advertisement.

        Connections which were already accepted stay open.
        """
        if self._closed:
            return
        self._closed = True
        self._node._withdraw(self)
        if self._server is not None:
            self._server.close(close_connections=False)
        while not self._queue.empty():
            conn = self._queue.get_nowait()
            if conn is not None:
                await conn.close()
        self._queue.put_nowait(None)


def _ssl_kwargs(
    address: str,
    ssl_context: ssl.SSLContext | None,
) -> dict[str, Any]:
    # websockets rejects an SSL context for ws:// URIs.
    if address.startswith('wss://') and ssl_context is not None:
        return {'ssl': ssl_context}
    return {}


async def _request(
    address: str,
    path: str,
    ssl_context: ssl.SSLContext | None,
    timeout: float,
) -> OverlayMessage:
    uri = f'{address.rstrip("/")}{path}'
    async with connect(
        uri,
        open_timeout=timeout,
        **_ssl_kwargs(address, ssl_context),
    ) as websocket:
        message = await asyncio.wait_for(websocket.recv(), timeout)
    if not isinstance(message, str):
        raise OverlayMessageDecodeError('Received non-string from websocket.')
    return decode_overlay_message(message)


async def lookup_services(
    address: str,
    ssl_context: ssl.SSLContext | None = None,
    timeout: float = 10,
) -> ServiceListing:
    """List the services advertised by a node.

    Args:
        address: Control server address of the node, starting with `ws://`
            or `wss://`.
        ssl_context: Optional SSL context for `wss://` addresses.
        timeout: Seconds to wait on the node.

    Returns:
        Advertisements of the node.

    Raises:
        OverlayMessageDecodeError: If the node replied with an unexpected
            message.
    """
    message = await _request(address, '/services', ssl_context, timeout)
    if not isinstance(message, ServiceListing):
        raise OverlayMessageDecodeError(
            f'Expected {ServiceListing.__name__} but got '
            f'{type(message).__name__}.',
        )
    return message


def _format_host(host: str) -> str:
    return f'[{host}]' if ':' in host else host


class OverlayNode:
    """Node of the websocket overlay network.

    Tip:
        This class can be used as an async context manager!
        ```python
        from unixbridge.config import NodeConfig
        from unixbridge.overlay.node import OverlayNode

        async with OverlayNode(NodeConfig(id='node-a')) as node:
            listener = await node.listen_and_advertise('echo', None, {})
            ...
        ```

    Args:
        config: Node configuration.
    """

    def __init__(self, config: NodeConfig) -> None:
        self.config = config
        self._server: Server | None = None
        self._services: dict[str, ServiceListener] = {}

        self._control_ssl: ssl.SSLContext | None = None
        if config.certfile is not None:
            self._control_ssl = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            self._control_ssl.load_cert_chain(
                config.certfile,
                keyfile=config.keyfile,
            )

        self._peer_ssl = ssl.create_default_context()
        if not config.verify_certificate:
            self._peer_ssl.check_hostname = False
            self._peer_ssl.verify_mode = ssl.CERT_NONE

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def node_id(self) -> str:
        """Identifier of this node."""
        return self.config.id

    @property
    def address(self) -> str:
        """Control server address peers on this host can reach."""
        if self._server is None:
            raise RuntimeError('Node has not been started.')
        port = next(iter(self._server.sockets)).getsockname()[1]
        host = self.config.host
        if host is None or host in ('0.0.0.0', '::'):
            host = 'localhost'
        scheme = 'ws' if self._control_ssl is None else 'wss'
        return f'{scheme}://{_format_host(host)}:{port}'

    def services(self) -> list[ServiceAdvertisement]:
        """Advertisements of the services on this node."""
        return [
            listener.advertisement
            for _, listener in sorted(self._services.items())
        ]

    async def _control_handler(self, websocket: ServerConnection) -> None:
        path = websocket.request.path if websocket.request is not None else ''
        message: OverlayMessage
        if path.rstrip('/') == '/services':
            message = ServiceListing(
                node=self.node_id,
                services=self.services(),
            )
        elif path.startswith('/services/'):
            name = urllib.parse.unquote(path[len('/services/') :])
            if name in self._services:
                message = self._services[name].advertisement
            else:
                message = ServiceNotFound(
                    f'Service {name} is not advertised on node '
                    f'{self.node_id}.',
                )
        else:
            message = ServiceNotFound(f'Unknown path {path}.')
        try:
            await websocket.send(encode_overlay_message(message))
        except websockets.exceptions.ConnectionClosed:
            logger.warning(
                f'Connection from {websocket.remote_address} closed before '
                'the lookup reply was sent',
            )

    async def start(self) -> None:
        """Start the node's control server."""
        self._server = await serve(
            self._control_handler,
            self.config.host,
            self.config.port,
            ssl=self._control_ssl,
        )
        logger.info(f'Overlay node {self.node_id} listening at {self.address}')

    async def close(self) -> None:
        """Close every service listener and the control server."""
        for listener in list(self._services.values()):
            await listener.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info(f'Overlay node {self.node_id} closed')

    def _withdraw(self, listener: ServiceListener) -> None:
        if self._services.get(listener.service) is listener:
            del self._services[listener.service]
            logger.info(f'Withdrew service {listener.service}')

    async def listen_and_advertise(
        self,
        service: str,
        tls: ssl.SSLContext | None,
        metadata: dict[str, str],
    ) -> ServiceListener:
        """Listen on a named service and advertise it to peers.

        Args:
            service: Service name.
            tls: Server TLS context or `None` to disable TLS.
            metadata: Discovery metadata published with the service.

        Returns:
            Listener accepting connections to the service.

        Raises:
            ServiceInUseError: If the service is already advertised.
            OSError: If the service's server cannot be bound.
        """
        if service in self._services:
            raise ServiceInUseError(
                f'Service {service} is already advertised on node '
                f'{self.node_id}.',
            )
        listener = ServiceListener(self, service, tls, metadata)
        self._services[service] = listener
        try:
            await listener.start(self.config.host)
        except BaseException:
            del self._services[service]
            raise
        logger.info(
            f'Advertising service {service} on port {listener.port} '
            f'(tls={tls is not None}, metadata={metadata})',
        )
        return listener

    def _peer_address(self, node: str) -> str:
        if node in self.config.peers:
            return self.config.peers[node]
        elif node == self.node_id and self._server is not None:
            return self.address
        raise DialError(f'Node {node} is not a known peer.')

    async def dial(
        self,
        node: str,
        service: str,
        tls: ssl.SSLContext | None,
    ) -> NetworkConnection:
        """Open a connection to a service on a node.

        Args:
            node: Identifier of the remote node.
            service: Service name on the remote node.
            tls: Client TLS context or `None` to disable TLS.

        Returns:
            Open connection to the service.

        Raises:
            DialError: If the node is unknown, the service is not advertised,
                or the connection cannot be opened.
        """
        address = self._peer_address(node)
        timeout = self.config.dial_timeout
        path = f'/services/{urllib.parse.quote(service)}'

        try:
            message = await _request(address, path, self._peer_ssl, timeout)
        except _DIAL_ERRORS as e:
            raise DialError(
                f'Failed to look up service {service} on node {node}: '
                f'{e.__class__.__name__}: {e}',
            ) from e

        if isinstance(message, ServiceNotFound):
            raise DialError(message.message)
        elif not isinstance(message, ServiceAdvertisement):
            raise DialError(
                f'Node {node} replied with unexpected message type '
                f'{type(message).__name__}.',
            )
        elif message.tls and tls is None:
            raise DialError(
                f'Service {service} on node {node} requires TLS but no TLS '
                'profile was given.',
            )

        host = urllib.parse.urlsplit(address).hostname or 'localhost'
        scheme = 'ws' if tls is None else 'wss'
        uri = f'{scheme}://{_format_host(host)}:{message.port}/'
        try:
            websocket = await connect(
                uri,
                open_timeout=timeout,
                **_ssl_kwargs(uri, tls),
            )
        except _DIAL_ERRORS as e:
            raise DialError(
                f'Failed to connect to service {service} on node {node}: '
                f'{e.__class__.__name__}: {e}',
            ) from e
        return NetworkConnection(websocket, f'{node}/{service}')
