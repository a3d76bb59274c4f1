"""Inbound and outbound Unix socket proxies.

An [`InboundProxy`][unixbridge.proxy.InboundProxy] listens on a local Unix
socket and forwards each connection to a service on the overlay network.
An [`OutboundProxy`][unixbridge.proxy.OutboundProxy] advertises a service on
the overlay network and forwards each connection to a local Unix socket.

Both run one accept loop task. Each accepted connection is handled in its
own task which dials the opposite transport and bridges the two
connections. A failed dial or bridge only affects its own connection. The
accept loop only ends when its listener fails or the proxy is stopped.

Example:
    ```python
    from unixbridge.config import InboundProxyConfig
    from unixbridge.proxy import create_proxy
    from unixbridge.tls import TLSProfiles

    config = InboundProxyConfig(
        path='/tmp/docker.sock',
        remote_node='node-b',
        remote_service='docker',
    )
    async with create_proxy(config, node, TLSProfiles()) as proxy:
        await proxy.wait_closed()
    ```
"""
from __future__ import annotations

import asyncio
import enum
import logging
import ssl
import sys
from types import TracebackType
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from unixbridge.bridge import bridge
from unixbridge.config import InboundProxyConfig
from unixbridge.config import OutboundProxyConfig
from unixbridge.config import PROXY_METADATA_KIND
from unixbridge.config import ProxyConfig
from unixbridge.exceptions import DialError
from unixbridge.exceptions import SetupError
from unixbridge.lock import acquire_exclusive
from unixbridge.lock import SocketLock
from unixbridge.tls import TLSProfiles
from unixbridge.transport import local
from unixbridge.transport.protocols import Connection
from unixbridge.transport.protocols import Listener
from unixbridge.transport.protocols import Overlay
from unixbridge.utils.tasks import TaskSet

logger = logging.getLogger(__name__)


class ProxyState(enum.Enum):
    """Lifecycle states of a proxy."""

    IDLE = 'idle'
    """Created but not started."""
    STARTING = 'starting'
    """Acquiring the socket lock or advertising the service."""
    ACCEPTING = 'accepting'
    """Accept loop is running."""
    STOPPED = 'stopped'
    """Setup failed, the listener failed, or the proxy was stopped."""


class BaseProxy:
    """Accept loop shared by inbound and outbound proxies.

    Subclasses open the listener, dial the opposite transport for each
    accepted connection, and tear the listener down when the loop ends.

    Args:
        name: Name used in logs and task names.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = ProxyState.IDLE
        self._listener: Listener | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self._sessions = TaskSet(f'{name}-session')

    def __repr__(self) -> str:
        return f'{type(self).__name__}(name={self.name!r})'

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.stop()

    @property
    def state(self) -> ProxyState:
        """Current lifecycle state."""
        return self._state

    @property
    def listener(self) -> Listener:
        """Listener the accept loop accepts connections from."""
        if self._listener is None:
            raise RuntimeError(f'{self.name} has not been started.')
        return self._listener

    @property
    def sessions(self) -> TaskSet:
        """Tasks handling accepted connections."""
        return self._sessions

    async def _open_listener(self) -> Listener:
        raise NotImplementedError

    async def _close_listener(self) -> None:
        raise NotImplementedError

    async def _dial(self) -> Connection:
        raise NotImplementedError

    async def start(self) -> None:
        """Open the listener and start the accept loop.

        Raises:
            SetupError: If the listener cannot be opened. Nothing is left
                running in this case.
            RuntimeError: If the proxy was already started.
        """
        if self._state is not ProxyState.IDLE:
            raise RuntimeError(f'{self.name} was already started.')
        self._state = ProxyState.STARTING
        try:
            self._listener = await self._open_listener()
        except SetupError:
            self._state = ProxyState.STOPPED
            raise
        except OSError as e:
            self._state = ProxyState.STOPPED
            raise SetupError(f'Failed to start {self.name}: {e}') from e

        self._state = ProxyState.ACCEPTING
        self._accept_task = asyncio.create_task(self._accept_loop())
        self._accept_task.set_name(f'{self.name}-accept')
        self._accept_task.add_done_callback(self._accept_done)
        logger.info(f'Started {self.name}')

    async def _accept_loop(self) -> None:
        assert self._listener is not None
        try:
            while True:
                try:
                    conn = await self._listener.accept()
                except Exception as e:
                    logger.error(
                        f'Error accepting connection in {self.name}: {e}',
                    )
                    return
                logger.debug(f'{self.name} accepted connection {conn.name}')
                self._sessions.spawn(self._handle(conn))
        finally:
            self._state = ProxyState.STOPPED
            await self._close_listener()
            logger.info(f'Accept loop of {self.name} stopped')

    async def _handle(self, conn: Connection) -> None:
        try:
            other = await self._dial()
        except DialError as e:
            logger.error(f'Error connecting {self.name}: {e}')
            await conn.close()
            return
        except BaseException:
            await conn.close()
            raise
        await bridge(conn, other)

    def _accept_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exception = task.exception()
        if exception is not None:
            logger.error(
                f'Accept loop of {self.name} failed: '
                f'{type(exception).__name__}: {exception}',
            )

    async def wait_closed(self) -> None:
        """Wait until the accept loop has stopped."""
        if self._accept_task is not None:
            await asyncio.wait({self._accept_task})

    async def stop(self) -> None:
        """Stop the accept loop and cancel every session.

        The listener is closed and, for inbound proxies, the socket lock is
        released. Stopping a stopped proxy is a no-op.
        """
        if self._accept_task is not None and not self._accept_task.done():
            self._accept_task.cancel()
        await self.wait_closed()
        await self._sessions.cancel()
        # The accept loop does not run its cleanup if it was cancelled
        # before its first step.
        if self._listener is not None:
            await self._close_listener()
        self._state = ProxyState.STOPPED


class InboundProxy(BaseProxy):
    """Listen on a Unix socket and forward connections over the overlay.

    Args:
        config: Proxy configuration.
        overlay: Overlay network to dial through.
        tls: Client TLS context for overlay connections or `None`.
    """

    def __init__(
        self,
        config: InboundProxyConfig,
        overlay: Overlay,
        tls: ssl.SSLContext | None,
    ) -> None:
        super().__init__(f'inbound-proxy[{config.path}]')
        self.config = config
        self._overlay = overlay
        self._tls = tls
        self._lock: SocketLock | None = None

    @property
    def lock(self) -> SocketLock | None:
        """Lock held on the socket path while the proxy is listening."""
        return self._lock

    async def _open_listener(self) -> Listener:
        listener, self._lock = await acquire_exclusive(
            self.config.path,
            self.config.permissions,
        )
        return listener

    async def _close_listener(self) -> None:
        assert self._lock is not None
        await self._lock.release()

    async def _dial(self) -> Connection:
        return await self._overlay.dial(
            self.config.remote_node,
            self.config.remote_service,
            self._tls,
        )


class OutboundProxy(BaseProxy):
    """Listen on the overlay and forward connections to a Unix socket.

    The service is advertised with metadata identifying it as a Unix
    socket proxy and naming the local socket path.

    Args:
        config: Proxy configuration.
        overlay: Overlay network to listen on.
        tls: Server TLS context for the overlay listener or `None`.
    """

    def __init__(
        self,
        config: OutboundProxyConfig,
        overlay: Overlay,
        tls: ssl.SSLContext | None,
    ) -> None:
        super().__init__(f'outbound-proxy[{config.service}]')
        self.config = config
        self._overlay = overlay
        self._tls = tls

    @property
    def metadata(self) -> dict[str, str]:
        """Discovery metadata advertised with the service."""
        return {'kind': PROXY_METADATA_KIND, 'path': self.config.path}

    async def _open_listener(self) -> Listener:
        return await self._overlay.listen_and_advertise(
            self.config.service,
            self._tls,
            self.metadata,
        )

    async def _close_listener(self) -> None:
        await self.listener.close()

    async def _dial(self) -> Connection:
        return await local.dial(self.config.path)


Proxy = Union[InboundProxy, OutboundProxy]


def create_proxy(
    config: ProxyConfig,
    overlay: Overlay,
    profiles: TLSProfiles,
) -> Proxy:
    """Create the proxy for a configuration variant.

    The TLS profile named by the configuration is resolved here. Call
    `start()` on the returned proxy to open its listener.

    Args:
        config: Inbound or outbound proxy configuration.
        overlay: Overlay network the proxy listens on or dials through.
        profiles: Named TLS profiles.

    Returns:
        Unstarted proxy.

    Raises:
        ConfigurationError: If the TLS profile cannot be resolved.
    """
    if isinstance(config, InboundProxyConfig):
        return InboundProxy(config, overlay, profiles.client(config.tls))
    elif isinstance(config, OutboundProxyConfig):
        return OutboundProxy(config, overlay, profiles.server(config.tls))
    else:
        raise AssertionError('Unreachable.')
