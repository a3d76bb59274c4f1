"""Exception types raised by proxies and transports."""
from __future__ import annotations


class ProxyError(Exception):
    """Base exception type for exceptions raised by unixbridge."""

    pass


class SetupError(ProxyError):
    """Proxy could not be started.

    Raised synchronously by a proxy's `start()` when acquiring the socket
    lock, listening, advertising, or resolving a security profile fails.
    Nothing is left running when this is raised.
    """

    pass


class ConfigurationError(SetupError):
    """Configuration or security profile could not be resolved."""

    pass


class SocketInUseError(SetupError):
    """Socket path is already held by another proxy."""

    pass


class ServiceInUseError(SetupError):
    """Service name is already advertised on this overlay node."""

    pass


class AcceptError(ProxyError):
    """Listener is closed or failed and will not accept more connections."""

    pass


class DialError(ProxyError):
    """Connection to the opposite transport could not be opened."""

    pass


class BridgeError(ProxyError):
    """Relay between two connections failed mid-session."""

    pass
