"""Resolve named TLS profiles into SSL contexts."""
from __future__ import annotations

import ssl

from unixbridge.config import TLSClientConfig
from unixbridge.config import TLSConfig
from unixbridge.config import TLSServerConfig
from unixbridge.exceptions import ConfigurationError


def client_context(config: TLSClientConfig) -> ssl.SSLContext:
    """Create an SSL context for dialing from a client profile.

    Raises:
        OSError: If a certificate or key file cannot be read.
        ssl.SSLError: If a certificate or key file is invalid.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    if config.cafile is not None:
        context.load_verify_locations(cafile=config.cafile)
    else:
        context.load_default_certs(ssl.Purpose.SERVER_AUTH)
    if config.certfile is not None:
        context.load_cert_chain(config.certfile, keyfile=config.keyfile)
    if config.insecure_skip_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def server_context(config: TLSServerConfig) -> ssl.SSLContext:
    """Create an SSL context for listening from a server profile.

    Raises:
        OSError: If a certificate or key file cannot be read.
        ssl.SSLError: If a certificate or key file is invalid.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(config.certfile, keyfile=config.keyfile)
    if config.client_cafile is not None:
        context.load_verify_locations(cafile=config.client_cafile)
        context.verify_mode = ssl.CERT_REQUIRED
    return context


class TLSProfiles:
    """Registry of named client and server TLS profiles.

    A profile name of `None` resolves to `None`, meaning TLS is disabled
    for that connection.

    Args:
        config: Named TLS profiles.
    """

    def __init__(self, config: TLSConfig | None = None) -> None:
        self._config = TLSConfig() if config is None else config

    def client(self, name: str | None) -> ssl.SSLContext | None:
        """Resolve a client profile.

        Raises:
            ConfigurationError: If the profile does not exist or its
                certificate files cannot be loaded.
        """
        if name is None:
            return None
        if name not in self._config.clients:
            raise ConfigurationError(f'Unknown TLS client profile "{name}".')
        try:
            return client_context(self._config.clients[name])
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(
                f'Failed to load TLS client profile "{name}": {e}',
            ) from e

    def server(self, name: str | None) -> ssl.SSLContext | None:
        """Resolve a server profile.

        Raises:
            ConfigurationError: If the profile does not exist or its
                certificate files cannot be loaded.
        """
        if name is None:
            return None
        if name not in self._config.servers:
            raise ConfigurationError(f'Unknown TLS server profile "{name}".')
        try:
            return server_context(self._config.servers[name])
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(
                f'Failed to load TLS server profile "{name}": {e}',
            ) from e
