"""Proxy, overlay node, and TLS profile configuration.

Configuration is pure data: models are validated once when constructed or
parsed from a TOML file and are never mutated afterwards. Opening sockets
and spawning tasks happens later in
[`create_proxy()`][unixbridge.proxy.create_proxy] and
[`serve()`][unixbridge.run.serve].
"""
from __future__ import annotations

import logging
import pathlib
import sys
from typing import Annotated
from typing import Literal
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from unixbridge.utils.config import read

DEFAULT_PERMISSIONS = 0o600
DEFAULT_NODE_PORT = 8710
PROXY_METADATA_KIND = 'unix-proxy'


def _validate_name(kind: str, v: str) -> str:
    if len(v) == 0 or '/' in v:
        raise ValueError(
            f'{kind} must be non-empty and must not contain "/". Got "{v}".',
        )
    return v


def _validate_path(v: str) -> str:
    if len(v) == 0 or '\x00' in v:
        raise ValueError(
            'Socket path must be non-empty and must not contain null bytes.',
        )
    return v


class InboundProxyConfig(BaseModel):
    """Listen on a Unix socket and forward connections over the overlay.

    Attributes:
        kind: Variant tag.
        path: Socket path, which will be overwritten.
        permissions: Socket file permission bits.
        remote_node: Overlay node to connect to.
        remote_service: Overlay service name to connect to.
        tls: Name of the TLS client profile used for the overlay connection.
            `None` disables TLS.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    kind: Literal['inbound'] = 'inbound'
    path: str
    permissions: int = DEFAULT_PERMISSIONS
    remote_node: str
    remote_service: str
    tls: str | None = None

    @field_validator('path')
    @classmethod
    def _path_validator(cls, v: str) -> str:
        return _validate_path(v)

    @field_validator('permissions')
    @classmethod
    def _permissions_validator(cls, v: int) -> int:
        if not 0 <= v <= 0o777:
            raise ValueError(
                f'Permissions must be in the range [0, 0o777]. Got {v:#o}.',
            )
        return v

    @field_validator('remote_node')
    @classmethod
    def _remote_node_validator(cls, v: str) -> str:
        return _validate_name('Remote node', v)

    @field_validator('remote_service')
    @classmethod
    def _remote_service_validator(cls, v: str) -> str:
        return _validate_name('Remote service', v)


class OutboundProxyConfig(BaseModel):
    """Listen on the overlay and forward connections to a Unix socket.

    Attributes:
        kind: Variant tag.
        service: Overlay service name to bind to.
        path: Socket path, which must already exist when connections arrive.
        tls: Name of the TLS server profile used for the overlay listener.
            `None` disables TLS.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    kind: Literal['outbound'] = 'outbound'
    service: str
    path: str
    tls: str | None = None

    @field_validator('service')
    @classmethod
    def _service_validator(cls, v: str) -> str:
        return _validate_name('Service', v)

    @field_validator('path')
    @classmethod
    def _path_validator(cls, v: str) -> str:
        return _validate_path(v)


ProxyConfig = Annotated[
    Union[InboundProxyConfig, OutboundProxyConfig],
    Field(discriminator='kind'),
]


class TLSClientConfig(BaseModel):
    """TLS profile used when dialing a service on the overlay.

    Attributes:
        cafile: Trusted CA certificates (PEM). If `None`, the system
            defaults are used.
        certfile: Client certificate (PEM) for mutual TLS.
        keyfile: Private key of the client certificate. If not specified,
            the key will be taken from the certfile.
        insecure_skip_verify: Do not verify the server's certificate.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    cafile: str | None = None
    certfile: str | None = None
    keyfile: str | None = None
    insecure_skip_verify: bool = False


class TLSServerConfig(BaseModel):
    """TLS profile used when listening for a service on the overlay.

    Attributes:
        certfile: Server certificate (PEM).
        keyfile: Private key of the server certificate. If not specified,
            the key will be taken from the certfile.
        client_cafile: CA certificates used to verify client certificates.
            If set, clients must present a certificate.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    certfile: str
    keyfile: str | None = None
    client_cafile: str | None = None


class TLSConfig(BaseModel):
    """Named TLS profiles.

    Attributes:
        clients: Client profiles by name.
        servers: Server profiles by name.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    clients: dict[str, TLSClientConfig] = Field(default_factory=dict)
    servers: dict[str, TLSServerConfig] = Field(default_factory=dict)


class NodeConfig(BaseModel):
    """Overlay node configuration.

    Attributes:
        id: Node identifier other nodes dial this node by.
        host: Network interface the node's control server binds to.
        port: Network port the node's control server binds to.
        certfile: Certificate file (PEM) used to enable TLS on the control
            server.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        peers: Mapping of node identifiers to control server addresses.
            Addresses start with `ws://` or `wss://`.
        verify_certificate: Verify the certificates of `wss://` peer
            control servers.
        dial_timeout: Seconds to wait on service lookup and on opening a
            service connection.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    id: str
    host: str | None = None
    port: int = DEFAULT_NODE_PORT
    certfile: str | None = None
    keyfile: str | None = None
    peers: dict[str, str] = Field(default_factory=dict)
    verify_certificate: bool = True
    dial_timeout: float = 10

    @field_validator('id')
    @classmethod
    def _id_validator(cls, v: str) -> str:
        return _validate_name('Node ID', v)

    @field_validator('port')
    @classmethod
    def _port_validator(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f'Port must be in the range [0, 65535]. Got {v}.')
        return v

    @field_validator('peers')
    @classmethod
    def _peers_validator(cls, v: dict[str, str]) -> dict[str, str]:
        for node, address in v.items():
            _validate_name('Peer node ID', node)
            if not address.startswith(('ws://', 'wss://')):
                raise ValueError(
                    f'Address of peer {node} must start with ws:// or wss://. '
                    f'Got {address}.',
                )
        return v


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING


class BridgeConfig(BaseModel):
    """Top-level configuration of a unixbridge process.

    Attributes:
        node: Overlay node configuration.
        tls: Named TLS profiles.
        proxies: Inbound and outbound proxy definitions.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    node: NodeConfig
    tls: TLSConfig = Field(default_factory=TLSConfig)
    proxies: list[ProxyConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="unixbridge.toml"
            [node]
            id = "node-a"
            port = 8710

            [node.peers]
            node-b = "ws://10.0.0.2:8710"

            [[proxies]]
            kind = "inbound"
            path = "/tmp/docker.sock"
            remote_node = "node-b"
            remote_service = "docker"
            ```

            ```python
            from unixbridge.config import BridgeConfig

            config = BridgeConfig.from_toml('unixbridge.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        return read(cls, filepath)
