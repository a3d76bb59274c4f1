"""Message types exchanged with an overlay node's control server."""
from __future__ import annotations

import dataclasses
import enum
import json
import sys
from typing import Any


class OverlayMessageType(enum.Enum):
    """Types of messages supported."""

    service_advertisement = 'ServiceAdvertisement'
    """Advertisement of one service."""
    service_listing = 'ServiceListing'
    """All services advertised by a node."""
    service_not_found = 'ServiceNotFound'
    """Requested service or path is unknown."""


@dataclasses.dataclass
class OverlayMessage:
    """Base message."""

    pass


@dataclasses.dataclass
class ServiceAdvertisement(OverlayMessage):
    """Service advertised by a node.

    Attributes:
        node: Identifier of the node the service is on.
        service: Service name.
        port: Port of the service's websocket server on the node's host.
        tls: If the service requires TLS.
        metadata: Discovery metadata, e.g. the kind of proxy and the local
            socket path.
    """

    node: str
    service: str
    port: int
    tls: bool = False
    metadata: dict[str, str] = dataclasses.field(default_factory=dict)
    message_type: str = OverlayMessageType.service_advertisement.name


@dataclasses.dataclass
class ServiceListing(OverlayMessage):
    """Every service advertised by a node.

    Attributes:
        node: Identifier of the node.
        services: Advertisements of the node.
    """

    node: str
    services: list[ServiceAdvertisement] = dataclasses.field(
        default_factory=list,
    )
    message_type: str = OverlayMessageType.service_listing.name

    def __post_init__(self) -> None:
        services: list[ServiceAdvertisement] = []
        for service in self.services:
            if isinstance(service, dict):
                service = dict(service)
                service.pop('message_type', None)
                service = ServiceAdvertisement(**service)
            services.append(service)
        self.services = services


@dataclasses.dataclass
class ServiceNotFound(OverlayMessage):
    """Reply to a lookup of an unknown service.

    Attributes:
        message: Description of the error.
    """

    message: str
    message_type: str = OverlayMessageType.service_not_found.name


class OverlayMessageError(Exception):
    """Base exception type for overlay messages."""

    pass


class OverlayMessageDecodeError(OverlayMessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class OverlayMessageEncodeError(OverlayMessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def decode_overlay_message(message: str) -> OverlayMessage:
    """Decode JSON string into correct overlay message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        OverlayMessageDecodeError: If the message cannot be decoded.
    """
    try:
        data: dict[str, Any] = json.loads(message)
    except json.JSONDecodeError as e:
        raise OverlayMessageDecodeError(
            'Failed to load string as JSON.',
        ) from e

    if not isinstance(data, dict):
        raise OverlayMessageDecodeError('Message is not a JSON object.')

    try:
        message_type_name = data.pop('message_type')
    except KeyError as e:
        raise OverlayMessageDecodeError(
            'Message does not contain a message_type key.',
        ) from e

    try:
        message_type = getattr(
            sys.modules[__name__],
            OverlayMessageType[message_type_name].value,
        )
    except (AttributeError, KeyError, TypeError) as e:
        raise OverlayMessageDecodeError(
            'The message is of an unknown message type: '
            f'{message_type_name}.',
        ) from e

    try:
        return message_type(**data)
    except TypeError as e:
        raise OverlayMessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e


def encode_overlay_message(message: OverlayMessage) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        OverlayMessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, OverlayMessage):
        raise OverlayMessageEncodeError(
            f'Message is not an instance of {OverlayMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data = dataclasses.asdict(message)

    try:
        return json.dumps(data)
    except TypeError as e:
        raise OverlayMessageEncodeError('Error encoding message.') from e
