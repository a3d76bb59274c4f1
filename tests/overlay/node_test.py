from __future__ import annotations

import asyncio

import pytest

from testing.overlay import node_config
from testing.overlay import OverlayPair
from testing.ssl import TLSFiles
from testing.utils import open_port
from unixbridge.exceptions import AcceptError
from unixbridge.exceptions import DialError
from unixbridge.exceptions import ServiceInUseError
from unixbridge.overlay.node import lookup_services
from unixbridge.overlay.node import OverlayNode
from unixbridge.tls import TLSProfiles
from unixbridge.transport.protocols import Overlay


@pytest.mark.asyncio()
async def test_node_is_overlay(overlay_node: OverlayNode) -> None:
    assert isinstance(overlay_node, Overlay)
    assert overlay_node.node_id == 'node-a'
    assert overlay_node.address.startswith('ws://127.0.0.1:')


@pytest.mark.asyncio()
async def test_address_before_start() -> None:
    node = OverlayNode(node_config('node-a', open_port()))
    with pytest.raises(RuntimeError):
        node.address  # noqa: B018


@pytest.mark.asyncio()
async def test_advertise_and_list(overlay_node: OverlayNode) -> None:
    metadata = {'kind': 'unix-proxy', 'path': '/tmp/a.sock'}
    listener = await overlay_node.listen_and_advertise('a', None, metadata)
    await overlay_node.listen_and_advertise('b', None, {})

    services = overlay_node.services()
    assert [s.service for s in services] == ['a', 'b']
    assert services[0].metadata == metadata
    assert services[0].port == listener.port
    assert not services[0].tls

    listing = await lookup_services(overlay_node.address)
    assert listing.node == 'node-a'
    assert listing.services == services


@pytest.mark.asyncio()
async def test_advertise_duplicate_service(overlay_node: OverlayNode) -> None:
    await overlay_node.listen_and_advertise('a', None, {})
    with pytest.raises(ServiceInUseError):
        await overlay_node.listen_and_advertise('a', None, {})


@pytest.mark.asyncio()
async def test_close_withdraws_advertisement(
    overlay_node: OverlayNode,
) -> None:
    listener = await overlay_node.listen_and_advertise('a', None, {})
    await listener.close()
    assert overlay_node.services() == []

    with pytest.raises(AcceptError):
        await listener.accept()

    # Name can be advertised again once withdrawn
    listener = await overlay_node.listen_and_advertise('a', None, {})
    await listener.close()


@pytest.mark.asyncio()
async def test_dial_and_relay(overlay_pair: OverlayPair) -> None:
    listener = await overlay_pair.b.listen_and_advertise('echo', None, {})

    client = await overlay_pair.a.dial('node-b', 'echo', None)
    server = await asyncio.wait_for(listener.accept(), 1)
    assert client.name == 'overlay:node-b/echo'

    await client.write(b'0123456789')
    assert await server.read(4) == b'0123'
    assert await server.read(4) == b'4567'
    assert await server.read(4) == b'89'

    await server.write(b'reply')
    assert await client.read(1024) == b'reply'

    await client.close()
    assert client.closed
    assert await asyncio.wait_for(server.read(1024), 1) == b''
    await server.close()


@pytest.mark.asyncio()
async def test_dial_self(overlay_node: OverlayNode) -> None:
    listener = await overlay_node.listen_and_advertise('echo', None, {})
    client = await overlay_node.dial('node-a', 'echo', None)
    server = await asyncio.wait_for(listener.accept(), 1)
    await client.close()
    await server.close()


@pytest.mark.asyncio()
async def test_dial_unknown_node(overlay_node: OverlayNode) -> None:
    with pytest.raises(DialError, match='not a known peer'):
        await overlay_node.dial('node-z', 'echo', None)


@pytest.mark.asyncio()
async def test_dial_unknown_service(overlay_pair: OverlayPair) -> None:
    with pytest.raises(DialError, match='not advertised'):
        await overlay_pair.a.dial('node-b', 'missing', None)


@pytest.mark.asyncio()
async def test_dial_unreachable_node() -> None:
    config = node_config('node-a', open_port(), **{'node-b': open_port()})
    async with OverlayNode(config) as node:
        with pytest.raises(DialError, match='Failed to look up'):
            await node.dial('node-b', 'echo', None)


@pytest.mark.asyncio()
async def test_dial_with_tls(
    overlay_pair: OverlayPair,
    tls_files: TLSFiles,
) -> None:
    profiles = TLSProfiles(tls_files.config)
    listener = await overlay_pair.b.listen_and_advertise(
        'secure',
        profiles.server('test'),
        {},
    )
    assert overlay_pair.b.services()[0].tls

    with pytest.raises(DialError, match='requires TLS'):
        await overlay_pair.a.dial('node-b', 'secure', None)

    client = await overlay_pair.a.dial(
        'node-b',
        'secure',
        profiles.client('test'),
    )
    server = await asyncio.wait_for(listener.accept(), 1)
    await client.write(b'secret')
    assert await server.read(1024) == b'secret'

    await client.close()
    await server.close()
