from __future__ import annotations

import asyncio
import os
import pathlib
from unittest import mock
from unittest.mock import AsyncMock

import click.testing
import pytest

from testing.overlay import node_config
from testing.utils import open_port
from unixbridge.config import BridgeConfig
from unixbridge.config import InboundProxyConfig
from unixbridge.config import LoggingConfig
from unixbridge.config import OutboundProxyConfig
from unixbridge.exceptions import SetupError
from unixbridge.overlay.messages import ServiceAdvertisement
from unixbridge.overlay.messages import ServiceListing
from unixbridge.overlay.node import lookup_services
from unixbridge.run import cli
from unixbridge.run import configure_logging
from unixbridge.run import serve

_CONFIG = """\
[node]
id = "node-a"
port = 8710

[[proxies]]
kind = "outbound"
service = "docker"
path = "/var/run/docker.sock"

[logging]
default_level = "INFO"
"""


@pytest.mark.timeout(5)
@pytest.mark.asyncio()
async def test_serve_until_stopped(socket_dir: str) -> None:
    node = node_config('node-a', open_port())
    address = f'ws://{node.host}:{node.port}'
    config = BridgeConfig(
        node=node,
        proxies=[
            OutboundProxyConfig(
                service='target',
                path=os.path.join(socket_dir, 'target.sock'),
            ),
            InboundProxyConfig(
                path=os.path.join(socket_dir, 'inbound.sock'),
                remote_node='node-a',
                remote_service='target',
            ),
        ],
    )

    stop: asyncio.Future[None] = asyncio.get_running_loop().create_future()
    task = asyncio.create_task(serve(config, stop))

    inbound_path = os.path.join(socket_dir, 'inbound.sock')
    listing: ServiceListing | None = None
    while True:
        try:
            listing = await lookup_services(address, timeout=1)
        except OSError:
            pass
        if (
            listing is not None
            and len(listing.services) > 0
            and os.path.exists(inbound_path)
        ):
            break
        await asyncio.sleep(0.01)

    assert [s.service for s in listing.services] == ['target']

    stop.set_result(None)
    await task

    assert not os.path.exists(inbound_path)


@pytest.mark.timeout(5)
@pytest.mark.asyncio()
async def test_serve_setup_failure_stops_started_proxies(
    socket_dir: str,
) -> None:
    config = BridgeConfig(
        node=node_config('node-a', open_port()),
        proxies=[
            InboundProxyConfig(
                path=os.path.join(socket_dir, 'inbound.sock'),
                remote_node='node-a',
                remote_service='target',
            ),
            InboundProxyConfig(
                path=os.path.join(socket_dir, 'missing', 'inbound.sock'),
                remote_node='node-a',
                remote_service='target',
            ),
        ],
    )

    stop: asyncio.Future[None] = asyncio.get_running_loop().create_future()
    with pytest.raises(SetupError):
        await serve(config, stop)

    assert not os.path.exists(os.path.join(socket_dir, 'inbound.sock'))


def test_configure_logging(tmp_path: pathlib.Path) -> None:
    log_dir = tmp_path / 'logs'
    config = BridgeConfig(
        node=node_config('node-a', 0),
        logging=LoggingConfig(log_dir=str(log_dir)),
    )
    configure_logging(config)
    assert log_dir.is_dir()


def test_run_invoke(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'unixbridge.toml'
    filepath.write_text(_CONFIG)

    async def _mock_serve(config: BridgeConfig) -> None:
        assert config.node.id == 'node-a'
        assert config.logging.default_level == 'WARNING'
        assert config.logging.log_dir == str(tmp_path)

    runner = click.testing.CliRunner()
    with mock.patch(
        'unixbridge.run.serve',
        AsyncMock(side_effect=_mock_serve),
    ) as mock_serve, mock.patch('unixbridge.run.configure_logging'):
        result = runner.invoke(
            cli,
            [
                'run',
                '--config',
                str(filepath),
                '--log-dir',
                str(tmp_path),
                '--log-level',
                'warning',
            ],
        )
        mock_serve.assert_awaited_once()

    assert result.exit_code == 0, result.output


def test_run_missing_config(tmp_path: pathlib.Path) -> None:
    runner = click.testing.CliRunner()
    result = runner.invoke(
        cli,
        ['run', '--config', str(tmp_path / 'missing.toml')],
    )
    assert result.exit_code != 0


def test_services_invoke() -> None:
    listing = ServiceListing(
        node='node-b',
        services=[
            ServiceAdvertisement(
                node='node-b',
                service='docker',
                port=1234,
                tls=True,
                metadata={'kind': 'unix-proxy', 'path': '/tmp/docker.sock'},
            ),
        ],
    )

    runner = click.testing.CliRunner()
    with mock.patch(
        'unixbridge.run.lookup_services',
        AsyncMock(return_value=listing),
    ) as mock_lookup:
        result = runner.invoke(cli, ['services', 'ws://localhost:8710'])
        mock_lookup.assert_awaited_once()

    assert result.exit_code == 0, result.output
    assert 'docker (port=1234, tls)' in result.output
    assert 'path=/tmp/docker.sock' in result.output


def test_services_invoke_empty() -> None:
    runner = click.testing.CliRunner()
    with mock.patch(
        'unixbridge.run.lookup_services',
        AsyncMock(return_value=ServiceListing(node='node-b')),
    ):
        result = runner.invoke(cli, ['services', 'ws://localhost:8710'])

    assert result.exit_code == 0, result.output
    assert 'advertises no services' in result.output


def test_services_bad_address() -> None:
    runner = click.testing.CliRunner()
    result = runner.invoke(cli, ['services', 'localhost:8710'])
    assert result.exit_code != 0
    assert 'ws://' in result.output
