"""CLI and serving functions for running unixbridge proxies."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import sys

import click

from unixbridge.config import BridgeConfig
from unixbridge.overlay.node import lookup_services
from unixbridge.overlay.node import OverlayNode
from unixbridge.proxy import create_proxy
from unixbridge.proxy import Proxy
from unixbridge.tls import TLSProfiles

logger = logging.getLogger(__name__)


async def serve(
    config: BridgeConfig,
    stop: asyncio.Future[None] | None = None,
) -> None:
    """Run the overlay node and every configured proxy.

    All proxies are created and started before any of them accept
    connections. If one fails to start, the proxies already started are
    stopped and the error is raised. Once running, a proxy whose listener
    fails stops on its own without affecting the others.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`BridgeConfig.logging`][unixbridge.config.BridgeConfig] is the
        responsibility of the caller.

    Args:
        config: Bridge configuration.
        stop: Future which stops serving when set. If `None`, serving
            stops on SIGINT or SIGTERM.

    Raises:
        SetupError: If a proxy cannot be created or started.
    """
    loop = asyncio.get_running_loop()
    signals = stop is None
    if stop is None:
        # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
        stop = loop.create_future()
        loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
        loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Serving configuration:\n{config_repr}')

    profiles = TLSProfiles(config.tls)
    proxies: list[Proxy] = []
    try:
        async with OverlayNode(config.node) as node:
            try:
                for proxy_config in config.proxies:
                    proxy = create_proxy(proxy_config, node, profiles)
                    await proxy.start()
                    proxies.append(proxy)

                logger.info(f'Running {len(proxies)} proxies')
                logger.info('Use ctrl-C to stop')
                await stop
            finally:
                for proxy in proxies:
                    await proxy.stop()
    finally:
        if signals:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Shutdown')


def configure_logging(config: BridgeConfig) -> None:
    """Configure logging to stdout and an optional rotating file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'unixbridge.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)


@click.group()
def cli() -> None:
    """Expose Unix sockets across an overlay network."""
    pass


@cli.command()
@click.option(
    '--config',
    '-c',
    'config_path',
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help='Configuration file.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def run(
    config_path: str,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run the overlay node and proxies in a configuration file.

    The remaining CLI options will override the options provided in the
    configuration file.
    """
    config = BridgeConfig.from_toml(config_path)

    # Override config with CLI options if given
    logging_config = config.logging
    if log_dir is not None:
        logging_config = logging_config.model_copy(
            update={'log_dir': log_dir},
        )
    if log_level is not None:
        logging_config = logging_config.model_copy(
            update={'default_level': log_level.upper()},
        )
    config = config.model_copy(update={'logging': logging_config})

    configure_logging(config)
    asyncio.run(serve(config))


@cli.command()
@click.argument('address')
@click.option(
    '--timeout',
    default=10.0,
    type=float,
    show_default=True,
    help='Seconds to wait on the node.',
)
def services(address: str, timeout: float) -> None:
    """List the services advertised by the node at ADDRESS."""
    if not (address.startswith('ws://') or address.startswith('wss://')):
        raise click.BadParameter(
            'Address must start with ws:// or wss://.',
            param_hint='ADDRESS',
        )

    listing = asyncio.run(lookup_services(address, timeout=timeout))
    if len(listing.services) == 0:
        click.echo(f'Node {listing.node} advertises no services.')
        return

    click.echo(f'Services advertised by node {listing.node}:')
    for service in listing.services:
        metadata = ', '.join(
            f'{key}={value}' for key, value in sorted(service.metadata.items())
        )
        tls = 'tls' if service.tls else 'plain'
        click.echo(
            f'  {service.service} (port={service.port}, {tls}) {metadata}',
        )
