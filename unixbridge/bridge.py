"""Full-duplex byte relay between two connections."""
from __future__ import annotations

import asyncio
import logging

from unixbridge.exceptions import BridgeError
from unixbridge.transport.protocols import Connection

logger = logging.getLogger(__name__)

BUFFER_SIZE = 64 * 1024


async def _copy(source: Connection, dest: Connection) -> None:
    """Copy bytes from source to dest until source reaches end-of-stream.

    Raises:
        BridgeError: If reading from source or writing to dest fails.
    """
    while True:
        try:
            data = await source.read(BUFFER_SIZE)
        except Exception as e:
            raise BridgeError(
                f'Failed reading from {source.name}: '
                f'{e.__class__.__name__}: {e}',
            ) from e
        if len(data) == 0:
            return
        try:
            await dest.write(data)
        except Exception as e:
            raise BridgeError(
                f'Failed writing to {dest.name}: '
                f'{e.__class__.__name__}: {e}',
            ) from e


async def bridge(a: Connection, b: Connection) -> None:
    """Relay bytes between two connections until either side closes.

    Bytes read from `a` are written to `b` and bytes read from `b` are
    written to `a`. Each direction runs in its own task so a stalled
    direction does not block the other. When either direction reaches
    end-of-stream or fails, the other direction is cancelled and both
    connections are closed.

    Errors are logged and never raised, so a failed session cannot affect
    the caller.

    Args:
        a: First connection.
        b: Second connection.
    """
    a_to_b = asyncio.create_task(_copy(a, b))
    a_to_b.set_name(f'bridge-{a.name}->{b.name}')
    b_to_a = asyncio.create_task(_copy(b, a))
    b_to_a.set_name(f'bridge-{b.name}->{a.name}')
    directions = {a_to_b: (a, b), b_to_a: (b, a)}

    logger.debug(f'Bridging {a.name} <-> {b.name}')
    try:
        await asyncio.wait(directions, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in directions:
            task.cancel()
        await asyncio.gather(*directions, return_exceptions=True)
        await a.close()
        await b.close()

    for task, (source, dest) in directions.items():
        if task.cancelled():
            continue
        exception = task.exception()
        if exception is not None:
            logger.error(
                f'Bridge {source.name} -> {dest.name} failed: {exception}',
            )
    logger.debug(f'Closed bridge {a.name} <-> {b.name}')
