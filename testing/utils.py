"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
import tempfile
from typing import Generator

import pytest


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture()
def socket_dir() -> Generator[str, None, None]:
    """Temporary directory with a path short enough for Unix sockets.

    Unix socket paths are limited to about 100 characters so pytest's
    `tmp_path` can be too long.
    """
    with tempfile.TemporaryDirectory(prefix='ub-', dir='/tmp') as path:
        yield path


async def read_until_closed(
    reader: asyncio.StreamReader,
    timeout: float = 2,
) -> bytes:
    """Read from a stream until end-of-stream.

    Raises:
        asyncio.TimeoutError: If the stream is not closed within `timeout`.
    """
    return await asyncio.wait_for(reader.read(), timeout)


async def read_exactly(
    reader: asyncio.StreamReader,
    n: int,
    timeout: float = 2,
) -> bytes:
    """Read exactly `n` bytes from a stream within `timeout` seconds."""
    return await asyncio.wait_for(reader.readexactly(n), timeout)


async def echo_server(
    path: str,
) -> asyncio.AbstractServer:
    """Start a Unix socket server which echoes every byte it receives."""

    async def _echo(
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        while True:
            data = await reader.read(4096)
            if len(data) == 0:
                break
            writer.write(data)
            await writer.drain()
        writer.close()

    return await asyncio.start_unix_server(_echo, path=path)
