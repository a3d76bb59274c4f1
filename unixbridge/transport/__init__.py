"""Local and overlay network transports."""
from __future__ import annotations

from unixbridge.transport.protocols import Connection
from unixbridge.transport.protocols import Listener
from unixbridge.transport.protocols import Overlay
