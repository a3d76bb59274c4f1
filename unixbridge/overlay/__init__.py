"""Websocket overlay network node."""
from __future__ import annotations

from unixbridge.overlay.node import lookup_services
from unixbridge.overlay.node import NetworkConnection
from unixbridge.overlay.node import OverlayNode
