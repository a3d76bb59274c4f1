"""Expose Unix domain sockets across an overlay network."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('unixbridge')
