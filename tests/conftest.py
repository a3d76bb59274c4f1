from __future__ import annotations

# Import fixtures from testing/ so they are known by pytest
# and can be used by any test module.
from testing.overlay import overlay_node
from testing.overlay import overlay_pair
from testing.ssl import tls_files
from testing.utils import socket_dir
