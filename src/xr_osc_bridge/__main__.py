"""
Run the relay server with ``python -m xr_osc_bridge``.

The installed commands are ``xr-osc-bridge-server`` and ``xr-osc-bridge-client``.
"""

from .cli import server_main

if __name__ == "__main__":
    server_main()
