"""
Console entry points for the relay (``xr-osc-bridge-server``) and the
capture client (``xr-osc-bridge-client``).
"""

import sys
from collections.abc import Callable

from . import client, server


def _run(entry: Callable[[], None], role: str) -> None:
    try:
        entry()
    except KeyboardInterrupt:
        print(f"\n{role} interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


def server_main() -> None:
    """Entry point for the ``xr-osc-bridge-server`` command."""
    _run(server.main, "Relay")


def client_main() -> None:
    """Entry point for the ``xr-osc-bridge-client`` command."""
    _run(client.main, "Capture client")


if __name__ == "__main__":
    server_main()
