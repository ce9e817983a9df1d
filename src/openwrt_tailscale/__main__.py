"""Entry point for ``python -m openwrt_tailscale``."""

import sys

from openwrt_tailscale.cli import main

if __name__ == "__main__":
    sys.exit(main())
