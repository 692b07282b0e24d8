"""Allow ``python -m vps_manager``."""

import sys

from vps_manager import cli

if __name__ == "__main__":
    sys.exit(cli.main())
