"""WARDEN CLI entry point — python -m warden"""

from __future__ import annotations

import sys

from warden.cli import main

if __name__ == "__main__":
    sys.exit(main())
