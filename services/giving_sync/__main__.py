"""
Entry point for running the service as a module.

Usage:
    python -m services.giving_sync <command> [args]
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
