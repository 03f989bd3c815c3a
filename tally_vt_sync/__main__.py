"""
Main entry point for running tally_vt_sync as a module.

Usage:
    python -m tally_vt_sync --company C1 --division D1 [options]

This is equivalent to running:
    python -m tally_vt_sync.sync [options]
"""
import sys

from .sync import main

if __name__ == "__main__":
    sys.exit(main())
