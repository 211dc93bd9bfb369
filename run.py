#!/usr/bin/env python3
"""
Convenience wrapper to run TSocks.

Usage: sudo python3 run.py connect

Or use the module directly:
    sudo python3 -m tsocks connect
"""

import sys

from tsocks.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
