#!/usr/bin/env python3
"""
Main entry point for tokenkeeper
"""

import sys

from tokenkeeper.main import main

if __name__ == "__main__":
    sys.exit(main())
