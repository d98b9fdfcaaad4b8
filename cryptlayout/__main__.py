#!/usr/bin/env python3
"""
Main entry point for the cryptlayout tool.
"""
from cryptlayout.cli import main

if __name__ == "__main__":
    import sys
    sys.exit(main())
