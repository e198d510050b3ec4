#!/usr/bin/env python3
"""Launch the pingwatch bot, or stream JSON events with --stdout.

Usage:
    python run.py [config.yaml] [--debug] [--trace] [--verbose] [--stdout]
"""
import asyncio
import sys

from pingwatch.main import main

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
