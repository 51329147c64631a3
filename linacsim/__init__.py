"""
LINAC study emulator.

A treatment console and an imaging display kept in sync through a shared
per-scenario state record.
"""

__version__ = "10.0.0"
