"""Encrypted local archive for chat exports."""

__version__ = "0.1.0"
