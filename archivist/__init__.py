"""Archivist: fault-tolerant archive builds and pipeline reliability."""

__version__ = "1.0.0"
