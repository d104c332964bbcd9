"""Incremental activity and TVL statistics for autonomous agent addresses."""

__version__ = "0.1.0"
