"""Watermark state management.

Watermarks are the only state shared between runs; they are kept in a
DuckDB database through the StateBackend interface.
"""

from sqltransfer.core.state.backends import DuckDBStateBackend, StateBackend
from sqltransfer.core.state.watermark_store import WatermarkStore

__all__ = [
    "StateBackend",
    "DuckDBStateBackend",
    "WatermarkStore",
]
