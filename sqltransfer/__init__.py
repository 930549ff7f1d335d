"""sqltransfer - incremental table migration between relational databases."""

__version__ = "0.1.0"
__package_name__ = "sqltransfer"

# Initialize logging with default configuration
from sqltransfer.logging import configure_logging

configure_logging()

from .errors import (
    ConfigurationNotFoundError,
    ExtractionError,
    LoadError,
    NoActiveMappingsError,
    PersistenceError,
    RunAbortedError,
    TransferError,
    WatermarkAdvanceError,
)

__all__ = [
    "TransferError",
    "ConfigurationNotFoundError",
    "NoActiveMappingsError",
    "ExtractionError",
    "LoadError",
    "WatermarkAdvanceError",
    "PersistenceError",
    "RunAbortedError",
]
