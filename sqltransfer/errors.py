"""Exception hierarchy for the transfer engine.

Every error carries the name of the component or table it concerns and
renders as ``[name] message``.
"""

from typing import Optional


class TransferError(Exception):
    """Base exception for transfer-related errors."""

    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(f"[{source}] {message}")


class ConfigurationNotFoundError(TransferError):
    """Raised when a configuration id does not exist or is inactive."""

    def __init__(self, configuration_id, **kwargs):
        self.configuration_id = configuration_id
        super().__init__(
            "resolver", f"Configuration '{configuration_id}' not found"
        )


class NoActiveMappingsError(TransferError):
    """Raised when a configuration resolves to zero table mappings."""

    def __init__(self, configuration_id, table_filter=None, **kwargs):
        self.configuration_id = configuration_id
        self.table_filter = table_filter
        detail = f" matching {sorted(table_filter)}" if table_filter else ""
        super().__init__(
            "resolver",
            f"Configuration '{configuration_id}' has no active table mappings{detail}",
        )


class ConnectionResolutionError(TransferError):
    """Raised when a logical connection id cannot be turned into an engine."""

    def __init__(self, message: str, connection_id: str = "unknown", **kwargs):
        self.connection_id = connection_id
        super().__init__(connection_id, f"Connection error: {message}")


class ExtractionError(TransferError):
    """Source read failure: connectivity, SQL error or timeout."""

    def __init__(self, message: str, table_name: str = "unknown", retryable: bool = False):
        self.table_name = table_name
        self.retryable = retryable
        super().__init__(table_name, f"Extraction error: {message}")


class LoadError(TransferError):
    """Destination write failure: connectivity, constraint violation or timeout."""

    def __init__(self, message: str, table_name: str = "unknown", retryable: bool = False):
        self.table_name = table_name
        self.retryable = retryable
        super().__init__(table_name, f"Load error: {message}")


class WatermarkError(TransferError):
    """Watermark state could not be read."""

    def __init__(self, message: str, mapping_name: str = "watermark_store", **kwargs):
        self.mapping_name = mapping_name
        super().__init__(mapping_name, f"Watermark error: {message}")


class WatermarkAdvanceError(WatermarkError):
    """Watermark progress could not be persisted; fatal for the table."""

    def __init__(self, message: str, mapping_name: str = "watermark_store", **kwargs):
        super().__init__(f"advance failed: {message}", mapping_name)


class PersistenceError(TransferError):
    """Run, metric or log records could not be written after retries."""

    def __init__(self, message: str, **kwargs):
        super().__init__("recorder", f"Persistence error: {message}")


class RunCancelledError(TransferError):
    """Signals that a cancellation request was observed between batches."""

    def __init__(self, message: str = "Run cancelled", table_name: str = "orchestrator"):
        super().__init__(table_name, message)


class RunAbortedError(TransferError):
    """A run hit a fatal error after it was created and has been closed as Failed."""

    def __init__(self, run_id: Optional[int], message: str):
        self.run_id = run_id
        super().__init__("orchestrator", f"Run {run_id} aborted: {message}")
