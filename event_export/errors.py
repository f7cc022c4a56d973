"""
Exceptions for the event export and enrichment pipelines.

Each exception carries a stable error code so the CLI can map failures to
its exit codes and log lines stay greppable.
"""

from typing import Any, Dict, Optional


class EventExportError(Exception):
    """Base exception for export and enrichment failures."""

    def __init__(self, message: str, error_code: str = "ERR_EXPORT_000",
                 details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(EventExportError):
    """Raised for missing accounts/devices or a tenant that cannot be processed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="ERR_CONFIG_001", details=details)


class DataAccessError(EventExportError):
    """Raised when the event store cannot be reached or a query fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="ERR_DATA_001", details=details)


class SlowOperationError(EventExportError):
    """Raised by a reverse-geocode provider that cannot answer quickly enough.

    This is a retryable condition; callers treat it as "no change this pass".
    """

    def __init__(self, message: str = "Operation too slow to complete now"):
        super().__init__(message, error_code="ERR_SLOW_001")


class OutputError(EventExportError):
    """Raised when an output sink cannot be opened."""

    def __init__(self, target: str, cause: Optional[Exception] = None):
        message = f"Unable to open output file: {target}"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message, error_code="ERR_OUTPUT_001", details={"target": target})
