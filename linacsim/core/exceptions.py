"""
Custom exceptions for the LINAC study emulator.

Provides a hierarchy of exceptions for better error handling and debugging.
"""

from typing import Any, Dict, Optional


class LinacSimError(Exception):
    """Base exception for all emulator errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(LinacSimError):
    """Raised when there are configuration issues."""

    pass


class ScenarioLoadError(LinacSimError):
    """The scenario record could not be fetched or decoded."""

    def __init__(self, source: str, message: str, **kwargs):
        super().__init__(f"{source}: {message}", **kwargs)
        self.source = source


class SyncError(LinacSimError):
    """Base class for cross-display synchronization errors."""

    pass


class SharedStateError(SyncError):
    """The persistent shared-state store rejected a read or write."""

    pass


class BroadcastError(SyncError):
    """The out-of-band broadcast transport is unavailable or failed."""

    pass


class WorkflowError(LinacSimError):
    """Workflow execution errors."""

    pass


class DeliveryInProgressError(WorkflowError):
    """A delivery was requested while another one is still running."""

    def __init__(self, field_index: int, **kwargs):
        super().__init__(f"Delivery already running for field {field_index}", **kwargs)
        self.field_index = field_index
