"""Error types shared by the scanner components.

Lookup misses are not errors (see streetview.LookupResult). Schema anomalies in
result documents are logged and replaced with defaults, never raised across a
realtime subscription.
"""

from typing import Any, Dict, Optional


class ScannerError(Exception):
    """Base class for scanner failures surfaced to callers."""

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context = context or {}


class TransportError(ScannerError):
    """A remote call (job service, document store) failed."""


class SubmissionError(TransportError):
    """The remote job service rejected or failed a submission."""


class StateGuardViolation(ScannerError):
    """A caller precondition failed; no side effects were applied."""


class SchemaAnomaly(ScannerError):
    """An incoming result document could not be read as expected."""
