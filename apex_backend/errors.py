"""Apex exception hierarchy.

Validation problems in incoming sessions are not exceptions; they are
recorded as skips by the session parser. Everything here is surfaced to the
immediate caller.
"""

from __future__ import annotations

from typing import Any, Optional


class ApexError(Exception):
    """Base exception for all Apex failures."""


class ConfigError(ApexError):
    """Raised for invalid configuration or an invalid watch path."""


class DecodeError(ApexError):
    """Raised for a malformed or truncated telemetry packet."""


class DatabaseError(ApexError):
    """Raised for connectivity or query failures against the lap store."""


class IngestError(DatabaseError):
    """A store failure that stopped a batch part way.

    `result` holds what was committed before the failure.
    """

    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result


class IngestFileError(ApexError):
    """Raised when a watched file cannot be read or is not JSON."""


class WatchStateError(ConfigError):
    """Raised when the watch path cannot be persisted."""
