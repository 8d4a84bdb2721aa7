"""
Exceptions raised by fedsync.

Stale uploads are not represented here: the aggregator drops them silently.
"""

from typing import Any, Dict, Optional


class FedSyncError(Exception):
    """Base exception for all fedsync errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ConnectionTimeout(FedSyncError):
    """No initial download message arrived within the connection timeout."""

    def __init__(self, server: str, timeout: float):
        self.server = server
        self.timeout = timeout
        super().__init__(
            f"no download from {server} within {timeout}s",
            "CONNECTION_TIMEOUT",
            {"server": server, "timeout": timeout},
        )


class UploadTimeout(FedSyncError):
    """The server did not acknowledge an upload within the upload timeout."""

    def __init__(self, client_id: str, timeout: float):
        self.client_id = client_id
        self.timeout = timeout
        super().__init__(
            f"upload from {client_id} not acknowledged within {timeout}s",
            "UPLOAD_TIMEOUT",
            {"client_id": client_id, "timeout": timeout},
        )


class ShapeMismatch(FedSyncError):
    """Per-client update lists cannot be stacked together."""

    def __init__(self, message: str, expected: Any = None, actual: Any = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message, "SHAPE_MISMATCH", {"expected": expected, "actual": actual})


class UnsupportedAggregation(FedSyncError):
    """The configured aggregation has no implementation."""

    def __init__(self, aggregation: str):
        self.aggregation = aggregation
        super().__init__(
            f"unsupported aggregation {aggregation!r}",
            "UNSUPPORTED_AGGREGATION",
            {"aggregation": aggregation},
        )


class UnrecognizedOption(FedSyncError):
    """A configuration mapping contained a key that is not an option."""

    def __init__(self, section: str, key: str):
        self.section = section
        self.key = key
        super().__init__(
            f"Error setting {section}: Unrecognized key {key!r}",
            "UNRECOGNIZED_OPTION",
            {"section": section, "key": key},
        )
