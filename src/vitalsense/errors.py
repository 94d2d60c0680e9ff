"""Exception hierarchy for conditions the pipeline cannot recover from.

Short buffers, rejected samples and out-of-range estimates are not errors;
they are returned as ``None`` results or status values.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VitalsenseError(Exception):
    """Base exception carrying a machine-readable code and details."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dict for API responses and status reports."""
        return {"error": self.code, "message": self.message, "details": self.details}


class DeviceUnavailable(VitalsenseError):
    """A frame or audio source failed to open or to deliver data."""

    def __init__(
        self,
        message: str,
        source: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message,
            code="DEVICE_UNAVAILABLE",
            details={"source": source, **(details or {})},
        )
        self.source = source


class ConfigurationError(VitalsenseError):
    """Invalid configuration value or unknown configuration key."""

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details={"field": field, **(details or {})},
        )
        self.field = field


class InvalidFrameError(VitalsenseError):
    """Frame buffer with an unusable shape or dtype."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="INVALID_FRAME", details=details)
