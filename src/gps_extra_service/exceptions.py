"""Error taxonomy for the GPS extra service.

None of these are fatal to the process: every failure path degrades to
"feature disabled, logged, retry later".
"""

from __future__ import annotations

import enum


class ErrorCode(enum.Enum):
    """Provider result codes carried by :class:`ProviderError`."""

    OUT_OF_MEMORY = "OUT_OF_MEMORY"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    INCORRECT_METHOD = "INCORRECT_METHOD"
    NETWORK_FAILED = "NETWORK_FAILED"
    SERVICE_NOT_AVAILABLE = "SERVICE_NOT_AVAILABLE"
    SETTING_OFF = "SETTING_OFF"


class GpsServiceError(Exception):
    """Base class for all service errors."""


class ProviderError(GpsServiceError):
    """A non-success result from the location provider."""

    def __init__(self, code: ErrorCode, message: str = "") -> None:
        self.code = code
        self.message = message or code.value.replace("_", " ").lower()
        super().__init__(f"[{self.code.value},{self.message}]")


class ResourceError(ProviderError):
    """Handle creation or callback registration failed."""


class ChannelError(GpsServiceError):
    """The IPC channel could not be probed or a message could not be sent."""


class StaleDataError(GpsServiceError):
    """A fetched reading is older than the freshness window."""

    def __init__(self, age_seconds: float) -> None:
        self.age_seconds = age_seconds
        super().__init__(f"reading expired ({age_seconds:.0f}s old)")
