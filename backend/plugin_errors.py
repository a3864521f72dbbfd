"""
Plugin Errors - shared exception taxonomy

Every failure the populator can hit falls into one of these buckets. The
controller converts them into user-facing messages; none of them is allowed
to escape into the host session.
"""

from typing import Any, Dict, Optional


class PopulatorError(Exception):
    """Base class carrying a stable machine-readable code."""

    code = "populator_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class UserInputError(PopulatorError):
    """Empty selection, malformed license key, bad spreadsheet URL."""

    code = "user_input_error"


class ProtocolError(PopulatorError):
    """An envelope that does not match any known message shape."""

    code = "protocol_error"


class NetworkFailure(PopulatorError):
    """An external fetch failed or returned a non-success status."""

    code = "network_failure"


class QuotaExceeded(PopulatorError):
    """Raised before any mutation when neither license nor free uses remain."""

    code = "quota_exceeded"

    def __init__(self, remaining: int = 0):
        super().__init__(
            "Daily free limit reached. Enter a license key to keep populating layers.",
            {"remaining_uses": remaining},
        )
        self.remaining = remaining
