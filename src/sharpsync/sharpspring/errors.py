"""Exceptions raised by the Sharpspring client and lead model."""

from __future__ import annotations

from typing import Any


class SharpSpringError(Exception):
    """Base class for failures of a whole Sharpspring API call."""


class TransportError(SharpSpringError):
    """Network, HTTP or authentication failure; no per-record detail available."""


class ApiError(SharpSpringError):
    """Call-level error reported by the Sharpspring API in the response body.

    Attributes:
        code: Sharpspring error code.
        message: Error message returned by the API.
        data: Optional extra error data returned by the API.
    """

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Sharpspring API error {self.code}: {self.message}"


class LeadValidationError(ValueError):
    """Raised when a lead cannot be built from source data."""
